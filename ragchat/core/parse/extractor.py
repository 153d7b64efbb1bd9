import logging
from ragchat.core.errors import UnsupportedFormat
from ragchat.core.parse.pdf_parser import PDFParser

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"

def normalise_mime_type(mime_type: str | None) -> str:
    """'Text/Plain; charset=utf-8' -> 'text/plain'"""
    if not mime_type:
        return "application/octet-stream"
    return mime_type.split(";", 1)[0].strip().lower()

class TextExtractor:
    """
    Converts raw file bytes into plain text based on the declared MIME type.
    - application/pdf: PyMuPDF text extraction
    - text/*: UTF-8 decode
    Anything else raises UnsupportedFormat.
    """

    def __init__(self, pdf_parser: PDFParser | None = None):
        self.pdf_parser = pdf_parser or PDFParser()

    def extract(self, data: bytes, mime_type: str) -> str:
        kind = normalise_mime_type(mime_type)

        if kind == PDF_MIME_TYPE:
            text = self.pdf_parser.parse(data)
        elif kind.startswith("text/"):
            text = data.decode("utf-8-sig", errors="replace")
        else:
            raise UnsupportedFormat(mime_type)

        logger.debug(f"Extracted {len(text)} characters from {len(data)} bytes ({kind})")
        return text

    def supports(self, mime_type: str) -> bool:
        kind = normalise_mime_type(mime_type)
        return kind == PDF_MIME_TYPE or kind.startswith("text/")
