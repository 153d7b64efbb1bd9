import fitz  # PyMuPDF
from typing import List, Dict, Any
from collections import Counter

from ragchat.core.errors import ExtractionFailed

class PDFParser:
    """
    PDF text extraction with PyMuPDF.
    Pass 1: Extract text blocks with their page number and position.
    Pass 2: Drop blocks repeated at the same Y-position on several pages (running headers/footers).
    """

    def __init__(self, header_footer_threshold: int = 3):
        self.header_footer_threshold = header_footer_threshold

    def parse(self, data: bytes) -> str:
        """
        Returns the document's plain text, pages separated by newlines.
        """
        raw_blocks = self._extract_raw_blocks(data)
        suppress_hashes = self._identify_repetitive_blocks(raw_blocks)

        pages: Dict[int, List[str]] = {}
        for b in raw_blocks:
            if self._position_hash(b) in suppress_hashes:
                continue
            pages.setdefault(b["page_number"], []).append(b["text"])

        return "\n".join("\n".join(pages[p]) for p in sorted(pages))

    def _extract_raw_blocks(self, data: bytes) -> List[Dict[str, Any]]:
        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except Exception as e:
            raise ExtractionFailed(f"Could not open PDF: {e}") from e

        try:
            if doc.needs_pass:
                raise ExtractionFailed("PDF is encrypted")
            if doc.page_count == 0:
                raise ExtractionFailed("PDF has no pages")

            blocks = []
            for page_num, page in enumerate(doc):
                # (x0, y0, x1, y1, text, block_no, block_type)
                for b in page.get_text("blocks", sort=True):
                    if b[6] != 0:  # image block
                        continue
                    text = b[4].strip()
                    if not text:
                        continue
                    blocks.append({
                        "text": text,
                        "page_number": page_num + 1,
                        "bbox": [b[0], b[1], b[2], b[3]],
                    })
        except ExtractionFailed:
            raise
        except Exception as e:
            raise ExtractionFailed(f"Could not read PDF content: {e}") from e
        finally:
            doc.close()

        return blocks

    def _identify_repetitive_blocks(self, blocks: List[Dict[str, Any]]) -> set:
        """
        Detects text that appears at the same Y-position on multiple pages.
        """
        pos_text_counts = Counter(self._position_hash(b) for b in blocks)
        return {pos_hash for pos_hash, count in pos_text_counts.items()
                if count >= self.header_footer_threshold}

    @staticmethod
    def _position_hash(block: Dict[str, Any]) -> tuple:
        return (round(block["bbox"][1], 0), block["text"])
