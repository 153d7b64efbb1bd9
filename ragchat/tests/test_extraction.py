import pytest

from ragchat.core.errors import ExtractionFailed, UnsupportedFormat
from ragchat.core.parse.extractor import TextExtractor, normalise_mime_type
from ragchat.core.parse.pdf_parser import PDFParser
from ragchat.tests.fakes import make_pdf


def test_pdf_text_extraction():
    data = make_pdf([
        ["Introduction to RAG", "This is a document about Retrieval Augmented Generation."],
        ["Section 2: Benefits", "RAG reduces hallucinations by grounding the model in factual data."],
    ])
    text = TextExtractor().extract(data, "application/pdf")

    assert "Introduction to RAG" in text
    assert "grounding the model in factual data" in text
    assert text.index("Introduction") < text.index("Benefits")


def test_running_headers_are_dropped():
    pages = [[f"Body text of page {n}."] for n in range(1, 4)]
    text = PDFParser().parse(make_pdf(pages, header="ACME Confidential"))

    assert "ACME Confidential" not in text
    for n in range(1, 4):
        assert f"Body text of page {n}." in text


def test_header_on_two_pages_is_kept():
    pages = [["First page body."], ["Second page body."]]
    text = PDFParser().parse(make_pdf(pages, header="ACME Confidential"))

    assert "ACME Confidential" in text


def test_corrupt_pdf_raises_extraction_failed():
    with pytest.raises(ExtractionFailed):
        TextExtractor().extract(b"%PDF-1.4 this is not really a pdf", "application/pdf")


def test_plain_text_is_decoded():
    data = b"\xef\xbb\xbfCaf\xc3\xa9 menu\nsoup"
    assert TextExtractor().extract(data, "text/plain") == "Café menu\nsoup"


def test_invalid_utf8_is_replaced():
    text = TextExtractor().extract(b"ok \xff\xfe end", "text/markdown")
    assert text.startswith("ok ")
    assert text.endswith(" end")
    assert "\ufffd" in text


def test_mime_parameters_and_case_are_ignored():
    assert normalise_mime_type("Text/Plain; charset=utf-8") == "text/plain"
    assert TextExtractor().extract(b"hello", "TEXT/PLAIN; charset=utf-8") == "hello"


def test_unsupported_format():
    docx = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
    extractor = TextExtractor()

    with pytest.raises(UnsupportedFormat) as exc_info:
        extractor.extract(b"PK\x03\x04", docx)

    assert exc_info.value.mime_type == docx
    assert not extractor.supports(docx)
    assert extractor.supports("application/pdf")
    assert extractor.supports("text/csv")
