"""Unit tests for text extraction."""

import io

import docx
import fitz
import pytest

from quarry.core.errors import CorruptInput, ExtractionFailure, UnsupportedFormat
from quarry.core.extract import extract_text


def test_plain_text_and_bom() -> None:
    assert extract_text(b"hello world", "text/plain") == "hello world"
    assert extract_text("\ufeffhéllo".encode("utf-8"), "text/plain") == "héllo"


def test_markdown_by_extension() -> None:
    assert extract_text(b"# Title", "", "notes.md") == "# Title"


def test_octet_stream_treated_as_text() -> None:
    assert extract_text(b"raw", "application/octet-stream") == "raw"


def test_invalid_utf8_is_corrupt() -> None:
    with pytest.raises(CorruptInput):
        extract_text(b"\xff\xfe\xfa", "text/plain")


def test_unsupported_type() -> None:
    with pytest.raises(UnsupportedFormat) as exc_info:
        extract_text(b"GIF89a", "image/gif", "anim.gif")
    assert isinstance(exc_info.value, ExtractionFailure)
    assert "Unsupported file type" in str(exc_info.value)


def test_word_headings_become_markdown() -> None:
    document = docx.Document()
    document.add_heading("Overview", level=1)
    document.add_paragraph("First paragraph.")
    document.add_heading("Details", level=2)
    document.add_paragraph("Second paragraph.")
    buffer = io.BytesIO()
    document.save(buffer)

    text = extract_text(
        buffer.getvalue(),
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    )
    lines = [line for line in text.split("\n") if line]
    assert lines == ["# Overview", "First paragraph.", "## Details", "Second paragraph."]


def test_corrupt_word_file() -> None:
    with pytest.raises(CorruptInput):
        extract_text(b"not a zip", "", "broken.docx")


def test_pdf_text() -> None:
    pdf = fitz.open()
    page = pdf.new_page()
    page.insert_text((72, 72), "Hello from a PDF")
    data = pdf.tobytes()
    pdf.close()

    assert "Hello from a PDF" in extract_text(data, "application/pdf")


def test_corrupt_pdf() -> None:
    with pytest.raises(CorruptInput):
        extract_text(b"%PDF-garbage", "application/pdf")
