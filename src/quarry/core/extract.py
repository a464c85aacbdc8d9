"""Plain-text extraction from uploaded bytes: PDF (PyMuPDF), Word (python-docx), text."""

import io
import logging
from pathlib import PurePath
from typing import Optional

import docx
import fitz  # PyMuPDF

from .errors import CorruptInput, UnsupportedFormat

logger = logging.getLogger(__name__)

PDF_MIME_TYPES = {"application/pdf"}
WORD_MIME_TYPES = {
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/msword",
}
TEXT_MIME_TYPES = {
    "text/plain",
    "text/markdown",
    "text/x-markdown",
    "application/octet-stream",  # Browsers send this when they cannot tell
}

PDF_EXTENSIONS = {"pdf"}
WORD_EXTENSIONS = {"docx", "doc"}
TEXT_EXTENSIONS = {"md", "markdown", "txt"}

# Word paragraph styles rendered as markdown headings
_HEADING_STYLES = {"Title": 1, "Heading 1": 1, "Heading 2": 2, "Heading 3": 3}


def _extension(file_name: Optional[str]) -> str:
    if not file_name:
        return ""
    return PurePath(file_name).suffix.lower().lstrip(".")


def extract_text_from_pdf(data: bytes) -> str:
    """Extract text from every page of a PDF."""
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as e:
        raise CorruptInput(f"Failed to open PDF: {e}") from e

    try:
        pages = [page.get_text() for page in doc]
    except Exception as e:
        raise CorruptInput(f"Failed to extract text from PDF: {e}") from e
    finally:
        doc.close()

    logger.info(f"Extracted text from {len(pages)} PDF pages")
    return "\n".join(pages)


def extract_text_from_word(data: bytes) -> str:
    """Extract paragraph text from a .docx file, keeping headings as markdown."""
    try:
        document = docx.Document(io.BytesIO(data))
    except Exception as e:
        raise CorruptInput(f"Failed to extract text from Word: {e}") from e

    lines = []
    for paragraph in document.paragraphs:
        text = paragraph.text.strip()
        style_name = paragraph.style.name if paragraph.style is not None else ""
        level = _HEADING_STYLES.get(style_name)
        if level and text:
            lines.append(f"{'#' * level} {text}")
        else:
            lines.append(paragraph.text)
    return "\n".join(lines)


def extract_text_from_plain_text(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise CorruptInput(f"Failed to decode text file as UTF-8: {e}") from e


def extract_text(data: bytes, mime_type: str, file_name: Optional[str] = None) -> str:
    """
    Extract plain text from a file based on its mime type and file name.

    Args:
        data: Raw file bytes
        mime_type: Declared mime type
        file_name: Optional name used for extension-based fallback

    Returns:
        Extracted text

    Raises:
        UnsupportedFormat: No extractor handles the type
        CorruptInput: The extractor failed to read the data
    """
    ext = _extension(file_name)
    mime_type = (mime_type or "").lower()

    if mime_type in PDF_MIME_TYPES or ext in PDF_EXTENSIONS:
        return extract_text_from_pdf(data)

    if mime_type in WORD_MIME_TYPES or ext in WORD_EXTENSIONS:
        return extract_text_from_word(data)

    if mime_type in TEXT_MIME_TYPES or ext in TEXT_EXTENSIONS:
        return extract_text_from_plain_text(data)

    suffix = f" ({file_name})" if file_name else ""
    raise UnsupportedFormat(f"Unsupported file type: {mime_type or 'unknown'}{suffix}")
