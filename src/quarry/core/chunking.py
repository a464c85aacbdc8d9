"""Text normalization and boundary-aware chunking."""

import logging
import math
import re
from typing import List

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_INLINE_WHITESPACE = re.compile(r"[ \t]+")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")
HEADING_LINE = re.compile(r"^#{1,3}\s", re.MULTILINE)
SENTENCE_TERMINATORS = ".!?\n"


def normalize_text(text: str) -> str:
    """
    Normalize whitespace while keeping line structure.

    Runs of spaces/tabs become one space, every line is trimmed, more than two
    consecutive newlines collapse to two, and the result is trimmed.
    """
    if not text:
        return ""
    lines = [_INLINE_WHITESPACE.sub(" ", line).strip() for line in text.split("\n")]
    joined = "\n".join(lines)
    return _EXCESS_NEWLINES.sub("\n\n", joined).strip()


def find_heading_start(text: str, start: int, end: int) -> int:
    """Offset of the last heading line beginning in (start, end], or -1."""
    best = -1
    # A heading marker is at most four characters long ("### ")
    for match in HEADING_LINE.finditer(text, start + 1, min(end + 4, len(text))):
        if match.start() > end:
            break
        best = match.start()
    return best


def find_sentence_end(text: str, start: int, end: int) -> int:
    """Offset just past the last terminator in (start, end), or -1."""
    for i in range(min(end, len(text)) - 1, start, -1):
        if text[i] in SENTENCE_TERMINATORS:
            return i + 1
    return -1


def find_word_boundary(text: str, start: int, end: int) -> int:
    """Offset of the last whitespace character in (start, end], or -1."""
    for i in range(min(end, len(text) - 1), start, -1):
        if text[i].isspace():
            return i
    return -1


def _best_boundary(text: str, start: int, end: int) -> int:
    boundary = find_heading_start(text, start, end)
    if boundary == -1:
        boundary = find_sentence_end(text, start, end)
    if boundary == -1:
        boundary = find_word_boundary(text, start, end)
    return boundary


def split_into_chunks(text: str, chunk_size: int = 1000, overlap: int = 200) -> List[str]:
    """
    Split text into chunks of at most ``chunk_size`` characters.

    Chunk ends prefer, in order, the start of a markdown heading line, the end
    of a sentence, and a word boundary; a raw cut is the last resort.

    Args:
        text: Input text (normalized internally)
        chunk_size: Target maximum size of each chunk in characters
        overlap: Characters shared between consecutive chunks, clamped into
            [0, chunk_size)

    Returns:
        Ordered list of non-empty chunks
    """
    if chunk_size <= 0:
        raise ConfigurationError(f"chunk_size must be positive, got {chunk_size}")
    overlap = min(max(overlap, 0), chunk_size - 1)

    normalized = normalize_text(text)
    if not normalized:
        return []
    length = len(normalized)
    if length <= chunk_size:
        return [normalized]

    chunks: List[str] = []
    start = 0
    prev_end = 0

    while start < length:
        end = start + chunk_size
        if end < length:
            # A boundary at or before the previous end would repeat the overlap as its own chunk
            boundary = _best_boundary(normalized, max(start, prev_end), end)
            if boundary != -1:
                end = boundary
        else:
            end = length

        chunk = normalized[start:end].strip()
        if chunk:
            chunks.append(chunk)

        if end >= length:
            break
        prev_end = end

        next_start = end - overlap
        if next_start <= start:
            # Overlap would stall the window; drop it for this step
            next_start = end
        start = next_start
        while start < length and normalized[start].isspace():
            start += 1

    return chunks


def estimate_token_count(text: str) -> int:
    """Rough token estimate (~4 characters per token)."""
    return math.ceil(len(text) / 4)
