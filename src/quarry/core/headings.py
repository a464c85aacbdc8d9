"""Prefix chunks with the section headings they were cut from."""

import bisect
import logging
import re
from typing import List, Optional, Tuple

from .chunking import normalize_text
from .models import HeadingInfo

logger = logging.getLogger(__name__)

_HEADING = re.compile(r"^(#{1,3})\s+(.+)$")
_STARTS_WITH_HEADING = re.compile(r"^#{1,3}\s+")

DEFAULT_MAX_CHARS = 100_000
DEFAULT_MAX_CHUNKS = 300


def extract_headings(normalized_text: str) -> List[HeadingInfo]:
    """Collect level 1-3 markdown headings with their offsets."""
    headings = []
    position = 0
    for line in normalized_text.split("\n"):
        match = _HEADING.match(line.strip())
        if match:
            headings.append(HeadingInfo(
                level=len(match.group(1)),
                text=match.group(2).strip(),
                position=position,
            ))
        position += len(line) + 1  # +1 for newline
    return headings


def _section_context(
    headings: List[HeadingInfo],
) -> Tuple[List[int], List[Tuple[Optional[str], Optional[str]]]]:
    """For each heading, the latest level-2 and level-3 text seen up to and including it."""
    positions = []
    context = []
    h2: Optional[str] = None
    h3: Optional[str] = None
    for heading in headings:
        if heading.level == 2:
            h2 = heading.text
        elif heading.level == 3:
            h3 = heading.text
        positions.append(heading.position)
        context.append((h2, h3))
    return positions, context


def add_contextual_headers(
    chunks: List[str],
    original_text: str,
    max_chars: int = DEFAULT_MAX_CHARS,
    max_chunks: int = DEFAULT_MAX_CHUNKS,
) -> List[str]:
    """
    Prepend the nearest enclosing ``##``/``###`` headings to each chunk.

    Chunks that already begin with a heading are left alone, as are chunks
    that cannot be located in the normalized source.

    Args:
        chunks: Chunks produced from ``original_text``, in text order
        original_text: Source the chunks were cut from
        max_chars: Skip annotation for sources longer than this
        max_chunks: Skip annotation when there are more chunks than this

    Returns:
        Annotated chunks, same length and order as the input
    """
    if len(original_text) > max_chars or len(chunks) > max_chunks:
        logger.info(
            f"Skipping contextual headers for large document "
            f"({len(original_text)} chars, {len(chunks)} chunks)"
        )
        return list(chunks)

    normalized = normalize_text(original_text)
    headings = extract_headings(normalized)
    if not headings:
        return list(chunks)

    positions, context = _section_context(headings)

    annotated = []
    search_from = 0
    for chunk in chunks:
        chunk_index = normalized.find(chunk, search_from)
        if chunk_index == -1:
            logger.warning(f"Chunk not found in source text, leaving it unannotated: {chunk[:40]!r}")
            annotated.append(chunk)
            continue
        search_from = chunk_index + 1

        if _STARTS_WITH_HEADING.match(chunk.strip()):
            annotated.append(chunk)
            continue

        # Headings strictly before the chunk start
        preceding = bisect.bisect_left(positions, chunk_index)
        if preceding == 0:
            annotated.append(chunk)
            continue
        h2, h3 = context[preceding - 1]

        header = ""
        if h2:
            header += f"## {h2}\n"
        if h3:
            header += f"### {h3}\n"
        if header:
            header += "\n"
        annotated.append(header + chunk)

    return annotated
