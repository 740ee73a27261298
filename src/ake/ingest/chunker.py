"""Section-aware text chunking with overlapping word windows."""

import hashlib
import math
import re
from dataclasses import dataclass
from typing import Any

from ..models import Chunk

HEADING_RE = re.compile(r"^\s*#{1,6}\s+")
TOKENS_PER_WORD = 1.3


@dataclass
class Section:
    content: str
    heading: str | None = None


def estimate_tokens(text: str) -> int:
    """Rough token estimate (~1.3 tokens per whitespace-delimited word)."""
    return math.ceil(len(text.split()) * TOKENS_PER_WORD)


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def split_sections(text: str) -> list[Section]:
    """Split text on markdown headings (levels 1-6).

    The heading line itself is not part of the section content; it is carried
    as the section's heading. Sections without content are dropped.
    """
    sections: list[Section] = []
    heading: str | None = None
    buffer: list[str] = []

    def flush() -> None:
        content = "\n".join(buffer).strip()
        if content:
            sections.append(Section(content=content, heading=heading))
        buffer.clear()

    for line in text.splitlines():
        if HEADING_RE.match(line):
            flush()
            heading = HEADING_RE.sub("", line).strip()
            continue
        buffer.append(line)
    flush()

    if not sections:
        return [Section(content=text)]
    return sections


def chunk_text(
    text: str,
    metadata: dict[str, Any] | None = None,
    chunk_size_tokens: int = 1000,
    overlap_tokens: int = 150,
) -> list[Chunk]:
    """Split text into token-budgeted chunks respecting section boundaries.

    Args:
        text: The text to chunk.
        metadata: Metadata copied onto every chunk (plus ``section_heading``).
        chunk_size_tokens: Estimated token budget per chunk.
        overlap_tokens: Estimated tokens shared between consecutive windows.

    Returns:
        List of chunks in document order. Empty input gives an empty list.
    """
    metadata = metadata or {}
    overlap_words = max(1, math.floor(overlap_tokens / TOKENS_PER_WORD))
    chunks: list[Chunk] = []

    for section in split_sections(text):
        words = section.content.split()
        if not words:
            continue

        start = 0
        while start < len(words):
            budget = 0
            end = start
            while end < len(words) and budget < chunk_size_tokens:
                budget += estimate_tokens(words[end])
                end += 1

            window = " ".join(words[start:end]).strip()
            if not window:
                break
            chunks.append(Chunk(
                text=window,
                token_count=estimate_tokens(window),
                content_hash=content_hash(window),
                metadata={**metadata, "section_heading": section.heading},
            ))
            if end >= len(words):
                break
            # Always advance at least one word, even when overlap >= window
            start = max(start + 1, end - overlap_words)

    return chunks
