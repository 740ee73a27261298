"""Text parsers for dropped files, selected by extension or MIME type."""

from pathlib import PurePath

from .json_parser import JsonParser
from .markdown import MarkdownParser
from .text import TextParser

PARSERS = {
    ".md": MarkdownParser,
    ".markdown": MarkdownParser,
    ".txt": TextParser,
    ".text": TextParser,
    ".log": TextParser,
    ".csv": TextParser,
    ".json": JsonParser,
}

# Binary formats need a text-extraction service in front of the engine
UNSUPPORTED = (".pdf", ".docx", ".doc", ".xlsx", ".pptx")


class UnsupportedFileType(ValueError):
    pass


def get_parser(file_name: str, mime_type: str = ""):
    """Pick a parser for a file. Unknown text-like files fall back to plain text."""
    ext = PurePath(file_name).suffix.lower()
    mime = (mime_type or "").lower()
    if ext in UNSUPPORTED or "pdf" in mime or "wordprocessingml" in mime:
        raise UnsupportedFileType(f"No text extractor for {file_name} ({mime_type or ext})")
    if ext in PARSERS:
        return PARSERS[ext]()
    if "markdown" in mime:
        return MarkdownParser()
    if "json" in mime:
        return JsonParser()
    return TextParser()


__all__ = ["PARSERS", "JsonParser", "MarkdownParser", "TextParser", "UnsupportedFileType", "get_parser"]
