"""Plain text parser."""

from pathlib import PurePath
from typing import Any


class TextParser:
    """Parse plain text files."""

    def parse(self, text: str, file_name: str) -> dict[str, Any]:
        title = PurePath(file_name).stem
        # Try first line as title if short enough
        first_line = text.split("\n", 1)[0].strip()
        if first_line and len(first_line) < 120:
            title = first_line

        return {
            "content": text,
            "metadata": {"source_type": "text"},
            "title": title,
        }
