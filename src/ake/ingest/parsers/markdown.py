"""Markdown parser."""

import re
from pathlib import PurePath
from typing import Any

import yaml

FRONTMATTER_RE = re.compile(r"^---\s*\n(.*?)\n---\s*\n", re.DOTALL)
TITLE_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)


class MarkdownParser:
    """Parse markdown, lifting YAML frontmatter into metadata."""

    def parse(self, text: str, file_name: str) -> dict[str, Any]:
        metadata: dict[str, Any] = {"source_type": "markdown"}

        fm_match = FRONTMATTER_RE.match(text)
        if fm_match:
            try:
                fm = yaml.safe_load(fm_match.group(1)) or {}
            except yaml.YAMLError:
                fm = {}
            if isinstance(fm, dict):
                metadata.update({str(k): v for k, v in fm.items()})
            content = text[fm_match.end():]
        else:
            content = text

        if "title" not in metadata:
            title_match = TITLE_RE.search(content)
            metadata["title"] = title_match.group(1).strip() if title_match else PurePath(file_name).stem

        return {"content": content, "metadata": metadata, "title": str(metadata["title"])}
