"""JSON parser with special handling for ChatGPT/Claude export formats."""

import json
from pathlib import PurePath
from typing import Any


class JsonParser:
    """Parse JSON, flattening chat exports into a readable transcript."""

    def parse(self, text: str, file_name: str) -> dict[str, Any]:
        data = json.loads(text)
        title = PurePath(file_name).stem

        if isinstance(data, dict) and "mapping" in data:
            data = [data]
        if isinstance(data, list) and data and isinstance(data[0], dict):
            if "mapping" in data[0]:
                return self._parse_chatgpt(data, title)
            if "chat_messages" in data[0]:
                return self._parse_claude(data, title)

        # Generic JSON - stringify
        content = json.dumps(data, indent=2, ensure_ascii=False)
        return {"content": content, "metadata": {"source_type": "json"}, "title": title}

    def _parse_chatgpt(self, conversations: list, title: str) -> dict[str, Any]:
        parts = []
        for conv in conversations:
            parts.append(f"## {conv.get('title') or 'Untitled'}\n")
            messages = []
            for node in conv.get("mapping", {}).values():
                msg = node.get("message") or {}
                content_parts = (msg.get("content") or {}).get("parts") or []
                text = "\n".join(p for p in content_parts if isinstance(p, str))
                if text.strip():
                    role = (msg.get("author") or {}).get("role", "unknown")
                    messages.append((msg.get("create_time") or 0, role, text))
            messages.sort(key=lambda m: m[0])
            for _, role, text in messages:
                parts.append(f"**{role}**: {text}\n")

        return {
            "content": "\n".join(parts),
            "metadata": {"source_type": "conversation", "platform": "chatgpt"},
            "title": conversations[0].get("title") or title,
        }

    def _parse_claude(self, conversations: list, title: str) -> dict[str, Any]:
        parts = []
        for conv in conversations:
            parts.append(f"## {conv.get('name') or conv.get('title') or 'Untitled'}\n")
            for msg in conv.get("chat_messages", []):
                role = msg.get("sender", "unknown")
                text = msg.get("text", "")
                if not text and "content" in msg:
                    content = msg["content"]
                    if isinstance(content, list):
                        text = "\n".join(c.get("text", "") for c in content if isinstance(c, dict))
                    elif isinstance(content, str):
                        text = content
                if text.strip():
                    parts.append(f"**{role}**: {text}\n")

        return {
            "content": "\n".join(parts),
            "metadata": {"source_type": "conversation", "platform": "claude"},
            "title": conversations[0].get("name") or title,
        }
