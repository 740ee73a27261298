"""Tolerant JSON extraction from model output."""

import json
import re
from dataclasses import dataclass
from typing import Any

FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?\s*```", re.DOTALL)
OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
ARRAY_RE = re.compile(r"\[.*\]", re.DOTALL)


@dataclass
class Parsed:
    value: Any


@dataclass
class Fallback:
    raw_text: str


def parse_json_payload(text: str | None) -> Parsed | Fallback:
    """Extract JSON from a model response, handling markdown code blocks.

    Tries a direct parse, then a fenced block, then the first bracketed
    span. Never raises; unparseable text comes back as ``Fallback``.
    """
    text = (text or "").strip()
    if not text:
        return Fallback(raw_text="")

    try:
        return Parsed(json.loads(text))
    except json.JSONDecodeError:
        pass

    match = FENCE_RE.search(text)
    if match:
        try:
            return Parsed(json.loads(match.group(1).strip()))
        except json.JSONDecodeError:
            pass

    # Whichever bracket opens first wins
    candidates = [m for m in (OBJECT_RE.search(text), ARRAY_RE.search(text)) if m]
    for match in sorted(candidates, key=lambda m: m.start()):
        try:
            return Parsed(json.loads(match.group(0)))
        except json.JSONDecodeError:
            continue

    return Fallback(raw_text=text)
