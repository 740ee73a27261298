"""Language-model adapters."""

from .base import LlmBase, MissingApiKeyError, get_llm
from .parsing import Fallback, Parsed, parse_json_payload

__all__ = ["Fallback", "LlmBase", "MissingApiKeyError", "Parsed", "get_llm", "parse_json_payload"]
