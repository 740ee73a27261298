"""Configuration management for the avatar knowledge engine."""

import os
from pathlib import Path
from typing import Any

import yaml


DEFAULT_CONFIG = {
    "db_path": "~/.ake/ake.db",
    "chroma_path": "~/.ake/chroma",
    "objects_path": "~/.ake/objects",
    "drop_path": "~/.ake/drop",
    "storage_backend": "exact",
    "embedding_provider": "sentence-transformers",
    "embedding_model": "intfloat/e5-large-v2",
    "claude_model": "claude-sonnet-4-20250514",
    "chunking": {
        "file": {"chunk_size_tokens": 1000, "overlap_tokens": 150},
        "document": {"chunk_size_tokens": 900, "overlap_tokens": 120},
    },
    "retrieval": {"chunk_k": 6, "memory_k": 4, "history_limit": 20, "overfetch": 4},
    "reflection": {"message_limit": 40, "every": 10, "merge_threshold": 0.93},
    "retry": {"attempts": 3, "min_delay": 0.4, "max_delay": 15.0, "jitter": 0.1},
}

PATH_KEYS = ("db_path", "chroma_path", "objects_path", "drop_path")


def _find_config_file() -> Path | None:
    """Look for config.yaml in standard locations."""
    candidates = [
        Path.cwd() / "config" / "config.yaml",
        Path.cwd() / "config.yaml",
        Path.home() / ".ake" / "config.yaml",
    ]
    for p in candidates:
        if p.exists():
            return p
    return None


def load_config(config_path: str | Path | None = None) -> dict[str, Any]:
    """Load configuration, merging defaults with file and env vars."""
    cfg = _copy(DEFAULT_CONFIG)

    path = Path(config_path) if config_path else _find_config_file()
    if path and path.exists():
        with open(path) as f:
            file_cfg = yaml.safe_load(f) or {}
        _deep_merge(cfg, file_cfg)

    # Env overrides
    if api_key := os.environ.get("ANTHROPIC_API_KEY"):
        cfg["claude_api_key"] = api_key
    if backend := os.environ.get("AKE_STORAGE_BACKEND"):
        cfg["storage_backend"] = backend
    if db_path := os.environ.get("AKE_DB_PATH"):
        cfg["db_path"] = db_path

    return expand_paths(cfg)


def expand_paths(cfg: dict[str, Any]) -> dict[str, Any]:
    """Expand user paths in place. ``:memory:`` is left alone."""
    for key in PATH_KEYS:
        value = cfg.get(key)
        if value and value != ":memory:":
            cfg[key] = str(Path(value).expanduser().resolve())
    return cfg


def section(cfg: dict[str, Any], *keys: str) -> dict[str, Any]:
    """Return a nested config section, falling back to the defaults."""
    value: Any = cfg
    default: Any = DEFAULT_CONFIG
    for key in keys:
        value = value.get(key, {}) if isinstance(value, dict) else {}
        default = default.get(key, {}) if isinstance(default, dict) else {}
    merged = _copy(default)
    _deep_merge(merged, value)
    return merged


def _copy(cfg: dict[str, Any]) -> dict[str, Any]:
    return {k: _copy(v) if isinstance(v, dict) else v for k, v in cfg.items()}


def _deep_merge(base: dict, override: dict) -> None:
    """Merge override into base in-place."""
    for k, v in override.items():
        if k in base and isinstance(base[k], dict) and isinstance(v, dict):
            _deep_merge(base[k], v)
        else:
            base[k] = v
