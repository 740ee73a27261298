"""Filesystem object storage for dropped files."""

import mimetypes
from dataclasses import dataclass
from pathlib import Path


@dataclass
class StoredObject:
    key: str
    content_type: str
    data: bytes


class LocalObjectStorage:
    """Stores objects as files under a root directory, addressed by key."""

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Object key escapes storage root: {key}")
        return path

    def put_object(self, key: str, data: bytes, content_type: str | None = None) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return key

    def get_object(self, key: str) -> StoredObject:
        path = self._path(key)
        if not path.is_file():
            raise FileNotFoundError(f"No object stored under {key}")
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return StoredObject(key=key, content_type=content_type, data=path.read_bytes())

    def delete_object(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)
