"""
Object Store

Key/value blob storage for job artifacts. Keys are slash-separated relative
paths such as ``jobs/<id>/README.md``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional
import json
import threading
import structlog

logger = structlog.get_logger()

META_SUFFIX = ".meta.json"


class InvalidObjectKey(ValueError):
    pass


def validate_key(key: str) -> str:
    """Reject keys that could escape the store root."""
    if not key or key.startswith("/") or "\\" in key:
        raise InvalidObjectKey(f"Invalid object key: {key!r}")
    parts = key.split("/")
    if any(p in ("", ".", "..") for p in parts) or key.endswith(META_SUFFIX):
        raise InvalidObjectKey(f"Invalid object key: {key!r}")
    return key


@dataclass
class StoredObject:
    key: str
    data: bytes
    content_type: str = "application/octet-stream"
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def filename(self) -> str:
        return self.key.rsplit("/", 1)[-1] or "download.bin"


class ObjectStore(ABC):
    """Blob storage interface."""

    @abstractmethod
    def put(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Store ``data`` under ``key`` and return the key."""

    @abstractmethod
    def get(self, key: str) -> Optional[StoredObject]:
        """Return the object, or None when absent."""


class MemoryObjectStore(ObjectStore):
    """In-process store for tests and single-process deployments."""

    def __init__(self):
        self._objects: Dict[str, StoredObject] = {}
        self._lock = threading.Lock()

    def put(self, key, data, content_type="application/octet-stream", metadata=None):
        validate_key(key)
        with self._lock:
            self._objects[key] = StoredObject(key, bytes(data), content_type, dict(metadata or {}))
        return key

    def get(self, key):
        with self._lock:
            return self._objects.get(key)


class FilesystemObjectStore(ObjectStore):
    """Stores each object as a file plus a JSON sidecar for its headers."""

    def __init__(self, root: str):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root.joinpath(*validate_key(key).split("/"))

    def put(self, key, data, content_type="application/octet-stream", metadata=None):
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        sidecar = path.with_name(path.name + META_SUFFIX)
        sidecar.write_text(json.dumps({"content_type": content_type, "metadata": metadata or {}}))
        logger.debug("object_stored", key=key, size=len(data))
        return key

    def get(self, key):
        try:
            path = self._path(key)
        except InvalidObjectKey:
            return None
        if not path.is_file():
            return None

        content_type = "application/octet-stream"
        metadata: Dict[str, str] = {}
        sidecar = path.with_name(path.name + META_SUFFIX)
        if sidecar.is_file():
            meta = json.loads(sidecar.read_text())
            content_type = meta.get("content_type", content_type)
            metadata = meta.get("metadata", {})
        return StoredObject(key, path.read_bytes(), content_type, metadata)
