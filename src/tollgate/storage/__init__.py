"""
Tollgate - Artifact Storage
"""

from .object_store import (
    ObjectStore,
    StoredObject,
    MemoryObjectStore,
    FilesystemObjectStore,
    InvalidObjectKey,
)

__all__ = [
    "ObjectStore",
    "StoredObject",
    "MemoryObjectStore",
    "FilesystemObjectStore",
    "InvalidObjectKey",
]
