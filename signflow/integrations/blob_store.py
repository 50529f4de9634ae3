"""
Blob store gateway.

The signing engine treats object storage as an opaque key/value store with
four operations.  Adapters implement ``BlobStore``; the engine never sees
paths, SDK clients or credentials.

Adapters:
    - FileSystemBlobStore: one directory per bucket under BLOB_STORE_ROOT.
                           Writes land in a temp file and are renamed into
                           place, so a partial write is never visible.
    - InMemoryBlobStore: process-local dict, used by the test suite.

Failures are raised as ``StorageError`` and never retried here; the caller
retries the whole action.
"""

from __future__ import annotations

import io
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import BinaryIO

from flask import Flask, current_app

from signflow.core.exceptions import ConfigurationError, StorageError
from signflow.utils.hashing import CHUNK_SIZE

logger = logging.getLogger(__name__)


class BlobAck:
    """Acknowledgement returned by ``put`` once the object is durable."""

    __slots__ = ("bucket", "key", "size", "content_type")

    def __init__(self, *, bucket: str, key: str, size: int, content_type: str | None) -> None:
        self.bucket = bucket
        self.key = key
        self.size = size
        self.content_type = content_type

    def __repr__(self) -> str:
        return f"<BlobAck {self.bucket}/{self.key} {self.size}B>"


def _iter_chunks(source: bytes | BinaryIO):
    if isinstance(source, (bytes, bytearray)):
        source = io.BytesIO(bytes(source))
    while True:
        chunk = source.read(CHUNK_SIZE)
        if not chunk:
            return
        yield chunk


class BlobStore(ABC):
    """Abstract blob store."""

    @abstractmethod
    def put(self, bucket: str, key: str, source: bytes | BinaryIO, content_type: str | None = None) -> BlobAck:
        """Store ``source`` in full.  Returns only after the object is durable."""

    @abstractmethod
    def get(self, bucket: str, key: str) -> BinaryIO:
        """Open the object for streaming reads.  The caller closes it."""

    @abstractmethod
    def copy(self, src_bucket: str, src_key: str, dst_bucket: str, dst_key: str) -> None:
        """Server-side copy."""

    @abstractmethod
    def delete(self, bucket: str, key: str) -> None:
        """Remove the object.  Deleting a missing object is not an error."""


class FileSystemBlobStore(BlobStore):

    def __init__(self, root: str) -> None:
        self.root = os.path.abspath(root)

    def _path(self, bucket: str, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root, bucket, key))
        if not path.startswith(self.root + os.sep):
            raise StorageError("Invalid storage key")
        return path

    def put(self, bucket, key, source, content_type=None):
        path = self._path(bucket, key)
        size = 0
        tmp_path = None
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with tempfile.NamedTemporaryFile(dir=os.path.dirname(path), delete=False) as tmp:
                tmp_path = tmp.name
                for chunk in _iter_chunks(source):
                    tmp.write(chunk)
                    size += len(chunk)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("Blob put failed bucket=%s error=%s", bucket, exc)
            raise StorageError("Document storage is unavailable") from exc
        return BlobAck(bucket=bucket, key=key, size=size, content_type=content_type)

    def get(self, bucket, key):
        try:
            return open(self._path(bucket, key), "rb")
        except FileNotFoundError as exc:
            raise StorageError("Stored document content is missing") from exc
        except OSError as exc:
            logger.error("Blob get failed bucket=%s error=%s", bucket, exc)
            raise StorageError("Document storage is unavailable") from exc

    def copy(self, src_bucket, src_key, dst_bucket, dst_key):
        with self.get(src_bucket, src_key) as src:
            self.put(dst_bucket, dst_key, src)

    def delete(self, bucket, key):
        try:
            os.unlink(self._path(bucket, key))
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.error("Blob delete failed bucket=%s error=%s", bucket, exc)
            raise StorageError("Document storage is unavailable") from exc


class InMemoryBlobStore(BlobStore):

    def __init__(self) -> None:
        self._objects: dict[tuple[str, str], tuple[bytes, str | None]] = {}
        self._lock = threading.Lock()

    def put(self, bucket, key, source, content_type=None):
        data = b"".join(_iter_chunks(source))
        with self._lock:
            self._objects[(bucket, key)] = (data, content_type)
        return BlobAck(bucket=bucket, key=key, size=len(data), content_type=content_type)

    def get(self, bucket, key):
        with self._lock:
            entry = self._objects.get((bucket, key))
        if entry is None:
            raise StorageError("Stored document content is missing")
        return io.BytesIO(entry[0])

    def copy(self, src_bucket, src_key, dst_bucket, dst_key):
        with self._lock:
            entry = self._objects.get((src_bucket, src_key))
            if entry is None:
                raise StorageError("Stored document content is missing")
            self._objects[(dst_bucket, dst_key)] = entry

    def delete(self, bucket, key):
        with self._lock:
            self._objects.pop((bucket, key), None)


_BACKENDS = {
    "filesystem": lambda app: FileSystemBlobStore(
        app.config.get("BLOB_STORE_ROOT") or os.path.join(app.instance_path, "blobs")
    ),
    "memory": lambda app: InMemoryBlobStore(),
}


def init_blob_store(app: Flask) -> BlobStore:
    """Build the configured adapter and register it on ``app.extensions``."""
    backend = app.config.get("BLOB_STORE_BACKEND", "filesystem")
    factory = _BACKENDS.get(backend)
    if factory is None:
        raise ConfigurationError(f"Unknown BLOB_STORE_BACKEND '{backend}'")
    store = factory(app)
    app.extensions["blob_store"] = store
    app.logger.info("Blob store configured: backend=%s", backend)
    return store


def get_blob_store() -> BlobStore:
    return current_app.extensions["blob_store"]

