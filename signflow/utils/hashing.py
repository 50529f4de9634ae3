"""
Content digests and canonical encodings.

``DigestingReader`` wraps any readable source (bytes or a binary file-like
object) and hashes every byte handed to its consumer.  A blob store that
reads the wrapper to completion leaves the reader holding the digest and
size of exactly the bytes it stored, so no store needs its own hashing.
"""

from __future__ import annotations

import hashlib
import io
import json
from typing import Any, BinaryIO, Iterator

HASH_ALGO = "sha256"
CHUNK_SIZE = 64 * 1024


def sha256_hex(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def canonical_json(value: Any) -> str:
    """Stable JSON: sorted keys, no whitespace, UTF-8 preserved."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


class DigestingReader:
    """Read-through wrapper that accumulates a digest and byte count."""

    def __init__(self, source: bytes | bytearray | BinaryIO, algorithm: str = HASH_ALGO) -> None:
        if isinstance(source, (bytes, bytearray)):
            source = io.BytesIO(bytes(source))
        self._source = source
        self._hash = hashlib.new(algorithm)
        self.algorithm = algorithm
        self.size = 0

    def read(self, size: int = -1) -> bytes:
        chunk = self._source.read(size)
        if chunk:
            self._hash.update(chunk)
            self.size += len(chunk)
        return chunk

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.read(CHUNK_SIZE)
            if not chunk:
                return
            yield chunk

    def drain(self) -> None:
        """Consume whatever the caller left unread."""
        for _ in self:
            pass

    def hexdigest(self) -> str:
        return self._hash.hexdigest()


def digest_stream(stream: BinaryIO, algorithm: str = HASH_ALGO) -> tuple[str, int]:
    """Hash a stream without buffering it.  Returns ``(hexdigest, size)``."""
    reader = DigestingReader(stream, algorithm)
    reader.drain()
    return reader.hexdigest(), reader.size
