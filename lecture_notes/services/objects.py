"""Filesystem object store with HMAC signed, expiring download URLs."""

from __future__ import annotations

import contextlib
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Optional, Protocol
from urllib.parse import quote, urlencode

from .events import emit_storage_event


LOGGER = logging.getLogger(__name__)

_METADATA_SUFFIX = ".meta.json"


class ObjectNotFoundError(FileNotFoundError):
    """Raised when an object key does not exist."""


class InvalidSignatureError(PermissionError):
    """Raised when a signed URL is expired or tampered with."""


@dataclass(frozen=True)
class StoredObject:
    key: str
    data: bytes
    content_type: str


class ObjectStore(Protocol):
    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        ...

    def get(self, key: str) -> StoredObject:
        ...

    def delete(self, key: str) -> bool:
        ...

    def exists(self, key: str) -> bool:
        ...

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        ...


def _normalize_key(key: str) -> str:
    candidate = PurePosixPath(str(key).strip().lstrip("/"))
    parts = candidate.parts
    if not parts or any(part in {"", ".", ".."} for part in parts):
        raise ValueError(f"Invalid object key: {key!r}")
    if candidate.name.endswith(_METADATA_SUFFIX):
        raise ValueError(f"Reserved object key: {key!r}")
    return candidate.as_posix()


class LocalObjectStore:
    """Store blobs below *root*; content types live in sidecar JSON files."""

    def __init__(
        self,
        root: Path,
        *,
        secret: str,
        url_prefix: str = "/objects",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._secret = secret.encode("utf-8")
        self._url_prefix = url_prefix.rstrip("/")
        self._clock = clock

    def _path_for(self, key: str) -> Path:
        normalized = _normalize_key(key)
        path = (self._root / normalized).resolve()
        if self._root not in path.parents:
            raise ValueError(f"Object key escapes the store: {key!r}")
        return path

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        start = time.perf_counter()
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        temporary = path.with_name(path.name + ".partial")
        temporary.write_bytes(data)
        temporary.replace(path)
        meta = path.with_name(path.name + _METADATA_SUFFIX)
        meta.write_text(json.dumps({"content_type": content_type}), encoding="utf-8")
        emit_storage_event(
            "put",
            key=key,
            payload={"bytes": len(data), "content_type": content_type},
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )

    def get(self, key: str) -> StoredObject:
        path = self._path_for(key)
        if not path.is_file():
            raise ObjectNotFoundError(f"Object {key} not found")
        content_type = "application/octet-stream"
        meta = path.with_name(path.name + _METADATA_SUFFIX)
        if meta.is_file():
            with contextlib.suppress(ValueError, OSError):
                content_type = json.loads(meta.read_text(encoding="utf-8")).get(
                    "content_type", content_type
                )
        data = path.read_bytes()
        emit_storage_event("get", key=key, payload={"bytes": len(data)})
        return StoredObject(key=key, data=data, content_type=content_type)

    def exists(self, key: str) -> bool:
        try:
            return self._path_for(key).is_file()
        except ValueError:
            return False

    def delete(self, key: str) -> bool:
        path = self._path_for(key)
        existed = path.is_file()
        path.unlink(missing_ok=True)
        path.with_name(path.name + _METADATA_SUFFIX).unlink(missing_ok=True)
        emit_storage_event("delete", key=key, payload={"existed": existed})
        return existed

    def _signature(self, key: str, expires: int) -> str:
        message = f"{_normalize_key(key)}:{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        """Return a download URL for *key* valid for *ttl_seconds*."""

        if not self.exists(key):
            raise ObjectNotFoundError(f"Object {key} not found")
        expires = int(self._clock()) + int(ttl_seconds)
        query = urlencode({"expires": expires, "signature": self._signature(key, expires)})
        return f"{self._url_prefix}/{quote(_normalize_key(key))}?{query}"

    def verify(self, key: str, expires: int, signature: Optional[str]) -> None:
        """Raise :class:`InvalidSignatureError` unless the URL parameters are valid."""

        if not signature:
            raise InvalidSignatureError("Missing signature")
        if int(expires) < int(self._clock()):
            raise InvalidSignatureError("Signed URL has expired")
        expected = self._signature(key, int(expires))
        if not hmac.compare_digest(expected, signature):
            raise InvalidSignatureError("Signature mismatch")


__all__ = [
    "InvalidSignatureError",
    "LocalObjectStore",
    "ObjectNotFoundError",
    "ObjectStore",
    "StoredObject",
]
