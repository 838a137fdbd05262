"""Artifact Store Gateway.

Owner-scoped access to stored files (uploaded PDFs). Storage keys look
like ``{user_id}/{epoch_ms}-{filename}``; a principal may only touch keys
under its own ``{user_id}/`` prefix.

Order of checks in ``fetch`` is fixed: percent-decode, then the prefix
check, then the storage lookup. A foreign key is rejected before the
store is asked anything, so existence never leaks across users.
"""

from __future__ import annotations

import asyncio
import mimetypes
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote

import structlog

from explorable.config import StorageConfig
from explorable.errors import (
    AccessDeniedError,
    InvalidPathError,
    MisconfiguredError,
    NotFoundError,
    PayloadTooLargeError,
    ValidationError,
)
from explorable.services.identity import Principal
from explorable.validators.path import validate_relative_path

logger = structlog.get_logger()

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")
ALLOWED_UPLOAD_TYPES = frozenset({"application/pdf"})


@dataclass(frozen=True)
class StoredObject:
    data: bytes
    mime_type: str


class ObjectStore(ABC):
    """Minimal key/value object storage contract."""

    @abstractmethod
    async def get(self, path: str) -> bytes | None:
        """Return the object's bytes, or None if it does not exist."""
        ...

    @abstractmethod
    async def put(self, path: str, data: bytes) -> None:
        ...

    @abstractmethod
    async def delete(self, path: str) -> None:
        ...


class LocalObjectStore(ObjectStore):
    """Objects as files under a root directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def _resolve(self, path: str) -> Path:
        return self._root / validate_relative_path(path, field_name="storage_path")

    async def get(self, path: str) -> bytes | None:
        target = self._resolve(path)
        if not target.is_file():
            return None
        return await asyncio.to_thread(target.read_bytes)

    async def put(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_bytes, data)

    async def delete(self, path: str) -> None:
        target = self._resolve(path)
        target.unlink(missing_ok=True)


def sanitize_filename(filename: str) -> str:
    """Replace anything outside ``[a-zA-Z0-9.-]`` with ``_``."""
    return _UNSAFE_FILENAME_CHARS.sub("_", filename)


def build_storage_path(user_id: str, filename: str, *, now_ms: int | None = None) -> str:
    """``{user_id}/{epoch_ms}-{sanitized filename}``."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{user_id}/{now_ms}-{sanitize_filename(filename)}"


class ArtifactStoreGateway:
    """Owner-checked reads and writes against an ObjectStore."""

    def __init__(self, store: ObjectStore | None, config: StorageConfig | None = None) -> None:
        self._store = store
        self._config = config or StorageConfig()
        self._log = logger.bind(service="artifact_store")

    @property
    def max_upload_bytes(self) -> int:
        return self._config.max_upload_bytes

    def _require_store(self) -> ObjectStore:
        if self._store is None:
            self._log.error("artifact_store.unconfigured")
            raise MisconfiguredError("Storage is not configured")
        return self._store

    def require_owned_path(self, principal: Principal, storage_path: str) -> str:
        """Decode ``storage_path`` and check it is under the principal's prefix.

        Returns:
            The decoded path

        Raises:
            AccessDeniedError: Path is outside ``{user_id}/``
        """
        decoded = unquote(storage_path)
        if not decoded.startswith(f"{principal.user_id}/"):
            self._log.warning(
                "artifact_store.access_denied",
                user_id=principal.user_id,
            )
            raise AccessDeniedError("Access denied")

        # Reject traversal out of the user's prefix after the cheap check
        try:
            normalized = validate_relative_path(decoded, field_name="storage_path")
        except InvalidPathError as e:
            raise AccessDeniedError("Access denied") from e
        if not normalized.startswith(f"{principal.user_id}/"):
            raise AccessDeniedError("Access denied")
        return normalized

    async def fetch(self, principal: Principal, storage_path: str) -> StoredObject:
        """Read a stored object owned by ``principal``.

        Raises:
            AccessDeniedError: Path not under the principal's prefix
            NotFoundError: Object does not exist
            MisconfiguredError: Storage is not configured
        """
        path = self.require_owned_path(principal, storage_path)
        store = self._require_store()

        data = await store.get(path)
        if data is None:
            raise NotFoundError("File not found")

        mime_type = mimetypes.guess_type(path)[0] or "application/pdf"
        self._log.info("artifact_store.fetch", user_id=principal.user_id, size=len(data))
        return StoredObject(data=data, mime_type=mime_type)

    async def upload(
        self,
        principal: Principal,
        filename: str,
        data: bytes,
        mime_type: str = "application/pdf",
    ) -> str:
        """Store an upload under the principal's prefix.

        Only PDFs are accepted.

        Returns:
            The storage path of the new object
        """
        if mime_type not in ALLOWED_UPLOAD_TYPES:
            raise ValidationError(
                "Only PDF uploads are supported",
                details={"field": "mimeType"},
            )
        if not filename:
            raise ValidationError("filename is required", details={"field": "filename"})
        if len(data) == 0:
            raise ValidationError("File is empty", details={"field": "data"})
        limit = self._config.max_upload_bytes
        if len(data) > limit:
            raise PayloadTooLargeError(
                f"File exceeds maximum size of {limit // (1024 * 1024)}MB",
                details={"size": len(data), "limit": limit},
            )

        store = self._require_store()
        path = build_storage_path(principal.user_id, filename)
        await store.put(path, data)

        self._log.info("artifact_store.upload", user_id=principal.user_id, size=len(data))
        return path
