"""Stored file endpoints (uploaded PDFs).

Storage paths arrive percent-encoded in the URL path and are decoded
exactly once. Ownership is checked on the decoded path before the store
is consulted.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from urllib.parse import quote

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from explorable.api.dependencies import ArtifactGatewayDep, SessionPrincipalDep
from explorable.config import get_settings
from explorable.errors import StoreUnavailableError, ValidationError

router = APIRouter()
_log = structlog.get_logger()


class FileResponse(BaseModel):
    data: str  # base64
    mimeType: str


class UploadRequest(BaseModel):
    filename: str = Field(min_length=1, max_length=255)
    data: str  # base64
    mimeType: str = "application/pdf"


class UploadResponse(BaseModel):
    storage_path: str
    filename: str
    size: int


def _encoded_storage_path(request: Request, storage_path: str) -> str:
    """The storage path exactly as the client percent-encoded it.

    The router has already decoded ``storage_path``; the gateway decodes
    once itself, so it is handed the raw form from ``raw_path``.
    """
    raw_path = request.scope.get("raw_path")
    if not raw_path:
        return quote(storage_path, safe="/")
    path = request.scope["path"]
    prefix = path[: len(path) - len(storage_path)]
    raw = raw_path.split(b"?", 1)[0].decode("latin-1")
    return raw[len(prefix):]


@router.get("/{storage_path:path}", response_model=FileResponse)
async def get_file(
    storage_path: str,
    request: Request,
    principal: SessionPrincipalDep,
    gateway: ArtifactGatewayDep,
) -> FileResponse:
    """Fetch one of the caller's stored files as base64."""
    encoded = _encoded_storage_path(request, storage_path)
    timeout = get_settings().storage.fetch_timeout_seconds
    try:
        stored = await asyncio.wait_for(gateway.fetch(principal, encoded), timeout=timeout)
    except asyncio.TimeoutError as e:
        _log.warning("files.fetch.timeout", user_id=principal.user_id, timeout=timeout)
        raise StoreUnavailableError(f"File fetch timed out after {timeout:g}s") from e

    return FileResponse(
        data=base64.b64encode(stored.data).decode("ascii"),
        mimeType=stored.mime_type,
    )


@router.post("/upload", response_model=UploadResponse, status_code=201)
async def upload_file(
    request: UploadRequest,
    principal: SessionPrincipalDep,
    gateway: ArtifactGatewayDep,
) -> UploadResponse:
    """Store a base64-encoded PDF under the caller's prefix."""
    try:
        data = base64.b64decode(request.data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("data must be valid base64", details={"field": "data"}) from e

    storage_path = await gateway.upload(principal, request.filename, data, request.mimeType)
    return UploadResponse(storage_path=storage_path, filename=request.filename, size=len(data))
