"""API key management endpoints (session auth only).

A key can never be used to mint or manage other keys.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query, Response
from pydantic import BaseModel, Field

from explorable.api.dependencies import ApiKeyServiceDep, SessionPrincipalDep
from explorable.models.api_key import ApiKey
from explorable.services.api_key import KEY_SCHEME

router = APIRouter()


class CreateApiKeyRequest(BaseModel):
    description: str = ""
    expires_in_days: int | None = Field(default=None, ge=1, le=3650)


class ApiKeyResponse(BaseModel):
    id: str
    prefix: str
    description: str
    created_at: datetime
    last_used_at: datetime | None
    expires_at: datetime | None
    is_revoked: bool


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Returned once; ``api_key`` is never shown again."""

    api_key: str
    api_key_id: str


class ApiKeyListResponse(BaseModel):
    items: list[ApiKeyResponse]


def _to_response(api_key: ApiKey) -> ApiKeyResponse:
    return ApiKeyResponse(
        id=api_key.id,
        prefix=f"{KEY_SCHEME}{api_key.prefix}",
        description=api_key.description,
        created_at=api_key.created_at,
        last_used_at=api_key.last_used_at,
        expires_at=api_key.expires_at,
        is_revoked=api_key.is_revoked,
    )


def _to_created(api_key: ApiKey, plaintext: str) -> ApiKeyCreatedResponse:
    return ApiKeyCreatedResponse(
        **_to_response(api_key).model_dump(),
        api_key=plaintext,
        api_key_id=api_key.id,
    )


@router.post("", response_model=ApiKeyCreatedResponse, status_code=201)
async def create_api_key(
    request: CreateApiKeyRequest,
    principal: SessionPrincipalDep,
    api_keys: ApiKeyServiceDep,
) -> ApiKeyCreatedResponse:
    api_key, plaintext = await api_keys.create(
        principal.user_id,
        description=request.description,
        expires_in_days=request.expires_in_days,
    )
    return _to_created(api_key, plaintext)


@router.get("", response_model=ApiKeyListResponse)
async def list_api_keys(
    principal: SessionPrincipalDep,
    api_keys: ApiKeyServiceDep,
    include_revoked: bool = Query(False),
) -> ApiKeyListResponse:
    keys = await api_keys.list(principal.user_id, include_revoked=include_revoked)
    return ApiKeyListResponse(items=[_to_response(k) for k in keys])


@router.get("/{key_id}", response_model=ApiKeyResponse)
async def get_api_key(
    key_id: str,
    principal: SessionPrincipalDep,
    api_keys: ApiKeyServiceDep,
) -> ApiKeyResponse:
    return _to_response(await api_keys.get(key_id, principal.user_id))


@router.delete("/{key_id}", status_code=204)
async def revoke_api_key(
    key_id: str,
    principal: SessionPrincipalDep,
    api_keys: ApiKeyServiceDep,
) -> Response:
    await api_keys.revoke(key_id, principal.user_id)
    return Response(status_code=204)


@router.post("/{key_id}/rotate", response_model=ApiKeyCreatedResponse, status_code=201)
async def rotate_api_key(
    key_id: str,
    principal: SessionPrincipalDep,
    api_keys: ApiKeyServiceDep,
) -> ApiKeyCreatedResponse:
    """Revoke a key and issue a replacement."""
    api_key, plaintext = await api_keys.rotate(key_id, principal.user_id)
    return _to_created(api_key, plaintext)
