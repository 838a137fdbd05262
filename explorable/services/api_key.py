"""API Key service.

Handles key generation, hashing, verification and the owner-scoped key
lifecycle (create, list, get, revoke, rotate).

Key format: ``sk-exp-{prefix}_{secret}``, where ``prefix`` is 8 hex chars
used for lookup and ``secret`` is 64 hex chars. Only the SHA-256 hash of
the full key is stored; the plaintext is returned once, at creation.
"""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from explorable.errors import NotFoundError, UnauthorizedError, ValidationError
from explorable.models.api_key import ApiKey
from explorable.utils.datetime import utcnow

logger = structlog.get_logger()

KEY_SCHEME = "sk-exp-"
_PREFIX_LEN = 8
_SECRET_LEN = 64
_KEY_RE = re.compile(rf"^{re.escape(KEY_SCHEME)}([0-9a-f]{{{_PREFIX_LEN}}})_([0-9a-f]{{{_SECRET_LEN}}})$")

DESCRIPTION_PATTERN = re.compile(r"^[a-zA-Z0-9_ -]*$")
DESCRIPTION_MAX_LEN = 255


@dataclass(frozen=True)
class GeneratedKey:
    plaintext: str
    prefix: str
    secret_hash: str


def validate_description(description: str | None) -> str:
    """Validate an API key description.

    Letters, digits, spaces, hyphens and underscores only; at most 255 chars.

    Raises:
        ValidationError: If the description does not match
    """
    description = description or ""
    if len(description) > DESCRIPTION_MAX_LEN:
        raise ValidationError(
            message=f"description must be at most {DESCRIPTION_MAX_LEN} characters",
            details={"field": "description", "reason": "too_long"},
        )
    if not DESCRIPTION_PATTERN.fullmatch(description):
        raise ValidationError(
            message="description may only contain letters, numbers, spaces, hyphens and underscores",
            details={"field": "description", "reason": "invalid_characters"},
        )
    return description


def looks_like_api_key(token: str) -> bool:
    """True if ``token`` uses the API key scheme (not necessarily valid)."""
    return token.startswith(KEY_SCHEME)


class ApiKeyService:
    """Service for API key lifecycle management."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._log = logger.bind(service="api_key")

    @staticmethod
    def generate_key() -> GeneratedKey:
        """Generate a new API key."""
        prefix = secrets.token_hex(_PREFIX_LEN // 2)
        secret = secrets.token_hex(_SECRET_LEN // 2)
        plaintext = f"{KEY_SCHEME}{prefix}_{secret}"
        return GeneratedKey(
            plaintext=plaintext,
            prefix=prefix,
            secret_hash=ApiKeyService.hash_key(plaintext),
        )

    @staticmethod
    def hash_key(plaintext: str) -> str:
        """Hash a plaintext key using SHA-256."""
        return hashlib.sha256(plaintext.encode()).hexdigest()

    @staticmethod
    def verify_key(plaintext: str, secret_hash: str) -> bool:
        """Constant-time comparison of a plaintext key against a stored hash."""
        return hmac.compare_digest(ApiKeyService.hash_key(plaintext), secret_hash)

    @staticmethod
    def split_key(plaintext: str) -> tuple[str, str] | None:
        """Split a key into (prefix, secret), or None if malformed."""
        match = _KEY_RE.fullmatch(plaintext)
        if match is None:
            return None
        return match.group(1), match.group(2)

    async def create(
        self,
        owner: str,
        *,
        description: str | None = None,
        expires_in_days: int | None = None,
    ) -> tuple[ApiKey, str]:
        """Create a key for ``owner``.

        Returns:
            (api_key row, plaintext key). The plaintext is not stored.
        """
        description = validate_description(description)
        if expires_in_days is not None and expires_in_days <= 0:
            raise ValidationError(
                message="expires_in_days must be positive",
                details={"field": "expires_in_days"},
            )

        generated = self.generate_key()
        now = utcnow()
        api_key = ApiKey(
            id=str(uuid.uuid4()),
            owner_user_id=owner,
            prefix=generated.prefix,
            secret_hash=generated.secret_hash,
            description=description,
            created_at=now,
            expires_at=now + timedelta(days=expires_in_days) if expires_in_days else None,
        )
        self._db.add(api_key)
        await self._db.commit()

        self._log.info("api_key.create", key_id=api_key.id, owner=owner, prefix=generated.prefix)
        return api_key, generated.plaintext

    async def list(self, owner: str, *, include_revoked: bool = False) -> list[ApiKey]:
        query = select(ApiKey).where(ApiKey.owner_user_id == owner)
        if not include_revoked:
            query = query.where(ApiKey.is_revoked == False)  # noqa: E712
        result = await self._db.execute(query.order_by(ApiKey.created_at.desc()))
        return list(result.scalars().all())

    async def get(self, key_id: str, owner: str) -> ApiKey:
        """Get one of ``owner``'s keys.

        Raises:
            NotFoundError: If missing or owned by another user
        """
        result = await self._db.execute(
            select(ApiKey).where(ApiKey.id == key_id, ApiKey.owner_user_id == owner)
        )
        api_key = result.scalars().first()
        if api_key is None:
            raise NotFoundError(f"API key not found: {key_id}")
        return api_key

    async def revoke(self, key_id: str, owner: str) -> ApiKey:
        """Revoke a key. The row is kept for audit.

        Raises:
            NotFoundError: If missing, owned by another user or already revoked
        """
        api_key = await self.get(key_id, owner)
        if api_key.is_revoked:
            raise NotFoundError(f"API key not found: {key_id}")

        api_key.is_revoked = True
        api_key.revoked_at = utcnow()
        await self._db.commit()

        self._log.info("api_key.revoke", key_id=key_id, owner=owner, prefix=api_key.prefix)
        return api_key

    async def rotate(self, key_id: str, owner: str) -> tuple[ApiKey, str]:
        """Revoke a key and create a replacement with the same description."""
        old = await self.revoke(key_id, owner)

        expires_in_days = None
        if old.expires_at is not None:
            remaining = old.expires_at - utcnow()
            expires_in_days = max(1, remaining.days) if remaining.total_seconds() > 0 else None

        new_key, plaintext = await self.create(
            owner,
            description=old.description,
            expires_in_days=expires_in_days,
        )
        self._log.info("api_key.rotate", old_key_id=key_id, new_key_id=new_key.id, owner=owner)
        return new_key, plaintext

    async def authenticate(self, plaintext: str) -> ApiKey:
        """Resolve a plaintext key to its row.

        Raises:
            UnauthorizedError: Malformed, unknown, revoked or expired key
        """
        parts = self.split_key(plaintext)
        if parts is None:
            raise UnauthorizedError("Invalid API key")
        prefix, _ = parts

        result = await self._db.execute(select(ApiKey).where(ApiKey.prefix == prefix))
        api_key = result.scalars().first()

        if api_key is None or not self.verify_key(plaintext, api_key.secret_hash):
            self._log.info("auth.api_key.rejected", prefix=prefix, reason="invalid")
            raise UnauthorizedError("Invalid API key")
        if api_key.is_revoked:
            self._log.info("auth.api_key.rejected", prefix=prefix, reason="revoked")
            raise UnauthorizedError("API key has been revoked")
        if api_key.is_expired(utcnow()):
            self._log.info("auth.api_key.rejected", prefix=prefix, reason="expired")
            raise UnauthorizedError("API key has expired")

        return api_key

    async def touch_last_used(self, key_id: str) -> None:
        """Record a successful authentication."""
        result = await self._db.execute(select(ApiKey).where(ApiKey.id == key_id))
        api_key = result.scalars().first()
        if api_key is None:
            return
        api_key.last_used_at = utcnow()
        await self._db.commit()
