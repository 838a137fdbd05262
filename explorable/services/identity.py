"""Identity resolution.

Turns a request's credential into a ``Principal``. Two credential forms
map to the same principal shape:

- Session: a short-lived bearer token issued by the identity provider,
  validated by asking the provider who it belongs to.
- API key: a long-lived ``sk-exp-`` key, sent as ``X-API-Key`` or as a
  bearer token, validated against the ``api_keys`` table.

Everything downstream depends only on ``Principal.user_id``.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from explorable.config import IdentityConfig
from explorable.errors import MisconfiguredError, UnauthorizedError
from explorable.services.api_key import ApiKeyService, looks_like_api_key
from explorable.services.http import get_http_client

logger = structlog.get_logger()


class AuthMode(str, Enum):
    SESSION = "session"
    API_KEY = "api_key"


class CredentialMode(str, Enum):
    NONE = "none"
    SESSION = "session"
    API_KEY = "api_key"


@dataclass(frozen=True)
class Principal:
    """Resolved identity of a request. Never persisted."""

    user_id: str
    auth_mode: AuthMode


@dataclass(frozen=True)
class Credential:
    mode: CredentialMode
    value: str | None = None


def extract_credential(headers: Mapping[str, str]) -> Credential:
    """Find the caller's credential in request headers.

    ``X-API-Key`` wins. Otherwise a bearer token is an API key when it
    carries the key scheme, and a session token when it does not.
    """
    api_key = (headers.get("x-api-key") or "").strip()
    if api_key:
        return Credential(CredentialMode.API_KEY, api_key)

    auth_header = headers.get("authorization") or ""
    scheme, _, token = auth_header.partition(" ")
    token = token.strip()
    if scheme.lower() == "bearer" and token:
        if looks_like_api_key(token):
            return Credential(CredentialMode.API_KEY, token)
        return Credential(CredentialMode.SESSION, token)

    return Credential(CredentialMode.NONE)


class SessionVerifier(ABC):
    """Validates session tokens with the identity provider."""

    @abstractmethod
    async def verify(self, token: str) -> str:
        """Return the user id the token belongs to.

        Raises:
            UnauthorizedError: Token invalid or expired
            MisconfiguredError: No identity provider configured
        """
        ...


class HttpSessionVerifier(SessionVerifier):
    """Asks the identity provider's ``/user`` endpoint who owns a token."""

    def __init__(self, config: IdentityConfig) -> None:
        self._config = config
        self._log = logger.bind(service="session_verifier")

    async def verify(self, token: str) -> str:
        if not self._config.url:
            self._log.error("auth.session.unconfigured")
            raise MisconfiguredError("Identity provider is not configured")

        headers = {"Authorization": f"Bearer {token}"}
        if self._config.api_key:
            headers["apikey"] = self._config.api_key

        url = f"{self._config.url.rstrip('/')}/user"
        try:
            response = await get_http_client().get(
                url,
                headers=headers,
                timeout=self._config.timeout_seconds,
            )
        except httpx.HTTPError as e:
            self._log.warning("auth.session.provider_unreachable", error=str(e))
            raise UnauthorizedError("Could not validate session") from e

        if response.status_code != 200:
            self._log.info("auth.session.rejected", status_code=response.status_code)
            raise UnauthorizedError("Invalid or expired session")

        try:
            user_id = response.json().get("id")
        except (ValueError, AttributeError):
            user_id = None
        if not user_id:
            raise UnauthorizedError("Invalid or expired session")
        return str(user_id)


class LastUsedTracker:
    """Best-effort ``last_used_at`` updates for API keys.

    Each update runs as a tracked background task with its own DB session.
    Failures are logged and never reach the request that authenticated.
    """

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory
        self._tasks: set[asyncio.Task] = set()
        self._log = logger.bind(component="last_used_tracker")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, key_id: str) -> None:
        task = asyncio.create_task(self._touch(key_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _touch(self, key_id: str) -> None:
        try:
            async with self._session_factory() as db:
                await ApiKeyService(db).touch_last_used(key_id)
        except Exception as e:
            self._log.warning("auth.api_key.touch_failed", key_id=key_id, error=str(e))

    async def drain(self) -> None:
        """Wait for pending updates (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class IdentityResolver:
    """Resolves request headers to a Principal."""

    def __init__(
        self,
        db_session: AsyncSession,
        session_verifier: SessionVerifier,
        tracker: LastUsedTracker | None = None,
    ) -> None:
        self._db = db_session
        self._session_verifier = session_verifier
        self._tracker = tracker

    async def resolve(self, headers: Mapping[str, str]) -> Principal:
        """Resolve the caller.

        Raises:
            UnauthorizedError: No credential, or an invalid, expired or
                revoked one
            MisconfiguredError: Session mode without an identity provider
        """
        credential = extract_credential(headers)

        if credential.mode == CredentialMode.NONE:
            raise UnauthorizedError("Authentication required")

        if credential.mode == CredentialMode.SESSION:
            user_id = await self._session_verifier.verify(credential.value or "")
            logger.debug("auth.success", mode="session", user_id=user_id)
            return Principal(user_id=user_id, auth_mode=AuthMode.SESSION)

        api_key = await ApiKeyService(self._db).authenticate(credential.value or "")
        if self._tracker is not None:
            self._tracker.schedule(api_key.id)
        logger.debug("auth.success", mode="api_key", prefix=api_key.prefix)
        return Principal(user_id=api_key.owner_user_id, auth_mode=AuthMode.API_KEY)
