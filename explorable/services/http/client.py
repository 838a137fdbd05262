"""Process-wide outbound HTTP client.

Identity checks, fragment generation and sandbox readiness probes all go
through one pooled ``httpx.AsyncClient``. The lifespan opens it before
serving and closes it on shutdown; its timeouts bound every call.
"""

from __future__ import annotations

import httpx
import structlog

from explorable.config import HTTPConfig

logger = structlog.get_logger()


def _build_client(config: HTTPConfig) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        limits=httpx.Limits(
            max_connections=config.max_connections,
            max_keepalive_connections=config.max_keepalive_connections,
            keepalive_expiry=config.keepalive_expiry,
        ),
        timeout=httpx.Timeout(
            connect=config.connect_timeout,
            read=config.read_timeout,
            write=config.write_timeout,
            pool=config.pool_timeout,
        ),
    )


class HTTPClientManager:
    """Owns the lifetime of the shared client."""

    def __init__(self) -> None:
        self._client: httpx.AsyncClient | None = None
        self._log = logger.bind(component="http_client")

    @property
    def is_started(self) -> bool:
        return self._client is not None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("HTTP client used before startup()")
        return self._client

    async def startup(self, config: HTTPConfig | None = None) -> None:
        if self._client is not None:
            self._log.warning("http_client.already_started")
            return

        config = config or HTTPConfig()
        self._client = _build_client(config)
        self._log.info(
            "http_client.started",
            max_connections=config.max_connections,
            read_timeout=config.read_timeout,
        )

    async def shutdown(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()
            self._log.info("http_client.closed")


http_client_manager = HTTPClientManager()


def get_http_client() -> httpx.AsyncClient:
    """The shared client. Raises RuntimeError before lifespan startup."""
    return http_client_manager.client
