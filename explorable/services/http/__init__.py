"""Shared outbound HTTP client."""

from explorable.services.http.client import (
    HTTPClientManager,
    get_http_client,
    http_client_manager,
)

__all__ = [
    "HTTPClientManager",
    "get_http_client",
    "http_client_manager",
]
