"""Explorable error types.

Error codes are stable strings for programmatic handling. Every error
renders to the same JSON envelope via ``to_dict``.
"""

from __future__ import annotations

from typing import Any


class ExplorableError(Exception):
    """Base error for all Explorable exceptions."""

    code: str = "internal_error"
    message: str = "An internal error occurred"
    status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.__class__.message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def headers(self) -> dict[str, str] | None:
        """Extra response headers for this error, if any."""
        return None

    def to_dict(self, request_id: str | None = None) -> dict[str, Any]:
        """Render the error envelope returned by the API."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "request_id": request_id,
                "details": self.details,
            }
        }


class UnauthorizedError(ExplorableError):
    """Missing, invalid, expired or revoked credential (401)."""

    code = "unauthorized"
    message = "Authentication required"
    status_code = 401


class AccessDeniedError(ExplorableError):
    """Authenticated but not the owner of the resource (403)."""

    code = "access_denied"
    message = "Access denied"
    status_code = 403


class NotFoundError(ExplorableError):
    """Resource absent or owned by another user (404)."""

    code = "not_found"
    message = "Resource not found"
    status_code = 404


class ValidationError(ExplorableError):
    """Request validation error (400)."""

    code = "validation_error"
    message = "Validation error"
    status_code = 400


class InvalidPathError(ValidationError):
    """Path failed syntactic validation (400)."""

    code = "invalid_path"
    message = "Invalid path"


class PayloadTooLargeError(ExplorableError):
    """Uploaded payload exceeds the configured limit (413)."""

    code = "payload_too_large"
    message = "Payload too large"
    status_code = 413


class PaperSourceError(ExplorableError):
    """A paper URL could not be resolved or fetched (422)."""

    code = "paper_source_error"
    message = "Could not fetch the paper"
    status_code = 422


class RateLimitedError(ExplorableError):
    """Per-user request quota exhausted (429).

    ``details`` carries ``limit``, ``remaining`` and ``reset`` (epoch
    seconds); the same values are sent as ``X-RateLimit-*`` headers.
    """

    code = "rate_limited"
    message = "Rate limit exceeded"
    status_code = 429

    @property
    def headers(self) -> dict[str, str] | None:
        names = {
            "limit": "X-RateLimit-Limit",
            "remaining": "X-RateLimit-Remaining",
            "reset": "X-RateLimit-Reset",
        }
        return {
            header: str(self.details[key]) for key, header in names.items() if key in self.details
        }


class MisconfiguredError(ExplorableError):
    """A backing service is not configured (500).

    The message stays generic; the reason is only logged.
    """

    code = "misconfigured"
    message = "Service is not configured"
    status_code = 500


class StoreUnavailableError(ExplorableError):
    """The backing store could not be reached (500)."""

    code = "store_unavailable"
    message = "Backing store is unavailable"
    status_code = 500


class BuildError(ExplorableError):
    """Sandbox template compilation or build failure.

    Not retried by the builder; callers decide whether to rebuild.
    """

    code = "build_error"
    message = "Sandbox template build failed"
    status_code = 500


class ExecutionError(ExplorableError):
    """Sandbox run failure.

    Recorded into the project's ``error_message``; never returned to the
    request that created the project.
    """

    code = "execution_error"
    message = "Sandbox execution failed"
    status_code = 500


class InstanceNotReadyError(ExecutionError):
    """Sandbox instance did not pass its readiness probe in time."""

    code = "instance_not_ready"
    message = "Sandbox instance did not become ready"
