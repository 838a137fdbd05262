"""FastAPI dependencies for the Explorable API.

Provides dependency injection for:
- Database sessions
- Driver, fragment generator and the project runner
- Managers and services
- Authentication (dual-mode, session-only, admin)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated

import structlog
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from explorable.config import get_settings
from explorable.db.session import get_session_dependency, get_session_factory
from explorable.drivers.base import Driver
from explorable.drivers.docker import DockerDriver
from explorable.errors import AccessDeniedError, MisconfiguredError, UnauthorizedError
from explorable.managers.project import ProjectManager, ProjectRunner
from explorable.managers.template import TemplateBuilder
from explorable.services.api_key import ApiKeyService
from explorable.services.arxiv import ArxivClient
from explorable.services.artifact_store import ArtifactStoreGateway, LocalObjectStore
from explorable.services.generation import FragmentGenerator, HttpFragmentGenerator
from explorable.services.identity import (
    AuthMode,
    HttpSessionVerifier,
    IdentityResolver,
    LastUsedTracker,
    Principal,
    SessionVerifier,
)
from explorable.services.rate_limit import RateLimiter

logger = structlog.get_logger()

_runner: ProjectRunner | None = None
_tracker: LastUsedTracker | None = None


@lru_cache
def get_driver() -> Driver:
    """Get cached driver instance."""
    settings = get_settings()
    if settings.driver.type == "docker":
        return DockerDriver()
    raise ValueError(f"Unsupported driver type: {settings.driver.type}")


@lru_cache
def get_generator() -> FragmentGenerator:
    return HttpFragmentGenerator(get_settings().generation)


@lru_cache
def get_session_verifier() -> SessionVerifier:
    return HttpSessionVerifier(get_settings().identity)


@lru_cache
def get_artifact_gateway() -> ArtifactStoreGateway:
    """Gateway over the configured store; unconfigured storage fails per request."""
    storage = get_settings().storage
    store = LocalObjectStore(storage.root_path) if storage.root_path else None
    return ArtifactStoreGateway(store, storage)


@lru_cache
def get_arxiv_client() -> ArxivClient:
    return ArxivClient(get_settings().arxiv)


@lru_cache
def get_rate_limiter() -> RateLimiter:
    """Process-wide limiter for project creation."""
    return RateLimiter(get_settings().rate_limit)


# ---- Background components owned by the lifespan ----


def init_runner(
    driver: Driver | None = None,
    generator: FragmentGenerator | None = None,
    session_factory=None,
) -> ProjectRunner:
    """Create the process-wide project runner."""
    global _runner
    _runner = ProjectRunner(
        driver or get_driver(),
        session_factory or get_session_factory(),
        generator or get_generator(),
    )
    return _runner


async def shutdown_runner() -> None:
    global _runner
    if _runner is not None:
        await _runner.shutdown()
        _runner = None


def get_runner() -> ProjectRunner | None:
    return _runner


def get_last_used_tracker() -> LastUsedTracker:
    global _tracker
    if _tracker is None:
        _tracker = LastUsedTracker(get_session_factory())
    return _tracker


async def drain_last_used_tracker() -> None:
    global _tracker
    if _tracker is not None:
        await _tracker.drain()
        _tracker = None


def require_runner() -> ProjectRunner:
    runner = get_runner()
    if runner is None:
        logger.error("project_runner.unavailable")
        raise MisconfiguredError("Project runner is not running")
    return runner


# ---- Managers and services ----

DriverDep = Annotated[Driver, Depends(get_driver)]
SessionDep = Annotated[AsyncSession, Depends(get_session_dependency)]


async def get_project_manager(session: SessionDep, driver: DriverDep) -> ProjectManager:
    return ProjectManager(driver=driver, db_session=session)


async def get_template_builder(session: SessionDep, driver: DriverDep) -> TemplateBuilder:
    return TemplateBuilder(driver=driver, db_session=session)


async def get_api_key_service(session: SessionDep) -> ApiKeyService:
    return ApiKeyService(db_session=session)


# ---- Authentication ----


async def authenticate(
    request: Request,
    session: SessionDep,
    verifier: Annotated[SessionVerifier, Depends(get_session_verifier)],
    tracker: Annotated[LastUsedTracker, Depends(get_last_used_tracker)],
) -> Principal:
    """Resolve the caller from either a session token or an API key.

    Raises:
        UnauthorizedError: No valid credential
    """
    resolver = IdentityResolver(session, verifier, tracker)
    return await resolver.resolve(request.headers)


async def authenticate_session(
    principal: Annotated[Principal, Depends(authenticate)],
) -> Principal:
    """Like ``authenticate``, but API keys are refused."""
    if principal.auth_mode != AuthMode.SESSION:
        raise UnauthorizedError("Session authentication required")
    return principal


async def require_admin(
    principal: Annotated[Principal, Depends(authenticate)],
) -> Principal:
    """Caller must be listed in ``security.admin_user_ids``."""
    if principal.user_id not in get_settings().security.admin_user_ids:
        raise AccessDeniedError("Admin access required")
    return principal


# Type aliases for cleaner dependency injection
ProjectManagerDep = Annotated[ProjectManager, Depends(get_project_manager)]
TemplateBuilderDep = Annotated[TemplateBuilder, Depends(get_template_builder)]
ApiKeyServiceDep = Annotated[ApiKeyService, Depends(get_api_key_service)]
ArtifactGatewayDep = Annotated[ArtifactStoreGateway, Depends(get_artifact_gateway)]
ArxivClientDep = Annotated[ArxivClient, Depends(get_arxiv_client)]
RateLimiterDep = Annotated[RateLimiter, Depends(get_rate_limiter)]
RunnerDep = Annotated[ProjectRunner, Depends(require_runner)]
OptionalRunnerDep = Annotated[ProjectRunner | None, Depends(get_runner)]
PrincipalDep = Annotated[Principal, Depends(authenticate)]
SessionPrincipalDep = Annotated[Principal, Depends(authenticate_session)]
AdminDep = Annotated[Principal, Depends(require_admin)]
