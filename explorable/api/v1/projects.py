"""Project creation and status endpoints (session or API key auth)."""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter
from pydantic import BaseModel, Field

from explorable.api.dependencies import (
    ArtifactGatewayDep,
    ArxivClientDep,
    PrincipalDep,
    ProjectManagerDep,
    RateLimiterDep,
    RunnerDep,
)
from explorable.errors import ValidationError

router = APIRouter()
_log = structlog.get_logger()


class CreateProjectRequest(BaseModel):
    instruction: str = ""
    template: str | None = None
    title: str | None = Field(default=None, max_length=200)
    # At most one paper source
    pdf_storage_path: str | None = None
    arxiv_url: str | None = None


class CreateProjectResponse(BaseModel):
    id: str
    status: str


class ProjectStatusResponse(BaseModel):
    id: str
    status: str
    error_message: str | None
    updated_at: datetime


@router.post("", response_model=CreateProjectResponse, status_code=202)
async def create_project(
    request: CreateProjectRequest,
    principal: PrincipalDep,
    project_mgr: ProjectManagerDep,
    gateway: ArtifactGatewayDep,
    arxiv: ArxivClientDep,
    limiter: RateLimiterDep,
    runner: RunnerDep,
) -> CreateProjectResponse:
    """Create a project and start its run in the background.

    The response only acknowledges the project; poll the status endpoint
    for the outcome. An ``arxiv_url`` is fetched and stored before the
    project is created.
    """
    limiter.enforce(principal.user_id)

    if request.pdf_storage_path and request.arxiv_url:
        raise ValidationError(
            "Provide either pdf_storage_path or arxiv_url, not both",
            details={"field": "arxiv_url"},
        )

    title = request.title
    description = None
    arxiv_id = None
    pdf_storage_path = None
    if request.pdf_storage_path:
        pdf_storage_path = gateway.require_owned_path(principal, request.pdf_storage_path)
    elif request.arxiv_url:
        paper = await arxiv.ingest(principal, request.arxiv_url, gateway)
        pdf_storage_path = paper.storage_path
        arxiv_id = paper.arxiv_id
        title = title or paper.title
        description = paper.abstract or None

    project = await project_mgr.create(
        owner=principal.user_id,
        instruction=request.instruction,
        template=request.template,
        title=title,
        description=description,
        pdf_storage_path=pdf_storage_path,
        arxiv_id=arxiv_id,
    )
    await runner.dispatch(project.id)

    _log.info(
        "api.project.created",
        project_id=project.id,
        user_id=principal.user_id,
        auth_mode=principal.auth_mode.value,
        arxiv_id=arxiv_id,
    )
    return CreateProjectResponse(id=project.id, status=project.status.value)


@router.get("/{project_id}/status", response_model=ProjectStatusResponse)
async def get_project_status(
    project_id: str,
    principal: PrincipalDep,
    project_mgr: ProjectManagerDep,
) -> ProjectStatusResponse:
    view = await project_mgr.get_status(project_id, principal.user_id)
    return ProjectStatusResponse(
        id=view.id,
        status=view.status.value,
        error_message=view.error_message,
        updated_at=view.updated_at,
    )
