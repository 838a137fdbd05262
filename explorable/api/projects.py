"""Project endpoints for signed-in users (session auth only)."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query, Response
from pydantic import BaseModel, Field

from explorable.api.dependencies import (
    OptionalRunnerDep,
    ProjectManagerDep,
    SessionPrincipalDep,
)
from explorable.models.project import Project, ProjectMessage

router = APIRouter()


class ProjectUpdateRequest(BaseModel):
    title: str | None = Field(default=None, max_length=200)
    description: str | None = Field(default=None, max_length=2000)


class ProjectSummaryResponse(BaseModel):
    id: str
    title: str
    description: str | None
    template: str
    status: str
    created_at: datetime
    updated_at: datetime


class ProjectListResponse(BaseModel):
    items: list[ProjectSummaryResponse]
    next_cursor: str | None = None


class MessageResponse(BaseModel):
    role: str
    content: list[dict[str, Any]]
    created_at: datetime


class ProjectDetailResponse(BaseModel):
    """Full projection of a project."""

    id: str
    title: str
    description: str | None
    template: str
    status: str
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    fragment: dict[str, Any] | None
    result: dict[str, Any] | None
    messages: list[MessageResponse]


def _summary(project: Project) -> ProjectSummaryResponse:
    return ProjectSummaryResponse(
        id=project.id,
        title=project.title,
        description=project.description,
        template=project.template,
        status=project.status.value,
        created_at=project.created_at,
        updated_at=project.updated_at,
    )


def _detail(project: Project, messages: list[ProjectMessage]) -> ProjectDetailResponse:
    return ProjectDetailResponse(
        id=project.id,
        title=project.title,
        description=project.description,
        template=project.template,
        status=project.status.value,
        error_message=project.error_message,
        created_at=project.created_at,
        updated_at=project.updated_at,
        fragment=project.fragment,
        result=project.result,
        messages=[
            MessageResponse(role=m.role.value, content=m.content, created_at=m.created_at)
            for m in messages
        ],
    )


@router.get("", response_model=ProjectListResponse)
async def list_projects(
    principal: SessionPrincipalDep,
    project_mgr: ProjectManagerDep,
    limit: int = Query(50, ge=1, le=200),
    cursor: str | None = None,
) -> ProjectListResponse:
    """List the caller's projects, newest first."""
    projects, next_cursor = await project_mgr.list(principal.user_id, limit=limit, cursor=cursor)
    return ProjectListResponse(items=[_summary(p) for p in projects], next_cursor=next_cursor)


@router.get("/{project_id}", response_model=ProjectDetailResponse)
async def get_project(
    project_id: str,
    principal: SessionPrincipalDep,
    project_mgr: ProjectManagerDep,
) -> ProjectDetailResponse:
    project = await project_mgr.get(project_id, principal.user_id)
    messages = await project_mgr.messages(project.id)
    return _detail(project, messages)


@router.patch("/{project_id}", response_model=ProjectDetailResponse)
async def update_project(
    project_id: str,
    request: ProjectUpdateRequest,
    principal: SessionPrincipalDep,
    project_mgr: ProjectManagerDep,
) -> ProjectDetailResponse:
    """Edit title and description. Omitted fields are unchanged."""
    project = await project_mgr.update(
        project_id,
        principal.user_id,
        title=request.title,
        description=request.description,
    )
    messages = await project_mgr.messages(project.id)
    return _detail(project, messages)


@router.delete("/{project_id}", status_code=204)
async def delete_project(
    project_id: str,
    principal: SessionPrincipalDep,
    project_mgr: ProjectManagerDep,
    runner: OptionalRunnerDep,
) -> Response:
    """Delete a project and reclaim its sandbox.

    A live run is cancelled first so it cannot write to the deleted project
    or start a container for it.
    """
    # Ownership check before touching the run
    await project_mgr.get(project_id, principal.user_id)
    if runner is not None:
        await runner.cancel(project_id)
    await project_mgr.delete(project_id, principal.user_id)
    return Response(status_code=204)
