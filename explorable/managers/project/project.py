"""ProjectManager - project persistence and lifecycle transitions.

Every user-facing read filters by (id, owner_user_id); a project owned by
someone else is indistinguishable from a missing one.

Status transitions are single-row compare-and-set UPDATEs:

    queued --mark_running--> running --mark_complete--> complete
    queued/running --mark_error--> error

A transition whose precondition no longer holds updates nothing and
returns False, so terminal states are never left and a project is never
run twice.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import case, delete, func, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from explorable.config import get_settings
from explorable.errors import NotFoundError, StoreUnavailableError, ValidationError
from explorable.managers.instance import InstanceManager
from explorable.managers.project.messages import sanitize_content
from explorable.models.project import MessageRole, Project, ProjectMessage, ProjectStatus
from explorable.utils.datetime import utcnow

if TYPE_CHECKING:
    from explorable.drivers.base import Driver

logger = structlog.get_logger()

_MAX_INSTRUCTION_LEN = 10000
_MAX_TITLE_LEN = 200


@dataclass(frozen=True)
class ProjectStatusView:
    """Read-only status projection served to pollers."""

    id: str
    status: ProjectStatus
    error_message: str | None
    updated_at: datetime


def _next_updated_at(now: datetime):
    # updated_at never moves backwards, even if the wall clock does
    return case((Project.updated_at > now, Project.updated_at), else_=now)


class ProjectManager:
    """Manages project rows and their ordered message log."""

    def __init__(self, driver: "Driver", db_session: AsyncSession) -> None:
        self._driver = driver
        self._db = db_session
        self._settings = get_settings()
        self._log = logger.bind(manager="project")

    async def create(
        self,
        *,
        owner: str,
        instruction: str,
        template: str | None = None,
        title: str | None = None,
        pdf_storage_path: str | None = None,
        description: str | None = None,
        arxiv_id: str | None = None,
    ) -> Project:
        """Create a new project in ``queued`` state."""
        template = template or self._settings.templates.default_alias
        if self._settings.get_template(template) is None:
            raise ValidationError(
                message=f"Unknown template: {template}",
                details={"template": template},
            )
        if len(instruction) > _MAX_INSTRUCTION_LEN:
            raise ValidationError(
                message=f"instruction exceeds {_MAX_INSTRUCTION_LEN} characters",
                details={"field": "instruction"},
            )
        if not instruction.strip() and not pdf_storage_path:
            raise ValidationError(
                message="Either instruction or pdf_storage_path must be provided",
                details={"field": "instruction"},
            )

        now = utcnow()
        project = Project(
            id=f"prj-{uuid.uuid4().hex[:16]}",
            owner_user_id=owner,
            title=(title or "Untitled Project")[:_MAX_TITLE_LEN],
            description=description,
            template=template,
            instruction=instruction,
            pdf_storage_path=pdf_storage_path,
            arxiv_id=arxiv_id,
            status=ProjectStatus.QUEUED,
            created_at=now,
            updated_at=now,
        )
        self._db.add(project)
        await self._db.commit()
        await self._db.refresh(project)

        self._log.info(
            "project.create",
            project_id=project.id,
            owner=owner,
            template=template,
        )
        return project

    async def get(self, project_id: str, owner: str) -> Project:
        """Get a project owned by ``owner``.

        Raises:
            NotFoundError: If missing or owned by another user
        """
        result = await self._db.execute(
            select(Project)
            .where(
                Project.id == project_id,
                Project.owner_user_id == owner,
            )
            .execution_options(populate_existing=True)
        )
        project = result.scalars().first()
        if project is None:
            raise NotFoundError(f"Project not found: {project_id}")
        return project

    async def update(
        self,
        project_id: str,
        owner: str,
        *,
        title: str | None = None,
        description: str | None = None,
    ) -> Project:
        """Edit the title and/or description of a project owned by ``owner``.

        Fields left as None are unchanged. Status and results are never touched.

        Raises:
            NotFoundError: If missing or owned by another user
            ValidationError: If the title is blank
        """
        values: dict[str, Any] = {}
        if title is not None:
            if not title.strip():
                raise ValidationError(message="title must not be blank", details={"field": "title"})
            values["title"] = title.strip()[:_MAX_TITLE_LEN]
        if description is not None:
            values["description"] = description

        if values:
            result = await self._db.execute(
                update(Project)
                .where(Project.id == project_id, Project.owner_user_id == owner)
                .values(**values, updated_at=_next_updated_at(utcnow()))
                .execution_options(synchronize_session=False)
            )
            await self._db.commit()
            if result.rowcount != 1:
                raise NotFoundError(f"Project not found: {project_id}")
            self._log.info("project.update", project_id=project_id, fields=sorted(values))

        return await self.get(project_id, owner)

    async def load(self, project_id: str) -> Project:
        """Get a project by id alone. Internal use by the runner and GC."""
        result = await self._db.execute(
            select(Project)
            .where(Project.id == project_id)
            .execution_options(populate_existing=True)
        )
        project = result.scalars().first()
        if project is None:
            raise NotFoundError(f"Project not found: {project_id}")
        return project

    async def list(
        self,
        owner: str,
        *,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[Project], str | None]:
        """List ``owner``'s projects, newest first.

        Returns:
            (projects, next_cursor)
        """
        query = select(Project).where(Project.owner_user_id == owner)

        if cursor:
            anchor = await self.get(cursor, owner)
            query = query.where(
                (Project.created_at < anchor.created_at)
                | ((Project.created_at == anchor.created_at) & (Project.id < anchor.id))
            )

        query = (
            query.order_by(Project.created_at.desc(), Project.id.desc())
            .limit(limit + 1)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(query)
        projects = list(result.scalars().all())

        next_cursor = None
        if len(projects) > limit:
            projects = projects[:limit]
            next_cursor = projects[-1].id

        return projects, next_cursor

    async def get_status(self, project_id: str, owner: str) -> ProjectStatusView:
        """Status projection. Never mutates anything.

        Raises:
            NotFoundError: If missing or owned by another user
            StoreUnavailableError: If the database cannot be reached
        """
        try:
            result = await self._db.execute(
                select(
                    Project.id,
                    Project.status,
                    Project.error_message,
                    Project.updated_at,
                ).where(
                    Project.id == project_id,
                    Project.owner_user_id == owner,
                )
            )
            row = result.first()
        except DBAPIError as e:
            self._log.error("project.status.store_unavailable", error=str(e))
            raise StoreUnavailableError() from e

        if row is None:
            raise NotFoundError(f"Project not found: {project_id}")

        return ProjectStatusView(
            id=row.id,
            status=ProjectStatus(row.status),
            error_message=row.error_message,
            updated_at=row.updated_at,
        )

    # Transitions

    async def _transition(
        self,
        project_id: str,
        expected: tuple[ProjectStatus, ...],
        values: dict[str, Any],
    ) -> bool:
        now = utcnow()
        stmt = (
            update(Project)
            .where(Project.id == project_id, Project.status.in_(expected))
            .values(**values, updated_at=_next_updated_at(now))
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        await self._db.commit()
        return result.rowcount == 1

    async def mark_running(self, project_id: str) -> bool:
        """queued -> running. False if the project was not queued."""
        changed = await self._transition(
            project_id,
            (ProjectStatus.QUEUED,),
            {"status": ProjectStatus.RUNNING},
        )
        self._log.info("project.transition.running", project_id=project_id, changed=changed)
        return changed

    async def mark_complete(
        self,
        project_id: str,
        *,
        fragment: dict[str, Any],
        result: dict[str, Any],
        title: str | None = None,
        description: str | None = None,
    ) -> bool:
        """running -> complete, writing result and fragment in the same UPDATE."""
        values: dict[str, Any] = {
            "status": ProjectStatus.COMPLETE,
            "fragment": fragment,
            "result": result,
            "error_message": None,
        }
        if title:
            values["title"] = title[:_MAX_TITLE_LEN]
        if description:
            values["description"] = description

        changed = await self._transition(project_id, (ProjectStatus.RUNNING,), values)
        self._log.info("project.transition.complete", project_id=project_id, changed=changed)
        return changed

    async def mark_error(self, project_id: str, message: str) -> bool:
        """queued/running -> error with a human-readable message."""
        changed = await self._transition(
            project_id,
            (ProjectStatus.QUEUED, ProjectStatus.RUNNING),
            {"status": ProjectStatus.ERROR, "error_message": message[:2000], "result": None},
        )
        self._log.info(
            "project.transition.error",
            project_id=project_id,
            changed=changed,
            error_message=message,
        )
        return changed

    # Messages

    async def append_message(
        self,
        project_id: str,
        role: MessageRole,
        content: list[dict[str, Any]],
    ) -> ProjectMessage:
        """Append a message at the end of the project's conversation."""
        result = await self._db.execute(
            select(func.max(ProjectMessage.seq)).where(ProjectMessage.project_id == project_id)
        )
        last_seq = result.scalar()
        message = ProjectMessage(
            project_id=project_id,
            seq=0 if last_seq is None else last_seq + 1,
            role=role,
            content=sanitize_content(content),
        )
        self._db.add(message)
        await self._db.commit()
        return message

    async def messages(self, project_id: str) -> list[ProjectMessage]:
        result = await self._db.execute(
            select(ProjectMessage)
            .where(ProjectMessage.project_id == project_id)
            .order_by(ProjectMessage.seq)
        )
        return list(result.scalars().all())

    async def delete(self, project_id: str, owner: str) -> None:
        """Delete a project, its messages and any sandbox it still holds."""
        project = await self.get(project_id, owner)

        instances = InstanceManager(self._driver, self._db)
        await instances.destroy_for_project(project.id)

        await self._db.execute(delete(ProjectMessage).where(ProjectMessage.project_id == project.id))
        await self._db.delete(project)
        await self._db.commit()

        self._log.info("project.delete", project_id=project_id, owner=owner)
