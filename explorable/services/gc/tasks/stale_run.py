"""StaleRunGC - Fail projects whose run stopped making progress.

A project can be left in ``queued`` or ``running`` when the process that
owned its run died. Nothing else will ever move it, so once its
``updated_at`` is older than ``pipeline.stale_run_seconds`` it is moved
to ``error`` and any sandbox it still holds is destroyed.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from explorable.managers.instance import InstanceManager
from explorable.managers.project import ProjectManager
from explorable.models.project import Project, ProjectStatus
from explorable.services.gc.base import GCResult, GCTask
from explorable.utils.datetime import utcnow

if TYPE_CHECKING:
    from explorable.drivers.base import Driver

logger = structlog.get_logger()


def stale_message(status: ProjectStatus, stale_after_seconds: int) -> str:
    if status == ProjectStatus.QUEUED:
        return f"Run was never started (queued for over {stale_after_seconds}s)"
    return f"Run exceeded deadline of {stale_after_seconds}s"


class StaleRunGC(GCTask):
    """GC task for abandoned project runs.

    Trigger condition:
        project.status IN (queued, running)
        AND project.updated_at < now - stale_after_seconds
        AND no live run in this process
    """

    def __init__(
        self,
        driver: "Driver",
        db_session: AsyncSession,
        *,
        stale_after_seconds: int,
        is_run_active: Callable[[str], bool] | None = None,
    ) -> None:
        self._db = db_session
        self._projects = ProjectManager(driver, db_session)
        self._instances = InstanceManager(driver, db_session)
        self._stale_after = stale_after_seconds
        self._is_run_active = is_run_active or (lambda _project_id: False)
        self._log = logger.bind(gc_task="stale_run")

    @property
    def name(self) -> str:
        return "stale_run"

    async def run(self) -> GCResult:
        result = GCResult(task_name=self.name)
        cutoff = utcnow() - timedelta(seconds=self._stale_after)

        await self._db.rollback()

        db_result = await self._db.execute(
            select(Project.id, Project.status).where(
                Project.status.in_([ProjectStatus.QUEUED, ProjectStatus.RUNNING]),
                Project.updated_at < cutoff,
            )
        )
        candidates = [(row.id, ProjectStatus(row.status)) for row in db_result.all()]
        self._log.info("gc.stale_run.found", count=len(candidates))

        for project_id, status in candidates:
            if self._is_run_active(project_id):
                result.skipped_count += 1
                continue

            try:
                # The UPDATE is conditional on status, so a run that just
                # finished elsewhere is left alone
                changed = await self._projects.mark_error(
                    project_id, stale_message(status, self._stale_after)
                )
                if not changed:
                    result.skipped_count += 1
                    continue

                await self._instances.destroy_for_project(project_id)
                result.cleaned_count += 1
                self._log.info("gc.stale_run.failed_project", project_id=project_id, status=status)
            except Exception as e:
                await self._db.rollback()
                self._log.exception("gc.stale_run.item_error", project_id=project_id, error=str(e))
                result.add_error(f"project {project_id}: {e}")

        return result
