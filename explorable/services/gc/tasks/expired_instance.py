"""ExpiredInstanceGC - Destroy sandbox instances that have exceeded their TTL."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from explorable.managers.instance import InstanceManager
from explorable.services.gc.base import GCResult, GCTask
from explorable.utils.datetime import utcnow

if TYPE_CHECKING:
    from explorable.drivers.base import Driver

logger = structlog.get_logger()


class ExpiredInstanceGC(GCTask):
    """GC task for destroying instances past their TTL.

    Trigger condition:
        instance.expires_at < now AND instance.destroyed_at IS NULL

    Instances whose project still has a live run are skipped; the run
    owns them until it reaches a terminal state.
    """

    def __init__(
        self,
        driver: "Driver",
        db_session: AsyncSession,
        *,
        is_run_active: Callable[[str], bool] | None = None,
    ) -> None:
        self._db = db_session
        self._instances = InstanceManager(driver, db_session)
        self._is_run_active = is_run_active or (lambda _project_id: False)
        self._log = logger.bind(gc_task="expired_instance")

    @property
    def name(self) -> str:
        return "expired_instance"

    async def run(self) -> GCResult:
        result = GCResult(task_name=self.name)

        # Fresh transaction so SQLite does not serve a stale snapshot
        await self._db.rollback()

        # Plain values only: a rollback after a failed item expires every
        # loaded row, and touching one afterwards would lazy-load outside
        # the async context
        candidates = [
            (instance.id, instance.project_id)
            for instance in await self._instances.list_expired()
        ]
        self._log.info("gc.expired_instance.found", count=len(candidates))

        for instance_id, project_id in candidates:
            if self._is_run_active(project_id):
                self._log.debug(
                    "gc.expired_instance.skip.run_active",
                    instance_id=instance_id,
                    project_id=project_id,
                )
                result.skipped_count += 1
                continue

            try:
                if await self._reclaim(instance_id):
                    result.cleaned_count += 1
                else:
                    result.skipped_count += 1
            except Exception as e:
                await self._db.rollback()
                self._log.exception(
                    "gc.expired_instance.item_error",
                    instance_id=instance_id,
                    error=str(e),
                )
                result.add_error(f"instance {instance_id}: {e}")

        return result

    async def _reclaim(self, instance_id: str) -> bool:
        """Destroy one instance if it is still live and expired."""
        instance = await self._instances.get(instance_id)
        if instance is None or instance.destroyed_at is not None:
            return False
        if instance.expires_at is None or instance.expires_at >= utcnow():
            return False

        await self._instances.destroy(instance)
        return True
