"""GC lifecycle management for FastAPI lifespan integration."""

from __future__ import annotations

import structlog

from explorable.api.dependencies import get_driver, get_runner
from explorable.config import GCConfig, get_settings
from explorable.db.session import get_async_session
from explorable.services.gc.base import GCResult, GCTask
from explorable.services.gc.scheduler import GCScheduler
from explorable.services.gc.tasks import ExpiredInstanceGC, StaleRunGC

logger = structlog.get_logger()

_gc_scheduler: GCScheduler | None = None


def _is_run_active(project_id: str) -> bool:
    runner = get_runner()
    return runner is not None and runner.is_active(project_id)


class SessionPerCycleGCScheduler(GCScheduler):
    """GC Scheduler that creates a fresh db session for each cycle.

    Long-lived background sessions would otherwise see stale rows.
    """

    def __init__(self, config: GCConfig) -> None:
        super().__init__(tasks=[], config=config)
        self._driver = get_driver()

    async def _run_cycle(self) -> list[GCResult]:
        settings = get_settings()
        gc_config = settings.gc

        self._log.info("gc.cycle.start")
        results: list[GCResult] = []

        async with get_async_session() as db_session:
            tasks: list[GCTask] = []

            if gc_config.stale_run.enabled:
                tasks.append(
                    StaleRunGC(
                        self._driver,
                        db_session,
                        stale_after_seconds=settings.pipeline.stale_run_seconds,
                        is_run_active=_is_run_active,
                    )
                )

            if gc_config.expired_instance.enabled:
                tasks.append(
                    ExpiredInstanceGC(self._driver, db_session, is_run_active=_is_run_active)
                )

            for task in tasks:
                results.append(await self._run_task(task))

        self._log_cycle_complete(results)
        return results


async def init_gc_scheduler() -> GCScheduler:
    """Initialize the GC scheduler.

    Called during lifespan startup, after database initialization. The
    scheduler always exists so the admin endpoint can trigger a cycle;
    the background loop only starts when ``gc.enabled`` is true.
    """
    global _gc_scheduler

    gc_config = get_settings().gc
    logger.info(
        "gc.init",
        enabled=gc_config.enabled,
        interval_seconds=gc_config.interval_seconds,
        run_on_startup=gc_config.run_on_startup,
        tasks={
            "stale_run": gc_config.stale_run.enabled,
            "expired_instance": gc_config.expired_instance.enabled,
        },
    )

    _gc_scheduler = SessionPerCycleGCScheduler(config=gc_config)

    if not gc_config.enabled:
        logger.info("gc.background_disabled", reason="gc.enabled=false")
        return _gc_scheduler

    if gc_config.run_on_startup:
        try:
            results = await _gc_scheduler.run_once()
            logger.info(
                "gc.run_on_startup.complete",
                cleaned=sum(r.cleaned_count for r in results),
                errors=sum(len(r.errors) for r in results),
            )
        except Exception as e:
            # GC errors never fail startup
            logger.exception("gc.run_on_startup.failed", error=str(e))

    await _gc_scheduler.start()
    return _gc_scheduler


async def shutdown_gc_scheduler() -> None:
    global _gc_scheduler

    if _gc_scheduler is not None:
        await _gc_scheduler.stop()
        _gc_scheduler = None


def get_gc_scheduler() -> GCScheduler | None:
    """Get the current GC scheduler instance."""
    return _gc_scheduler
