"""GC scheduler: runs cleanup tasks on an interval or on demand."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from explorable.services.gc.base import GCResult, GCTask

if TYPE_CHECKING:
    from explorable.config import GCConfig

logger = structlog.get_logger()


class GCScheduler:
    """Serial GC cycles over a fixed task list.

    A cycle runs each task in order and always yields one ``GCResult`` per
    task; a task that raises is reported as an error result and the next
    task still runs. ``run_once`` and the background loop share a lock,
    so two cycles never overlap.
    """

    def __init__(self, tasks: list[GCTask], config: "GCConfig") -> None:
        self._tasks = tasks
        self._config = config
        self._log = logger.bind(service="gc_scheduler")

        self._cycle_lock = asyncio.Lock()
        self._loop_task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        """Whether the background loop is alive."""
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def is_busy(self) -> bool:
        return self._cycle_lock.locked()

    async def run_once(self) -> list[GCResult]:
        async with self._cycle_lock:
            return await self._run_cycle()

    async def _run_cycle(self) -> list[GCResult]:
        self._log.info("gc.cycle.start", tasks=[task.name for task in self._tasks])
        results = [await self._run_task(task) for task in self._tasks]
        self._log_cycle_complete(results)
        return results

    def _log_cycle_complete(self, results: list[GCResult]) -> None:
        self._log.info(
            "gc.cycle.complete",
            total_cleaned=sum(r.cleaned_count for r in results),
            total_skipped=sum(r.skipped_count for r in results),
            total_errors=sum(len(r.errors) for r in results),
        )

    async def _run_task(self, task: GCTask) -> GCResult:
        try:
            result = await task.run()
        except Exception as e:
            self._log.exception("gc.task.failed", task=task.name, error=str(e))
            result = GCResult()
            result.add_error(f"Task failed: {e}")

        result.task_name = task.name
        for error in result.errors:
            self._log.warning("gc.task.item_error", task=task.name, error=error)
        self._log.info(
            "gc.task.complete",
            task=task.name,
            cleaned=result.cleaned_count,
            skipped=result.skipped_count,
            errors=len(result.errors),
        )
        return result

    async def start(self) -> None:
        """Start the background loop. A second call is a no-op."""
        if self.is_running:
            self._log.warning("gc.scheduler.already_running")
            return

        self._loop_task = asyncio.create_task(self._loop(), name="gc-scheduler")
        self._log.info("gc.scheduler.started", interval_seconds=self._config.interval_seconds)

    async def stop(self) -> None:
        """Cancel the background loop and wait for it to exit."""
        task, self._loop_task = self._loop_task, None
        if task is None:
            return

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        self._log.info("gc.scheduler.stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as e:
                self._log.exception("gc.scheduler.cycle_error", error=str(e))
            await asyncio.sleep(self._config.interval_seconds)
