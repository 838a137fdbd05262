"""Cleanup task contract shared by the GC scheduler and its tasks."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class GCResult:
    """Outcome of one task in one cycle.

    ``cleaned_count`` counts resources reclaimed, ``skipped_count`` those
    left alone because they were still in use, and ``errors`` holds one
    line per item that failed.
    """

    task_name: str = ""
    cleaned_count: int = 0
    skipped_count: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def add_error(self, error: str) -> None:
        self.errors.append(error)


class GCTask(ABC):
    """One kind of cleanup, run once per cycle.

    Implementations report per-item failures through ``GCResult`` and
    keep going; raising aborts only this task for this cycle.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def run(self) -> GCResult:
        ...
