"""In-memory locks for concurrency control.

- Template locks serialize builds of one alias (TemplateBuilder).
- Project locks serialize dispatch of one project (ProjectRunner).

These locks only work within a single process. Across processes the
compare-and-set status updates in ProjectManager are what prevent a
project from running twice.
"""

from __future__ import annotations

import asyncio

_template_locks: dict[str, asyncio.Lock] = {}
_project_locks: dict[str, asyncio.Lock] = {}
_locks_lock = asyncio.Lock()


async def _get_lock(table: dict[str, asyncio.Lock], key: str) -> asyncio.Lock:
    async with _locks_lock:
        if key not in table:
            table[key] = asyncio.Lock()
        return table[key]


async def get_template_lock(alias: str) -> asyncio.Lock:
    """Get or create the build lock for a template alias."""
    return await _get_lock(_template_locks, alias)


async def get_project_lock(project_id: str) -> asyncio.Lock:
    """Get or create the dispatch lock for a project."""
    return await _get_lock(_project_locks, project_id)


async def cleanup_project_lock(project_id: str) -> None:
    """Drop the lock of a project whose run has finished."""
    async with _locks_lock:
        _project_locks.pop(project_id, None)


def get_lock_count() -> int:
    """Get current number of locks (for testing/metrics)."""
    return len(_template_locks) + len(_project_locks)
