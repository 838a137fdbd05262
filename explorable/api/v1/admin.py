"""Admin API endpoints.

Template builds and manual GC. Callers must be listed in
``security.admin_user_ids``.
"""

from __future__ import annotations

import time

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from explorable.api.dependencies import AdminDep, TemplateBuilderDep
from explorable.services.gc.lifecycle import get_gc_scheduler

router = APIRouter(prefix="/admin", tags=["admin"])


class TemplateBuildResponse(BaseModel):
    alias: str
    image_ref: str
    content_hash: str
    cached: bool
    steps: list[str]


class GCTaskResult(BaseModel):
    task_name: str
    cleaned_count: int
    skipped_count: int
    errors: list[str]


class GCRunResponse(BaseModel):
    results: list[GCTaskResult]
    total_cleaned: int
    total_errors: int
    duration_ms: int


@router.post("/templates/{alias}/build", response_model=TemplateBuildResponse)
async def build_template(
    alias: str,
    admin: AdminDep,
    builder: TemplateBuilderDep,
    skip_cache: bool = Query(False),
) -> TemplateBuildResponse:
    """Build a configured template. ``skip_cache`` re-runs every step."""
    built = await builder.build(builder.resolve(alias), skip_cache=skip_cache)
    return TemplateBuildResponse(
        alias=built.alias,
        image_ref=built.image_ref,
        content_hash=built.content_hash,
        cached=built.cached,
        steps=built.plan.executed_steps,
    )


@router.post("/gc/run", response_model=GCRunResponse)
async def run_gc(admin: AdminDep) -> GCRunResponse:
    """Run one GC cycle synchronously.

    **Status Codes**:
    - 200: GC executed (even if some items had errors)
    - 423: A cycle is already running
    - 503: Scheduler unavailable
    """
    scheduler = get_gc_scheduler()
    if scheduler is None:
        raise HTTPException(status_code=503, detail="GC scheduler is not available")
    if scheduler.is_busy:
        raise HTTPException(status_code=423, detail="GC is already running")

    start = time.monotonic()
    results = await scheduler.run_once()
    duration_ms = int((time.monotonic() - start) * 1000)

    return GCRunResponse(
        results=[
            GCTaskResult(
                task_name=r.task_name or "unknown",
                cleaned_count=r.cleaned_count,
                skipped_count=r.skipped_count,
                errors=r.errors,
            )
            for r in results
        ],
        total_cleaned=sum(r.cleaned_count for r in results),
        total_errors=sum(len(r.errors) for r in results),
        duration_ms=duration_ms,
    )
