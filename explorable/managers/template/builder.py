"""TemplateBuilder - turns sandbox templates into runnable images.

A build is identified by (alias, content_hash). Rebuilding an unchanged
template with the cache enabled is a lookup plus an image existence check;
no step runs. ``skip_cache``, passed per call or set on the template,
forces every step to re-execute.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from explorable.concurrency.locks import get_template_lock
from explorable.config import get_settings
from explorable.errors import BuildError, NotFoundError
from explorable.managers.template.compiler import BuildPlan, compile_template
from explorable.models.template import SandboxTemplate
from explorable.models.template_build import TemplateBuild, TemplateBuildStatus
from explorable.utils.datetime import utcnow

if TYPE_CHECKING:
    from explorable.drivers.base import Driver

logger = structlog.get_logger()


@dataclass
class BuiltImage:
    """Handle to a built template image."""

    alias: str
    image_ref: str
    content_hash: str
    cached: bool
    plan: BuildPlan


class TemplateBuilder:
    """Builds and caches sandbox template images."""

    def __init__(self, driver: "Driver", db_session: AsyncSession) -> None:
        self._driver = driver
        self._db = db_session
        self._settings = get_settings()
        self._log = logger.bind(manager="template")

    def image_ref(self, plan: BuildPlan) -> str:
        prefix = self._settings.driver.image_prefix.rstrip("/")
        return f"{prefix}/{plan.alias}:{plan.content_hash[:12]}"

    def resolve(self, alias: str) -> SandboxTemplate:
        template = self._settings.get_template(alias)
        if template is None:
            raise NotFoundError(f"Template not found: {alias}", details={"alias": alias})
        return template

    async def ensure(self, alias: str) -> BuiltImage:
        """Return a built image for a configured alias, building it if needed."""
        return await self.build(self.resolve(alias))

    async def build(self, template: SandboxTemplate, *, skip_cache: bool = False) -> BuiltImage:
        """Build ``template``.

        Raises:
            BuildError: Compilation or build failure. Not retried here.
        """
        skip_cache = skip_cache or template.skip_cache
        plan = compile_template(template, Path(self._settings.templates.source_root))
        tag = self.image_ref(plan)

        lock = await get_template_lock(template.alias)
        async with lock:
            record = await self._get_record(plan.alias, plan.content_hash)

            if (
                not skip_cache
                and record is not None
                and record.status == TemplateBuildStatus.READY
                and await self._driver.image_exists(record.image_ref)
            ):
                self._log.info(
                    "template.build.cached",
                    alias=plan.alias,
                    content_hash=plan.content_hash,
                    image_ref=record.image_ref,
                )
                return BuiltImage(
                    alias=plan.alias,
                    image_ref=record.image_ref,
                    content_hash=plan.content_hash,
                    cached=True,
                    plan=plan,
                )

            if record is None:
                record = TemplateBuild(
                    alias=plan.alias,
                    content_hash=plan.content_hash,
                    image_ref=tag,
                )
                self._db.add(record)
            record.status = TemplateBuildStatus.BUILDING
            record.error_message = None
            await self._db.commit()

            await self._run_build(plan, tag, record, skip_cache=skip_cache)

        return BuiltImage(
            alias=plan.alias,
            image_ref=tag,
            content_hash=plan.content_hash,
            cached=False,
            plan=plan,
        )

    async def _run_build(
        self,
        plan: BuildPlan,
        tag: str,
        record: TemplateBuild,
        *,
        skip_cache: bool,
    ) -> None:
        timeout = self._settings.pipeline.build_timeout_seconds
        self._log.info(
            "template.build.start",
            alias=plan.alias,
            content_hash=plan.content_hash,
            steps=len(plan.executed_steps),
            skip_cache=skip_cache,
        )

        try:
            await asyncio.wait_for(
                self._driver.build_image(
                    tag,
                    plan.dockerfile,
                    plan.context_files,
                    nocache=skip_cache,
                    pull=self._settings.driver.image_pull_policy == "always",
                    labels={
                        "explorable.template": plan.alias,
                        "explorable.content_hash": plan.content_hash,
                    },
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            await self._mark_failed(record, f"Template build exceeded {timeout:g}s")
            raise BuildError(
                message=f"Template build exceeded {timeout:g}s",
                details={"alias": plan.alias},
            ) from e
        except BuildError as e:
            await self._mark_failed(record, e.message)
            raise
        except Exception as e:
            await self._mark_failed(record, str(e))
            raise BuildError(
                message=f"Template build failed: {e}",
                details={"alias": plan.alias},
            ) from e

        record.status = TemplateBuildStatus.READY
        record.image_ref = tag
        record.built_at = utcnow()
        await self._db.commit()

        self._log.info("template.build.complete", alias=plan.alias, image_ref=tag)

    async def _mark_failed(self, record: TemplateBuild, message: str) -> None:
        record.status = TemplateBuildStatus.FAILED
        record.error_message = message[:2000]
        await self._db.commit()
        self._log.warning(
            "template.build.failed",
            alias=record.alias,
            content_hash=record.content_hash,
            error=message,
        )

    async def _get_record(self, alias: str, content_hash: str) -> TemplateBuild | None:
        result = await self._db.execute(
            select(TemplateBuild).where(
                TemplateBuild.alias == alias,
                TemplateBuild.content_hash == content_hash,
            )
        )
        return result.scalars().first()

    async def list_builds(self, alias: str | None = None) -> list[TemplateBuild]:
        query = select(TemplateBuild).order_by(TemplateBuild.created_at.desc())
        if alias is not None:
            query = query.where(TemplateBuild.alias == alias)
        result = await self._db.execute(query)
        return list(result.scalars().all())
