"""InstanceManager - sandbox instance lifecycle.

An instance is created from a built template image for exactly one
project run. It is destroyed when the run fails, when the project is
deleted, or by GC once its TTL passes.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from explorable.config import get_settings
from explorable.drivers.base import ContainerStatus, ExecResult, InstanceSpec
from explorable.errors import ExecutionError, InstanceNotReadyError, InvalidPathError
from explorable.models.instance import SandboxInstance
from explorable.models.template import ReadinessProbe
from explorable.services.http import http_client_manager
from explorable.utils.datetime import utcnow
from explorable.validators.path import resolve_in_workdir

if TYPE_CHECKING:
    from explorable.drivers.base import Driver
    from explorable.managers.template import BuiltImage
    from explorable.models.project import Project

logger = structlog.get_logger()

# Upper bound on a single probe attempt
_PROBE_ATTEMPT_TIMEOUT = 2.0


async def probe_tcp(host: str, port: int) -> bool:
    """True if ``host:port`` accepts a TCP connection."""
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=_PROBE_ATTEMPT_TIMEOUT,
        )
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def probe_http(url: str) -> bool:
    """True if ``url`` answers with a non-5xx status."""
    if http_client_manager.is_started:
        client = http_client_manager.client
        try:
            response = await client.get(url, timeout=_PROBE_ATTEMPT_TIMEOUT)
        except httpx.HTTPError:
            return False
        return response.status_code < 500

    async with httpx.AsyncClient(timeout=_PROBE_ATTEMPT_TIMEOUT) as client:
        try:
            response = await client.get(url)
        except httpx.HTTPError:
            return False
        return response.status_code < 500


class InstanceManager:
    """Manages sandbox instances (one per project run)."""

    def __init__(self, driver: "Driver", db_session: AsyncSession) -> None:
        self._driver = driver
        self._db = db_session
        self._settings = get_settings()
        self._log = logger.bind(manager="instance")

    async def provision(self, project: "Project", built: "BuiltImage") -> SandboxInstance:
        """Create, start and wait for an instance of ``built``.

        The instance is destroyed again if it cannot be started or never
        becomes ready.

        Raises:
            InstanceNotReadyError: Readiness probe did not pass within the
                boot timeout
            ExecutionError: The container exited during boot
        """
        plan = built.plan
        now = utcnow()
        instance = SandboxInstance(
            id=f"sbx-{uuid.uuid4().hex[:12]}",
            project_id=project.id,
            owner_user_id=project.owner_user_id,
            template=built.alias,
            image_ref=built.image_ref,
            created_at=now,
            expires_at=now + timedelta(seconds=self._settings.pipeline.instance_ttl_seconds),
        )
        self._db.add(instance)
        await self._db.commit()

        self._log.info(
            "instance.provision",
            instance_id=instance.id,
            project_id=project.id,
            image_ref=built.image_ref,
        )

        try:
            container_id = await self._driver.create(
                InstanceSpec(
                    instance_id=instance.id,
                    image=built.image_ref,
                    command=plan.start_command,
                    runtime_port=plan.ready.port,
                    cpu_count=plan.resources.cpu_count,
                    memory_mb=plan.resources.memory_mb,
                    labels={
                        "explorable.project_id": project.id,
                        "explorable.owner": project.owner_user_id,
                        "explorable.template": built.alias,
                    },
                )
            )
            instance.container_id = container_id
            await self._db.commit()

            endpoints = await self._driver.start(container_id, runtime_port=plan.ready.port)
            instance.endpoint = endpoints.internal
            instance.public_url = endpoints.public
            await self._db.commit()

            await self.wait_ready(instance, plan.ready)
        except BaseException:
            await self._destroy_quietly(instance)
            raise

        self._log.info("instance.ready", instance_id=instance.id, endpoint=instance.endpoint)
        return instance

    async def wait_ready(self, instance: SandboxInstance, probe: ReadinessProbe) -> None:
        """Poll the readiness probe until it passes or its timeout elapses."""
        timeout = probe.timeout_seconds or self._settings.pipeline.boot_timeout_seconds
        try:
            await asyncio.wait_for(self._poll_ready(instance, probe), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise InstanceNotReadyError(
                message=f"Sandbox did not become ready within {timeout:g}s",
                details={"instance_id": instance.id},
            ) from e

    async def _poll_ready(self, instance: SandboxInstance, probe: ReadinessProbe) -> None:
        url = httpx.URL(instance.endpoint or "")
        host, port = url.host, url.port or probe.port
        delay = probe.interval_seconds

        while True:
            info = await self._driver.status(instance.container_id or "")
            if info.status in (ContainerStatus.EXITED, ContainerStatus.NOT_FOUND):
                raise ExecutionError(
                    message=f"Sandbox exited during boot (exit code {info.exit_code})",
                    details={"instance_id": instance.id},
                )

            if probe.path is None:
                ready = await probe_tcp(host, port)
            else:
                ready = await probe_http(str(url.copy_with(path=probe.path)))

            if ready:
                return

            await asyncio.sleep(delay)
            delay = min(delay * 2, 5.0)

    async def run_command(
        self,
        instance: SandboxInstance,
        command: str,
        *,
        workdir: str | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        """Run ``command`` in the instance, bounded by ``timeout``."""
        timeout = timeout or self._settings.pipeline.install_timeout_seconds
        self._log.info("instance.exec", instance_id=instance.id, workdir=workdir)
        try:
            return await asyncio.wait_for(
                self._driver.exec(instance.container_id or "", command, workdir=workdir),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExecutionError(
                message=f"Command timed out after {timeout:g}s",
                details={"instance_id": instance.id},
            ) from e

    async def write_files(
        self,
        instance: SandboxInstance,
        files: dict[str, str],
        *,
        workdir: str,
    ) -> list[str]:
        """Write text files into the instance.

        Relative paths resolve against ``workdir``.

        Returns:
            Absolute paths written
        """
        resolved: dict[str, bytes] = {}
        for path, content in files.items():
            try:
                target = resolve_in_workdir(path, workdir, field_name="file_path")
            except InvalidPathError as e:
                raise ExecutionError(message=f"Failed to write code to sandbox: {e.message}") from e
            resolved[target] = content.encode()

        if not resolved:
            return []

        timeout = self._settings.pipeline.write_timeout_seconds
        try:
            await asyncio.wait_for(
                self._driver.put_files(instance.container_id or "", resolved),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExecutionError(
                message=f"Failed to write code to sandbox: timed out after {timeout:g}s"
            ) from e

        self._log.info("instance.write_files", instance_id=instance.id, count=len(resolved))
        return sorted(resolved)

    async def get(self, instance_id: str) -> SandboxInstance | None:
        result = await self._db.execute(
            select(SandboxInstance).where(SandboxInstance.id == instance_id)
        )
        return result.scalars().first()

    async def destroy(self, instance: SandboxInstance) -> None:
        """Destroy the instance's container. Idempotent."""
        if instance.destroyed_at is not None:
            return

        if instance.container_id:
            await self._driver.destroy(instance.container_id)

        instance.destroyed_at = utcnow()
        await self._db.commit()
        self._log.info("instance.destroyed", instance_id=instance.id)

    async def _destroy_quietly(self, instance: SandboxInstance) -> None:
        try:
            await self.destroy(instance)
        except Exception as e:
            self._log.warning(
                "instance.destroy_failed",
                instance_id=instance.id,
                error=str(e),
            )

    async def destroy_for_project(self, project_id: str) -> int:
        """Destroy every live instance of a project. Returns the count."""
        result = await self._db.execute(
            select(SandboxInstance).where(
                SandboxInstance.project_id == project_id,
                SandboxInstance.destroyed_at.is_(None),
            )
        )
        instances = list(result.scalars().all())
        for instance in instances:
            await self.destroy(instance)
        return len(instances)

    async def list_expired(self) -> list[SandboxInstance]:
        """Live instances whose TTL has passed."""
        result = await self._db.execute(
            select(SandboxInstance).where(
                SandboxInstance.destroyed_at.is_(None),
                SandboxInstance.expires_at.is_not(None),
                SandboxInstance.expires_at < utcnow(),
            )
        )
        return list(result.scalars().all())
