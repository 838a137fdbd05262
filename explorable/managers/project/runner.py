"""ProjectRunner - detached project runs.

``dispatch`` starts one asyncio task per project. The task's lifetime is
independent of the HTTP request that created the project: it opens its
own DB sessions and reports its outcome only through the project row.

Each phase has its own timeout (generation, template build, boot,
install), and the whole run is bounded by ``pipeline.run_timeout_seconds``.
Any failure moves the project to ``error`` with a message naming the
phase, and reclaims the sandbox instance.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from explorable.concurrency.locks import cleanup_project_lock, get_project_lock
from explorable.config import get_settings
from explorable.errors import BuildError, ExecutionError, ExplorableError
from explorable.managers.instance import InstanceManager
from explorable.managers.project.messages import text_part
from explorable.managers.project.project import ProjectManager
from explorable.managers.template import TemplateBuilder
from explorable.models.project import MessageRole
from explorable.services.generation import GenerationRequest

if TYPE_CHECKING:
    from explorable.drivers.base import Driver
    from explorable.services.generation import FragmentGenerator

logger = structlog.get_logger()

_DEFAULT_COMMENTARY = "Generated interactive visualization."


@dataclass
class _RunState:
    instance_id: str | None = None


def failure_message(exc: BaseException) -> str:
    """Human-readable error_message for a failed run."""
    if isinstance(exc, BuildError):
        return f"Sandbox build failed: {exc.message}"
    if isinstance(exc, ExplorableError):
        return exc.message
    return f"Sandbox execution failed: {exc}"


def paper_preamble(title: str, abstract: str | None) -> str:
    """Lead-in text naming a paper fetched from arXiv."""
    preamble = f'Research Paper: "{title or "Untitled"}"\n\n'
    if abstract:
        preamble += f"Abstract: {abstract}\n\n"
    return preamble


class ProjectRunner:
    """Owns the detached tasks that carry projects to a terminal state.

    Usage:
        runner = ProjectRunner(driver, session_factory, generator)
        await runner.dispatch(project.id)
        ...
        await runner.shutdown()
    """

    def __init__(
        self,
        driver: "Driver",
        session_factory,
        generator: "FragmentGenerator",
    ) -> None:
        self._driver = driver
        self._session_factory = session_factory
        self._generator = generator
        self._settings = get_settings()
        self._tasks: dict[str, asyncio.Task] = {}
        self._log = logger.bind(component="project_runner")

    @property
    def active_count(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    def is_active(self, project_id: str) -> bool:
        task = self._tasks.get(project_id)
        return task is not None and not task.done()

    async def dispatch(self, project_id: str) -> bool:
        """Start a detached run for a queued project.

        Returns:
            True if a run was started; False if one is already active.
            A project that is no longer queued is skipped by the run itself.
        """
        lock = await get_project_lock(project_id)
        async with lock:
            if self.is_active(project_id):
                self._log.info("project.dispatch.duplicate", project_id=project_id)
                return False

            task = asyncio.create_task(self._run(project_id), name=f"project-run:{project_id}")
            self._tasks[project_id] = task
            task.add_done_callback(lambda t, pid=project_id: self._on_done(pid, t))

        self._log.info("project.dispatch", project_id=project_id)
        return True

    def _on_done(self, project_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(project_id) is task:
            del self._tasks[project_id]

    async def wait(self, project_id: str) -> None:
        """Wait for a project's run to finish (tests and admin tooling)."""
        task = self._tasks.get(project_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def cancel(self, project_id: str) -> bool:
        """Cancel a project's live run and wait until it has unwound.

        The cancelled run records ``Run interrupted`` and reclaims its
        sandbox before this returns.

        Returns:
            True if a live run was cancelled
        """
        task = self._tasks.get(project_id)
        if task is None or task.done():
            return False

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        self._log.info("project.run.cancelled", project_id=project_id)
        return True

    async def shutdown(self) -> None:
        """Cancel live runs. Each cancelled run records an error."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        if not tasks:
            return

        self._log.info("project_runner.shutdown", active=len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # Run

    async def _run(self, project_id: str) -> None:
        log = self._log.bind(project_id=project_id)
        state = _RunState()
        deadline = self._settings.pipeline.run_timeout_seconds

        try:
            async with self._session_factory() as db:
                projects = ProjectManager(self._driver, db)
                if not await projects.mark_running(project_id):
                    log.info("project.run.skipped", reason="not_queued")
                    return

            log.info("project.run.start", deadline_seconds=deadline)
            await asyncio.wait_for(self._execute(project_id, state), timeout=deadline)
            log.info("project.run.complete", instance_id=state.instance_id)

        except asyncio.TimeoutError:
            await self._fail(project_id, state, f"Run exceeded deadline of {deadline:g}s")
        except asyncio.CancelledError:
            await self._fail(project_id, state, "Run interrupted")
            raise
        except Exception as e:
            if isinstance(e, ExplorableError):
                log.warning("project.run.failed", error=e.message, code=e.code)
            else:
                log.exception("project.run.crashed", error=str(e))
            await self._fail(project_id, state, failure_message(e))
        finally:
            await cleanup_project_lock(project_id)

    async def _execute(self, project_id: str, state: _RunState) -> None:
        pipeline = self._settings.pipeline

        async with self._session_factory() as db:
            projects = ProjectManager(self._driver, db)
            instances = InstanceManager(self._driver, db)
            builder = TemplateBuilder(self._driver, db)

            project = await projects.load(project_id)

            user_content: list[dict[str, Any]] = []
            instruction = project.instruction
            if project.arxiv_id:
                instruction = paper_preamble(project.title, project.description) + instruction
            if instruction:
                user_content.append(text_part(instruction))
            if project.pdf_storage_path:
                user_content.append(
                    {
                        "type": "storage-file",
                        "storagePath": project.pdf_storage_path,
                        "mimeType": "application/pdf",
                        "filename": project.pdf_storage_path.rsplit("/", 1)[-1],
                    }
                )
            await projects.append_message(project_id, MessageRole.USER, user_content)

            # 1. Generate
            try:
                fragment = await asyncio.wait_for(
                    self._generator.generate(
                        GenerationRequest(
                            project_id=project_id,
                            template=project.template,
                            instruction=instruction,
                            pdf_storage_path=project.pdf_storage_path,
                            messages=[{"role": "user", "content": user_content}],
                        )
                    ),
                    timeout=pipeline.generation_timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                raise ExecutionError(
                    f"Generation timed out after {pipeline.generation_timeout_seconds:g}s"
                ) from e

            await projects.append_message(
                project_id,
                MessageRole.ASSISTANT,
                [text_part(fragment.commentary or _DEFAULT_COMMENTARY)],
            )

            # 2. Ensure the template image
            built = await builder.ensure(project.template)

            # 3. Boot the sandbox
            instance = await instances.provision(project, built)
            state.instance_id = instance.id

            # 4. Dependencies, then code
            install = fragment.install_command
            if install:
                result = await instances.run_command(
                    instance,
                    install,
                    workdir=built.plan.workdir,
                    timeout=pipeline.install_timeout_seconds,
                )
                if not result.ok:
                    tail = result.output.strip()[-500:]
                    raise ExecutionError(
                        f"Dependency install failed: exit {result.exit_code}: {tail}"
                    )

            await instances.write_files(instance, fragment.files(), workdir=built.plan.workdir)

            # 5. Complete
            changed = await projects.mark_complete(
                project_id,
                fragment=fragment.model_dump(mode="json"),
                result={
                    "sandbox_id": instance.id,
                    "template": built.alias,
                    "url": instance.public_url,
                },
                title=fragment.title or None,
                description=fragment.description or None,
            )
            if not changed:
                # Moved to error elsewhere (e.g. stale-run GC); drop the sandbox
                await instances.destroy(instance)

    async def _fail(self, project_id: str, state: _RunState, message: str) -> None:
        """Record the failure and reclaim the instance, in a fresh session."""
        try:
            async with self._session_factory() as db:
                projects = ProjectManager(self._driver, db)
                changed = await projects.mark_error(project_id, message)

                if state.instance_id is not None:
                    instances = InstanceManager(self._driver, db)
                    instance = await instances.get(state.instance_id)
                    if instance is not None:
                        await instances.destroy(instance)

            self._log.info(
                "project.run.error_recorded",
                project_id=project_id,
                changed=changed,
                error_message=message,
            )
        except Exception as e:
            self._log.exception(
                "project.run.error_record_failed",
                project_id=project_id,
                error=str(e),
            )
