"""Unit tests for ProjectRunner.

Drives full detached runs against FakeDriver and FakeFragmentGenerator and
checks that every run reaches a terminal state with the right message,
and that failed runs reclaim their sandbox.
"""

from __future__ import annotations

import asyncio

import pytest

from explorable.config import get_settings
from explorable.drivers.base import ExecResult
from explorable.errors import ExecutionError
from explorable.managers.project import ProjectManager, ProjectRunner
from explorable.models.project import MessageRole, ProjectStatus
from tests.fakes import FakeDriver, FakeFragmentGenerator, make_fragment


@pytest.fixture
def runner(fake_driver: FakeDriver, session_factory, fake_generator) -> ProjectRunner:
    return ProjectRunner(fake_driver, session_factory, fake_generator)


async def _create(session_factory, fake_driver: FakeDriver, **kwargs) -> str:
    kwargs.setdefault("instruction", "Explain attention")
    kwargs.setdefault("template", "html-developer")
    async with session_factory() as db:
        project = await ProjectManager(fake_driver, db).create(owner="alice", **kwargs)
        return project.id


async def _load(session_factory, fake_driver: FakeDriver, project_id: str):
    async with session_factory() as db:
        projects = ProjectManager(fake_driver, db)
        project = await projects.get(project_id, "alice")
        messages = await projects.messages(project_id)
        return project, messages


async def _run(runner: ProjectRunner, project_id: str) -> None:
    assert await runner.dispatch(project_id) is True
    await runner.wait(project_id)


def _reconfigure(monkeypatch, **env: str) -> None:
    for key, value in env.items():
        monkeypatch.setenv(f"EXPLORABLE_PIPELINE__{key.upper()}", value)
    get_settings.cache_clear()


class TestRunSuccess:
    async def test_queued_project_reaches_complete(
        self, runner: ProjectRunner, session_factory, fake_driver: FakeDriver
    ):
        project_id = await _create(session_factory, fake_driver)

        await _run(runner, project_id)

        project, messages = await _load(session_factory, fake_driver, project_id)
        assert project.status == ProjectStatus.COMPLETE
        assert project.error_message is None
        assert project.result["template"] == "html-developer"
        assert project.result["sandbox_id"].startswith("sbx-")
        assert project.result["url"] == "http://localhost:43000"
        assert project.title == "Attention Explorer"
        assert project.fragment["file_path"] == "index.html"

        assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert messages[0].content == [{"type": "text", "text": "Explain attention"}]

    async def test_code_is_written_into_sandbox(
        self, runner: ProjectRunner, session_factory, fake_driver: FakeDriver
    ):
        project_id = await _create(session_factory, fake_driver)

        await _run(runner, project_id)

        (container_id,) = fake_driver.live_containers
        assert fake_driver.files_of(container_id)["/home/user/index.html"] == (
            b"<html><body>attention</body></html>"
        )

    async def test_install_command_runs_before_write(
        self, session_factory, fake_driver: FakeDriver
    ):
        generator = FakeFragmentGenerator(
            make_fragment(
                has_additional_dependencies=True,
                additional_dependencies=["d3"],
                install_dependencies_command="npm install d3",
            )
        )
        runner = ProjectRunner(fake_driver, session_factory, generator)
        project_id = await _create(session_factory, fake_driver)

        await _run(runner, project_id)

        assert fake_driver.exec_calls[0]["command"] == "npm install d3"
        assert fake_driver.exec_calls[0]["workdir"] == "/home/user"
        project, _ = await _load(session_factory, fake_driver, project_id)
        assert project.status == ProjectStatus.COMPLETE

    async def test_pdf_reference_in_user_message(
        self, runner: ProjectRunner, session_factory, fake_driver: FakeDriver, fake_generator
    ):
        project_id = await _create(
            session_factory, fake_driver, instruction="", pdf_storage_path="alice/1-paper.pdf"
        )

        await _run(runner, project_id)

        _, messages = await _load(session_factory, fake_driver, project_id)
        assert messages[0].content == [{"type": "text", "text": "[File uploaded: 1-paper.pdf]"}]
        assert fake_generator.requests[0].pdf_storage_path == "alice/1-paper.pdf"


class TestRunFailure:
    """Each failure lands in error with a distinguishing message."""

    async def _assert_error(self, session_factory, fake_driver, project_id, expected: str):
        project, _ = await _load(session_factory, fake_driver, project_id)
        assert project.status == ProjectStatus.ERROR
        assert expected in project.error_message
        assert project.result is None
        return project

    async def test_generation_failure(
        self, runner: ProjectRunner, session_factory, fake_driver: FakeDriver, fake_generator
    ):
        fake_generator.error = ExecutionError("Generation service returned 502")
        project_id = await _create(session_factory, fake_driver)

        await _run(runner, project_id)

        await self._assert_error(
            session_factory, fake_driver, project_id, "Generation service returned 502"
        )
        assert fake_driver.create_calls == []

    async def test_build_failure(
        self, runner: ProjectRunner, session_factory, fake_driver: FakeDriver
    ):
        fake_driver.build_error = "apt-get: package not found"
        project_id = await _create(session_factory, fake_driver)

        await _run(runner, project_id)

        await self._assert_error(
            session_factory,
            fake_driver,
            project_id,
            "Sandbox build failed: apt-get: package not found",
        )

    async def test_not_ready_reclaims_instance(
        self, runner: ProjectRunner, session_factory, fake_driver: FakeDriver, ready_probe
    ):
        ready_probe.return_value = False
        project_id = await _create(session_factory, fake_driver)

        await _run(runner, project_id)

        await self._assert_error(
            session_factory, fake_driver, project_id, "Sandbox did not become ready within 1s"
        )
        assert fake_driver.live_containers == []

    async def test_install_failure_reclaims_instance(
        self, session_factory, fake_driver: FakeDriver
    ):
        generator = FakeFragmentGenerator(
            make_fragment(
                has_additional_dependencies=True,
                install_dependencies_command="npm install nope",
            )
        )
        fake_driver.exec_results = [ExecResult(exit_code=1, output="npm ERR! 404 nope")]
        runner = ProjectRunner(fake_driver, session_factory, generator)
        project_id = await _create(session_factory, fake_driver)

        await _run(runner, project_id)

        await self._assert_error(
            session_factory, fake_driver, project_id, "Dependency install failed: exit 1"
        )
        assert fake_driver.live_containers == []

    async def test_generation_timeout(
        self, session_factory, fake_driver: FakeDriver, fake_generator, monkeypatch
    ):
        _reconfigure(monkeypatch, generation_timeout_seconds="0.1")
        fake_generator.delay = 2
        runner = ProjectRunner(fake_driver, session_factory, fake_generator)
        project_id = await _create(session_factory, fake_driver)

        await _run(runner, project_id)

        await self._assert_error(
            session_factory, fake_driver, project_id, "Generation timed out after 0.1s"
        )

    async def test_run_deadline(
        self, session_factory, fake_driver: FakeDriver, fake_generator, monkeypatch
    ):
        _reconfigure(monkeypatch, run_timeout_seconds="0.2")
        fake_generator.delay = 2
        runner = ProjectRunner(fake_driver, session_factory, fake_generator)
        project_id = await _create(session_factory, fake_driver)

        await _run(runner, project_id)

        await self._assert_error(
            session_factory, fake_driver, project_id, "Run exceeded deadline of 0.2s"
        )

    async def test_shutdown_records_interruption(
        self, runner: ProjectRunner, session_factory, fake_driver: FakeDriver, fake_generator
    ):
        fake_generator.delay = 5
        project_id = await _create(session_factory, fake_driver)

        await runner.dispatch(project_id)
        await asyncio.sleep(0.1)
        await runner.shutdown()

        await self._assert_error(session_factory, fake_driver, project_id, "Run interrupted")
        assert runner.active_count == 0


    async def test_cancel_stops_a_live_run(
        self, runner: ProjectRunner, session_factory, fake_driver: FakeDriver, fake_generator
    ):
        fake_generator.delay = 5
        project_id = await _create(session_factory, fake_driver)

        await runner.dispatch(project_id)
        await asyncio.sleep(0.1)

        assert await runner.cancel(project_id) is True
        assert not runner.is_active(project_id)
        await self._assert_error(session_factory, fake_driver, project_id, "Run interrupted")
        assert fake_driver.build_calls == []
        assert fake_driver.create_calls == []

    async def test_cancel_without_live_run(self, runner: ProjectRunner):
        assert await runner.cancel("prj-missing") is False


class TestDispatch:
    async def test_duplicate_dispatch_is_noop(
        self, runner: ProjectRunner, session_factory, fake_driver: FakeDriver, fake_generator
    ):
        fake_generator.delay = 0.2
        project_id = await _create(session_factory, fake_driver)

        assert await runner.dispatch(project_id) is True
        assert await runner.dispatch(project_id) is False
        await runner.wait(project_id)

        assert len(fake_generator.requests) == 1

    async def test_non_queued_project_is_skipped(
        self, runner: ProjectRunner, session_factory, fake_driver: FakeDriver, fake_generator
    ):
        project_id = await _create(session_factory, fake_driver)
        async with session_factory() as db:
            await ProjectManager(fake_driver, db).mark_error(project_id, "cancelled")

        await _run(runner, project_id)

        project, _ = await _load(session_factory, fake_driver, project_id)
        assert project.status == ProjectStatus.ERROR
        assert project.error_message == "cancelled"
        assert fake_generator.requests == []
