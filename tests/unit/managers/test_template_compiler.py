"""Unit tests for the template compiler.

Covers step interpretation order, structural validation and the content
hash that keys the build cache.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from explorable.config import Settings
from explorable.errors import BuildError
from explorable.managers.template.compiler import compile_template
from explorable.models.template import (
    BaseImageStep,
    CopyFileStep,
    InstallPackagesStep,
    ReadinessProbe,
    ResourceLimits,
    RunCommandStep,
    SandboxTemplate,
    SetStartCommandStep,
    SetWorkdirStep,
)


def _start(command: str = "python -m http.server 8000") -> SetStartCommandStep:
    return SetStartCommandStep(command=command, ready=ReadinessProbe(port=8000))


def _template(*steps, alias: str = "demo", resources: ResourceLimits | None = None):
    return SandboxTemplate(
        alias=alias,
        steps=list(steps),
        resources=resources or ResourceLimits(),
    )


@pytest.fixture
def source_root(tmp_path: Path) -> Path:
    root = tmp_path / "templates"
    (root / "demo").mkdir(parents=True)
    (root / "demo" / "index.html").write_text("<h1>demo</h1>")
    (root / "demo" / "app.js").write_text("console.log(1)")
    return root


class TestCompileHtmlDeveloper:
    """The bundled html-developer template compiles to an 8-step build."""

    def test_executes_steps_in_declaration_order(self, settings: Settings):
        template = settings.get_template("html-developer")
        plan = compile_template(template, Path(settings.templates.source_root))

        assert plan.executed_steps == [
            "baseImage",
            "installPackages",
            "setWorkdir",
            "copyFile",
            "copyFile",
            "copyFile",
            "runCommand",
            "setStartCommand",
        ]
        assert plan.base_image == "node:24-slim"
        assert plan.workdir == "/home/user"
        assert plan.ready.port == 3000
        assert plan.packages == {"apt": ["curl", "git"]}

    def test_dockerfile_mirrors_steps(self, settings: Settings):
        template = settings.get_template("html-developer")
        plan = compile_template(template, Path(settings.templates.source_root))
        lines = plan.dockerfile.splitlines()

        assert lines[0] == "FROM node:24-slim"
        assert lines[1].startswith("RUN apt-get update")
        assert lines[2] == "WORKDIR /home/user"
        assert lines[3] == "COPY " + json.dumps(["files/3/index.html", "/home/user/index.html"])
        assert lines[6] == "RUN ls -al"
        assert lines[-2] == "EXPOSE 3000"
        assert lines[-1] == "CMD " + json.dumps(
            ["/bin/sh", "-c", "npx http-server . -a 0.0.0.0 -p 3000 --cors"]
        )

    def test_copied_files_are_in_build_context(self, settings: Settings):
        template = settings.get_template("html-developer")
        plan = compile_template(template, Path(settings.templates.source_root))

        assert set(plan.context_files) == {
            "files/3/index.html",
            "files/4/style.css",
            "files/5/main.js",
        }
        assert b"<html" in plan.context_files["files/3/index.html"]


class TestCompileStructure:
    """Structural violations are rejected with BuildError."""

    def test_base_image_must_be_first(self, source_root: Path):
        template = _template(RunCommandStep(command="true"), BaseImageStep(image="python:3.12"), _start())
        with pytest.raises(BuildError, match="first step must be baseImage"):
            compile_template(template, source_root)

    def test_base_image_only_once(self, source_root: Path):
        template = _template(
            BaseImageStep(image="python:3.12"),
            BaseImageStep(image="node:24"),
            _start(),
        )
        with pytest.raises(BuildError, match="exactly once"):
            compile_template(template, source_root)

    def test_start_command_required(self, source_root: Path):
        template = _template(BaseImageStep(image="python:3.12"))
        with pytest.raises(BuildError, match="missing setStartCommand"):
            compile_template(template, source_root)

    def test_start_command_only_once(self, source_root: Path):
        template = _template(BaseImageStep(image="python:3.12"), _start(), _start("other"))
        with pytest.raises(BuildError, match="setStartCommand must appear exactly once"):
            compile_template(template, source_root)

    def test_missing_copy_source(self, source_root: Path):
        template = _template(
            BaseImageStep(image="python:3.12"),
            CopyFileStep(source="missing.txt", destination="missing.txt"),
            _start(),
        )
        with pytest.raises(BuildError, match="not found"):
            compile_template(template, source_root)

    def test_copy_source_cannot_escape(self, source_root: Path):
        template = _template(
            BaseImageStep(image="python:3.12"),
            CopyFileStep(source="../../etc/passwd", destination="passwd"),
            _start(),
        )
        with pytest.raises(BuildError, match="Invalid copyFile source"):
            compile_template(template, source_root)


class TestCompileWorkdir:
    """Workdir: last value wins; relative paths resolve against it."""

    def test_last_workdir_wins(self, source_root: Path):
        template = _template(
            BaseImageStep(image="python:3.12"),
            SetWorkdirStep(path="/srv"),
            SetWorkdirStep(path="app"),
            CopyFileStep(source="index.html", destination="index.html"),
            _start(),
        )
        plan = compile_template(template, source_root)

        assert plan.workdir == "/srv/app"
        assert '"/srv/app/index.html"' in plan.dockerfile

    def test_packages_accumulate_per_manager(self, source_root: Path):
        template = _template(
            BaseImageStep(image="python:3.12"),
            InstallPackagesStep(packages=["curl"]),
            InstallPackagesStep(packages=["numpy"], manager="pip"),
            InstallPackagesStep(packages=["git"]),
            _start(),
        )
        plan = compile_template(template, source_root)

        assert plan.packages == {"apt": ["curl", "git"], "pip": ["numpy"]}


class TestContentHash:
    """The content hash identifies steps plus copied file content."""

    def _base(self, **kwargs) -> SandboxTemplate:
        return _template(
            BaseImageStep(image="python:3.12"),
            CopyFileStep(source="index.html", destination="index.html"),
            _start(),
            **kwargs,
        )

    def test_stable_for_same_input(self, source_root: Path):
        assert (
            compile_template(self._base(), source_root).content_hash
            == compile_template(self._base(), source_root).content_hash
        )

    def test_changes_with_file_content(self, source_root: Path):
        before = compile_template(self._base(), source_root).content_hash
        (source_root / "demo" / "index.html").write_text("<h1>changed</h1>")
        after = compile_template(self._base(), source_root).content_hash
        assert before != after

    def test_changes_with_steps(self, source_root: Path):
        other = _template(
            BaseImageStep(image="python:3.13"),
            CopyFileStep(source="index.html", destination="index.html"),
            _start(),
        )
        assert (
            compile_template(self._base(), source_root).content_hash
            != compile_template(other, source_root).content_hash
        )

    def test_ignores_resources(self, source_root: Path):
        small = self._base(resources=ResourceLimits(cpu_count=1, memory_mb=512))
        large = self._base(resources=ResourceLimits(cpu_count=8, memory_mb=8192))
        assert (
            compile_template(small, source_root).content_hash
            == compile_template(large, source_root).content_hash
        )
