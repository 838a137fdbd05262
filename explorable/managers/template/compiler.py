"""Template compiler.

Turns a declarative ``SandboxTemplate`` into a ``BuildPlan``: a Dockerfile,
the files that go into its build context, and a content hash that
identifies this exact step sequence.

All steps are interpreted by one loop, strictly in declaration order.
"""

from __future__ import annotations

import hashlib
import json
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from explorable.errors import BuildError, InvalidPathError
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
from explorable.validators.path import resolve_in_workdir, validate_relative_path

_CONTEXT_DIR = "files"


@dataclass
class BuildPlan:
    """Compiled form of a template, ready to hand to a driver."""

    alias: str
    base_image: str
    dockerfile: str
    context_files: dict[str, bytes]
    # Step kinds in the order they were executed, e.g. ["baseImage", ...]
    executed_steps: list[str]
    packages: dict[str, list[str]]
    workdir: str
    start_command: str
    ready: ReadinessProbe
    resources: ResourceLimits
    content_hash: str
    file_digests: dict[str, str] = field(default_factory=dict)


def _install_instruction(step: InstallPackagesStep) -> str:
    pkgs = " ".join(shlex.quote(p) for p in step.packages)
    if step.manager == "apt":
        return (
            "RUN apt-get update"
            f" && apt-get install -y --no-install-recommends {pkgs}"
            " && rm -rf /var/lib/apt/lists/*"
        )
    if step.manager == "pip":
        return f"RUN pip install --no-cache-dir {pkgs}"
    return f"RUN npm install -g {pkgs}"


def _read_source(source_dir: Path, source: str) -> tuple[str, bytes]:
    try:
        rel = validate_relative_path(source, field_name="copyFile.source")
    except InvalidPathError as e:
        raise BuildError(message=f"Invalid copyFile source {source!r}: {e.message}") from e

    path = source_dir / rel
    if not path.is_file():
        raise BuildError(
            message=f"copyFile source not found: {rel}",
            details={"source": rel, "source_dir": str(source_dir)},
        )
    return rel, path.read_bytes()


def _resolve(path: str, workdir: str, field_name: str) -> str:
    try:
        return resolve_in_workdir(path, workdir, field_name=field_name)
    except InvalidPathError as e:
        raise BuildError(message=f"Invalid {field_name} {path!r}: {e.message}") from e


def compute_content_hash(template: SandboxTemplate, file_digests: dict[str, str]) -> str:
    """Hash the step sequence together with the content of copied files.

    Resource limits are excluded: they apply at instance creation and do not
    change the image.
    """
    payload = {
        "steps": [step.model_dump(mode="json") for step in template.steps],
        "files": dict(sorted(file_digests.items())),
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()
    return hashlib.sha256(encoded).hexdigest()


def compile_template(template: SandboxTemplate, source_root: Path) -> BuildPlan:
    """Compile ``template`` into a BuildPlan.

    Raises:
        BuildError: On structural violations (base image not first or
            repeated, missing or repeated start command, bad copy source).
    """
    if not template.steps or not isinstance(template.steps[0], BaseImageStep):
        raise BuildError(message=f"Template {template.alias!r}: first step must be baseImage")

    source_dir = source_root / template.alias
    lines: list[str] = []
    context_files: dict[str, bytes] = {}
    file_digests: dict[str, str] = {}
    executed: list[str] = []
    packages: dict[str, list[str]] = {}
    workdir = "/"
    base_image = ""
    start: SetStartCommandStep | None = None

    for index, step in enumerate(template.steps):
        if isinstance(step, BaseImageStep):
            if index != 0:
                raise BuildError(
                    message=f"Template {template.alias!r}: baseImage must appear exactly once"
                )
            base_image = step.image
            lines.append(f"FROM {step.image}")

        elif isinstance(step, InstallPackagesStep):
            packages.setdefault(step.manager, []).extend(step.packages)
            lines.append(_install_instruction(step))

        elif isinstance(step, SetWorkdirStep):
            workdir = _resolve(step.path, workdir, "setWorkdir.path")
            lines.append(f"WORKDIR {workdir}")

        elif isinstance(step, CopyFileStep):
            rel, data = _read_source(source_dir, step.source)
            destination = _resolve(step.destination, workdir, "copyFile.destination")
            context_path = f"{_CONTEXT_DIR}/{index}/{rel}"
            context_files[context_path] = data
            file_digests[rel] = hashlib.sha256(data).hexdigest()
            lines.append(f"COPY {json.dumps([context_path, destination])}")

        elif isinstance(step, RunCommandStep):
            lines.append(f"RUN {step.command}")

        elif isinstance(step, SetStartCommandStep):
            if start is not None:
                raise BuildError(
                    message=f"Template {template.alias!r}: setStartCommand must appear exactly once"
                )
            start = step

        executed.append(step.kind)

    if start is None:
        raise BuildError(message=f"Template {template.alias!r}: missing setStartCommand")

    lines.append(f"EXPOSE {start.ready.port}")
    lines.append(f"CMD {json.dumps(['/bin/sh', '-c', start.command])}")

    return BuildPlan(
        alias=template.alias,
        base_image=base_image,
        dockerfile="\n".join(lines) + "\n",
        context_files=context_files,
        executed_steps=executed,
        packages=packages,
        workdir=workdir,
        start_command=start.command,
        ready=start.ready,
        resources=template.resources,
        content_hash=compute_content_hash(template, file_digests),
        file_digests=file_digests,
    )
