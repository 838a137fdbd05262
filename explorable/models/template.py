"""Sandbox template definitions.

A template is an ordered list of build steps, each a tagged variant keyed
by ``kind``. Templates are plain pydantic models (not tables): they come
from configuration, and only their build outcome is persisted
(see ``TemplateBuild``).
"""

from __future__ import annotations

import re
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, field_validator

_ALIAS_RE = re.compile(r"^[a-z0-9][a-z0-9._-]{0,62}$")


class ReadinessProbe(BaseModel):
    """How to decide that a booted instance is usable.

    TCP probe when ``path`` is None, otherwise an HTTP GET that must answer
    with a status below 500. ``timeout_seconds`` bounds the whole wait and
    falls back to ``pipeline.boot_timeout_seconds`` when unset.
    """

    port: int = Field(ge=1, le=65535)
    path: str | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)
    interval_seconds: float = Field(default=0.5, gt=0)


class BaseImageStep(BaseModel):
    kind: Literal["baseImage"] = "baseImage"
    image: str = Field(min_length=1)


class InstallPackagesStep(BaseModel):
    kind: Literal["installPackages"] = "installPackages"
    packages: list[str] = Field(min_length=1)
    manager: Literal["apt", "pip", "npm"] = "apt"


class SetWorkdirStep(BaseModel):
    kind: Literal["setWorkdir"] = "setWorkdir"
    path: str = Field(min_length=1)


class CopyFileStep(BaseModel):
    kind: Literal["copyFile"] = "copyFile"
    # Relative to the template's source directory
    source: str
    # Relative to the current working directory, or absolute
    destination: str


class RunCommandStep(BaseModel):
    kind: Literal["runCommand"] = "runCommand"
    command: str = Field(min_length=1)


class SetStartCommandStep(BaseModel):
    kind: Literal["setStartCommand"] = "setStartCommand"
    command: str = Field(min_length=1)
    ready: ReadinessProbe


BuildStep = Annotated[
    Union[
        BaseImageStep,
        InstallPackagesStep,
        SetWorkdirStep,
        CopyFileStep,
        RunCommandStep,
        SetStartCommandStep,
    ],
    Field(discriminator="kind"),
]


class ResourceLimits(BaseModel):
    """Resources granted to each instance booted from the template."""

    cpu_count: float = Field(default=1, gt=0)
    memory_mb: int = Field(default=1024, gt=0)


class SandboxTemplate(BaseModel):
    """Declarative sandbox image description."""

    alias: str
    steps: list[BuildStep]
    resources: ResourceLimits = Field(default_factory=ResourceLimits)
    # Always rebuild: steps pull content that changes upstream
    skip_cache: bool = False

    @field_validator("alias")
    @classmethod
    def _check_alias(cls, value: str) -> str:
        # Alias becomes part of a Docker image reference
        if not _ALIAS_RE.match(value):
            raise ValueError(f"invalid template alias: {value!r}")
        return value
