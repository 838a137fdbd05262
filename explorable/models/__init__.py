"""Data models."""

from explorable.models.api_key import ApiKey
from explorable.models.instance import SandboxInstance
from explorable.models.project import MessageRole, Project, ProjectMessage, ProjectStatus
from explorable.models.template import SandboxTemplate
from explorable.models.template_build import TemplateBuild, TemplateBuildStatus

__all__ = [
    "ApiKey",
    "MessageRole",
    "Project",
    "ProjectMessage",
    "ProjectStatus",
    "SandboxInstance",
    "SandboxTemplate",
    "TemplateBuild",
    "TemplateBuildStatus",
]
