"""Managers layer - business logic."""

from explorable.managers.instance import InstanceManager
from explorable.managers.project import ProjectManager, ProjectRunner
from explorable.managers.template import TemplateBuilder

__all__ = [
    "InstanceManager",
    "ProjectManager",
    "ProjectRunner",
    "TemplateBuilder",
]
