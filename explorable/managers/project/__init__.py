from explorable.managers.project.project import ProjectManager, ProjectStatusView
from explorable.managers.project.runner import ProjectRunner

__all__ = ["ProjectManager", "ProjectRunner", "ProjectStatusView"]
