"""Concurrency utilities for Explorable."""

from explorable.concurrency.locks import (
    cleanup_project_lock,
    get_project_lock,
    get_template_lock,
)

__all__ = ["cleanup_project_lock", "get_project_lock", "get_template_lock"]
