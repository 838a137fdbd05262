"""Validation utilities for Explorable."""

from explorable.validators.path import resolve_in_workdir, validate_relative_path

__all__ = ["resolve_in_workdir", "validate_relative_path"]
