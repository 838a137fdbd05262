"""Path checks for template sources, sandbox writes and storage keys.

Every check is syntactic. Paths are normalized in pure POSIX form and
must stay under whatever root they are later joined onto.
"""

from __future__ import annotations

from pathlib import PurePosixPath

from explorable.errors import InvalidPathError


def _invalid(field_name: str, reason: str, message: str) -> InvalidPathError:
    return InvalidPathError(
        message=f"{field_name} {message}",
        details={"field": field_name, "reason": reason},
    )


def _fold(parts: tuple[str, ...], field_name: str) -> list[str]:
    """Collapse ``.`` and ``..`` segments; ``..`` above the root is an error."""
    kept: list[str] = []
    for part in parts:
        if part == ".":
            continue
        if part != "..":
            kept.append(part)
        elif kept:
            kept.pop()
        else:
            raise _invalid(field_name, "path_traversal", "escapes its root directory")
    return kept


def validate_relative_path(path: str, *, field_name: str = "path") -> str:
    """Normalize a relative path, rejecting anything that leaves its root.

    Empty, absolute and NUL-containing paths are refused. An input that
    folds down to nothing (``"."``, ``"a/.."``) normalizes to ``"."``.

    >>> validate_relative_path("./a/b/../c.txt")
    'a/c.txt'

    Raises:
        InvalidPathError: With ``details.reason`` naming the rule broken
    """
    if not path:
        raise _invalid(field_name, "empty_path", "cannot be empty")
    if "\x00" in path:
        raise _invalid(field_name, "null_byte", "contains invalid characters")

    pure = PurePosixPath(path)
    if pure.is_absolute():
        raise _invalid(field_name, "absolute_path", "must be a relative path")

    return "/".join(_fold(pure.parts, field_name)) or "."


def resolve_in_workdir(path: str, workdir: str, *, field_name: str = "path") -> str:
    """Absolute sandbox path for ``path`` relative to ``workdir``.

    Absolute inputs are only normalized.
    """
    if "\x00" in path:
        raise _invalid(field_name, "null_byte", "contains invalid characters")

    if path.startswith("/"):
        base, rel = "/", path.lstrip("/") or "."
    else:
        base, rel = workdir.rstrip("/") or "/", path

    normalized = validate_relative_path(rel, field_name=field_name)
    if normalized == ".":
        return base
    return f"/{normalized}" if base == "/" else f"{base}/{normalized}"
