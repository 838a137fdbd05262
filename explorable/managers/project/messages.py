"""Conversation message helpers."""

from __future__ import annotations

from typing import Any


def sanitize_content(parts: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Replace inline binary payloads with placeholder text before storage.

    - text / code parts are kept as-is
    - image parts become "[Image uploaded]"
    - file parts become "[File uploaded: <mimeType>]"
    - storage-file parts become "[File uploaded: <filename>]"
    """
    sanitized: list[dict[str, Any]] = []
    for part in parts:
        kind = part.get("type")
        if kind in ("text", "code"):
            sanitized.append(part)
        elif kind == "image":
            sanitized.append({"type": "text", "text": "[Image uploaded]"})
        elif kind == "file":
            sanitized.append(
                {"type": "text", "text": f"[File uploaded: {part.get('mimeType', 'unknown')}]"}
            )
        elif kind == "storage-file":
            name = part.get("filename") or part.get("storagePath", "unknown")
            sanitized.append({"type": "text", "text": f"[File uploaded: {name}]"})
        else:
            sanitized.append({"type": "text", "text": ""})
    return sanitized


def text_part(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}
