"""Unit tests for message content sanitization."""

from __future__ import annotations

from explorable.managers.project.messages import sanitize_content


class TestSanitizeContent:
    def test_text_and_code_kept(self):
        parts = [{"type": "text", "text": "hi"}, {"type": "code", "text": "print(1)"}]
        assert sanitize_content(parts) == parts

    def test_binary_payloads_replaced(self):
        assert sanitize_content(
            [
                {"type": "image", "image": "data:image/png;base64,AAAA"},
                {"type": "file", "data": "AAAA", "mimeType": "application/pdf"},
                {"type": "storage-file", "storagePath": "u/1-p.pdf", "filename": "1-p.pdf"},
            ]
        ) == [
            {"type": "text", "text": "[Image uploaded]"},
            {"type": "text", "text": "[File uploaded: application/pdf]"},
            {"type": "text", "text": "[File uploaded: 1-p.pdf]"},
        ]

    def test_unknown_part_becomes_empty_text(self):
        assert sanitize_content([{"type": "video"}]) == [{"type": "text", "text": ""}]
