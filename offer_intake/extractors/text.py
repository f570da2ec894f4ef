"""Generic plain-text extractor."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from .base import BaseExtractor

MAX_TEXT_CHARS = 1_000_000


class TextExtractor(BaseExtractor):
    family = "text"
    extensions = (".txt",)

    def extract(self, path: Path, extension: str) -> tuple[str, dict[str, Any]]:
        raw = path.read_bytes()
        text = raw.decode("utf-8", errors="replace")
        truncated = len(text) > MAX_TEXT_CHARS
        return text[:MAX_TEXT_CHARS], {"bytes": len(raw), "truncated": truncated}
