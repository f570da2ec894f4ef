"""Abstract base class for attachment extractors."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any


class BaseExtractor(ABC):
    """Turn one attachment file into text plus metadata.

    Implementations may raise; the attachment pipeline converts any
    exception into an ``ExtractionError`` record.
    """

    @property
    @abstractmethod
    def family(self) -> str:
        """Family name recorded in the extraction output."""

    @property
    @abstractmethod
    def extensions(self) -> tuple[str, ...]:
        """Lower-case extensions (with the leading dot) this extractor handles."""

    @abstractmethod
    def extract(self, path: Path, extension: str) -> tuple[str, dict[str, Any]]:
        """Return ``(content, metadata)`` for the file at *path*.

        Synchronous: callers run it in a worker thread.
        """
