"""Extractor registry: maps file extensions to extractor instances."""

from __future__ import annotations

import structlog

from .base import BaseExtractor

logger = structlog.get_logger()


class ExtractorRegistry:
    """Registry of extractors, keyed by lower-case extension."""

    def __init__(self) -> None:
        self._extractors: dict[str, BaseExtractor] = {}

    def register(self, extractor: BaseExtractor) -> None:
        """Register *extractor* for every extension it declares."""
        for ext in extractor.extensions:
            self._extractors[ext.lower()] = extractor
        logger.debug(
            "extractor_registered",
            family=extractor.family,
            extensions=list(extractor.extensions),
        )

    def get(self, extension: str) -> BaseExtractor | None:
        """Look up an extractor by extension. Returns None if unsupported."""
        return self._extractors.get(extension.lower())

    @property
    def supported_extensions(self) -> list[str]:
        return sorted(self._extractors)
