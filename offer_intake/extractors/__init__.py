"""Attachment extractors grouped by family (document, spreadsheet, image, text)."""

from .base import BaseExtractor
from .documents import DocumentExtractor
from .images import ImageExtractor, NullOcr, OcrEngine, OpenAIVisionOcr, build_ocr_engine
from .registry import ExtractorRegistry
from .spreadsheets import SpreadsheetExtractor
from .text import TextExtractor


def default_registry(ocr: OcrEngine | None = None) -> ExtractorRegistry:
    """Registry with the four built-in families."""
    ocr = ocr or NullOcr()
    registry = ExtractorRegistry()
    registry.register(DocumentExtractor(ocr))
    registry.register(SpreadsheetExtractor())
    registry.register(ImageExtractor(ocr))
    registry.register(TextExtractor())
    return registry


__all__ = [
    "BaseExtractor",
    "DocumentExtractor",
    "ExtractorRegistry",
    "ImageExtractor",
    "NullOcr",
    "OcrEngine",
    "OpenAIVisionOcr",
    "SpreadsheetExtractor",
    "TextExtractor",
    "build_ocr_engine",
    "default_registry",
]
