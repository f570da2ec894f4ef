"""Attachment classification, filename decoding and extraction dispatch."""

from __future__ import annotations

import itertools
import re
from dataclasses import dataclass
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from .errors import classify_exception
from .extractors import ExtractorRegistry
from .models import AttachmentRecord, ExtractionError, ExtractionResult, MimePart

if TYPE_CHECKING:
    from .bundle import Bundle

logger = structlog.get_logger()

ALLOWED_EXTENSIONS = frozenset({
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".csv", ".png", ".jpg", ".jpeg", ".txt",
})

# MIME type -> extension used when the filename does not carry a known one
ALLOWED_MIME_TYPES: dict[str, str] = {
    "application/pdf": ".pdf",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "application/vnd.ms-excel": ".xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "text/csv": ".csv",
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "text/plain": ".txt",
}

_RESERVED_CHARS = re.compile(r'[/\\?%*:|"<>\x00-\x1f\x7f]')

ExtractionOutcome = ExtractionResult | ExtractionError | None


@dataclass(frozen=True)
class Classification:
    allowed: bool
    extension: str


def file_extension(filename: str) -> str:
    return Path(filename).suffix.lower()


class FilenameDecoder:
    """Decode MIME encoded-word filenames into safe, non-empty names.

    Owns the counter for synthetic ``unnamed_attachment_<n>`` names, so
    one instance must be shared by everything that names attachments in
    a process.
    """

    def __init__(self) -> None:
        self._unnamed = itertools.count(1)

    def decode(self, raw: str | None) -> str:
        name = ""
        if raw:
            try:
                name = str(make_header(decode_header(raw)))
            except (HeaderParseError, LookupError, UnicodeDecodeError):
                name = raw
        name = _RESERVED_CHARS.sub("-", name).strip()
        if name in ("", ".", ".."):
            name = f"unnamed_attachment_{next(self._unnamed)}"
        return name


class AttachmentPipeline:
    """Classify attachments and run the matching extractor on each file."""

    def __init__(self, registry: ExtractorRegistry, decoder: FilenameDecoder | None = None) -> None:
        self._registry = registry
        self._decoder = decoder or FilenameDecoder()

    @property
    def decoder(self) -> FilenameDecoder:
        return self._decoder

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    @staticmethod
    def classify(filename: str, mime_type: str) -> Classification:
        """Allowed when either the extension or the MIME type is allowed."""
        extension = file_extension(filename)
        mime_type = mime_type.lower()
        if extension in ALLOWED_EXTENSIONS:
            return Classification(allowed=True, extension=extension)
        if mime_type in ALLOWED_MIME_TYPES:
            return Classification(allowed=True, extension=ALLOWED_MIME_TYPES[mime_type])
        return Classification(allowed=False, extension=extension)

    def prepare(self, part: MimePart) -> AttachmentRecord:
        """Build an :class:`AttachmentRecord` (without payload) for *part*."""
        filename = self._decoder.decode(part.filename)
        classification = self.classify(filename, part.content_type)
        return AttachmentRecord(
            part=part,
            filename=filename,
            mime_type=part.content_type,
            extension=classification.extension,
            allowed=classification.allowed,
        )

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def extract(self, file_path: str | Path, extension: str) -> ExtractionOutcome:
        """Run the extractor registered for *extension*.

        Returns ``None`` for unsupported extensions.  Never raises: any
        extractor failure comes back as an :class:`ExtractionError`.
        """
        file_path = Path(file_path)
        extractor = self._registry.get(extension)
        if extractor is None:
            logger.info("attachment_unsupported", file=file_path.name, extension=extension)
            return None

        try:
            content, metadata = extractor.extract(file_path, extension)
        except Exception as exc:
            kind = classify_exception(exc)
            logger.warning(
                "attachment_extraction_failed",
                file=file_path.name,
                family=extractor.family,
                error_kind=kind.value,
                error=str(exc),
            )
            return ExtractionError(
                filename=file_path.name,
                family=extractor.family,
                kind=kind,
                error=f"{type(exc).__name__}: {exc}",
            )

        logger.info(
            "attachment_extracted",
            file=file_path.name,
            family=extractor.family,
            chars=len(content),
        )
        return ExtractionResult(
            filename=file_path.name,
            family=extractor.family,
            content=content,
            metadata=metadata,
        )

    def extract_into(self, bundle: Bundle, record: AttachmentRecord) -> ExtractionOutcome:
        """Extract a stored attachment and write the output into *bundle*."""
        outcome = self.extract(bundle.attachment_path(record.filename), record.extension)
        if outcome is not None:
            bundle.write_extraction(record.filename, outcome)
        return outcome
