"""On-disk message bundles: the contract between listener and workers.

Layout of ``<root>/<uid>/``::

    subject.txt
    body.txt
    metadata.json
    attachments/<filename>          raw attachment bytes
    extracted/<filename>.json       ExtractionResult or ExtractionError
    stage1-complete                 every attachment extraction settled
    aggregate.json                  combined record read by the worker
    stage2-complete                 aggregate.json is final

The layout must stay stable across restarts: a bundle left with
``stage1-complete`` but no ``stage2-complete`` is finished by running
:meth:`Bundle.combine` again.
"""

from __future__ import annotations

import json
import os
import shutil
from enum import Enum
from pathlib import Path
from typing import Any

import structlog

from .errors import PermanentExternalError
from .models import AggregateRecord, BundleMetadata, ExtractionError, ExtractionResult
from .readiness import ReadinessSignal

logger = structlog.get_logger()

SUBJECT_FILE = "subject.txt"
BODY_FILE = "body.txt"
METADATA_FILE = "metadata.json"
AGGREGATE_FILE = "aggregate.json"
ATTACHMENTS_DIR = "attachments"
EXTRACTED_DIR = "extracted"
STAGE1_MARKER = "stage1-complete"
STAGE2_MARKER = "stage2-complete"


class BundleState(str, Enum):
    """How far a bundle got, judged from its markers."""

    EMPTY = "empty"
    EXTRACTED = "extracted"
    COMBINED = "combined"


def _dump_json(data: Any) -> str:
    # Stable output: combine must be byte-identical when repeated
    return json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


def _atomic_write(path: Path, text: str) -> None:
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)


class Bundle:
    """One message's working directory."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def __repr__(self) -> str:
        return f"Bundle({str(self.path)!r})"

    @property
    def uid(self) -> str:
        return self.path.name

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    def open(cls, root: str | Path, uid: str) -> Bundle:
        """Return the bundle for *uid* under *root*, creating its directories."""
        bundle = cls(Path(root) / uid)
        bundle._ensure_dirs()
        return bundle

    def _ensure_dirs(self) -> None:
        (self.path / ATTACHMENTS_DIR).mkdir(parents=True, exist_ok=True)
        (self.path / EXTRACTED_DIR).mkdir(exist_ok=True)

    def clear(self) -> None:
        """Remove everything in the bundle and start over."""
        if self.path.exists():
            shutil.rmtree(self.path)
        self._ensure_dirs()
        logger.info("bundle_cleared", bundle=str(self.path))

    @property
    def state(self) -> BundleState:
        if self.stage2_marker.exists() and self.aggregate_path.exists():
            return BundleState.COMBINED
        if self.stage1_marker.exists():
            return BundleState.EXTRACTED
        return BundleState.EMPTY

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @property
    def stage1_marker(self) -> Path:
        return self.path / STAGE1_MARKER

    @property
    def stage2_marker(self) -> Path:
        return self.path / STAGE2_MARKER

    @property
    def aggregate_path(self) -> Path:
        return self.path / AGGREGATE_FILE

    @property
    def metadata_path(self) -> Path:
        return self.path / METADATA_FILE

    def attachment_path(self, filename: str) -> Path:
        return self.path / ATTACHMENTS_DIR / filename

    def extraction_path(self, filename: str) -> Path:
        return self.path / EXTRACTED_DIR / f"{filename}.json"

    def relative(self, path: Path) -> str:
        return path.relative_to(self.path).as_posix()

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    def write_content(self, subject: str, body: str) -> None:
        _atomic_write(self.path / SUBJECT_FILE, subject)
        _atomic_write(self.path / BODY_FILE, body)

    def unique_attachment_name(self, filename: str, reserved: set[str] | None = None) -> str:
        """Return *filename*, suffixed with `` (n)`` if already taken.

        A name is taken when its file exists or it is in *reserved*; the
        returned name is added to *reserved*, so attachments whose fetch
        failed keep their name too.
        """
        reserved = set() if reserved is None else reserved
        candidate = filename
        stem, suffix = os.path.splitext(filename)
        n = 1
        while candidate in reserved or self.attachment_path(candidate).exists():
            candidate = f"{stem} ({n}){suffix}"
            n += 1
        reserved.add(candidate)
        return candidate

    def write_attachment(self, filename: str, payload: bytes) -> Path:
        path = self.attachment_path(filename)
        path.write_bytes(payload)
        return path

    def write_extraction(self, filename: str, outcome: ExtractionResult | ExtractionError) -> Path:
        path = self.extraction_path(filename)
        _atomic_write(path, _dump_json(outcome.model_dump(mode="json")))
        return path

    def write_metadata(self, metadata: BundleMetadata) -> None:
        _atomic_write(self.metadata_path, _dump_json(metadata.model_dump(mode="json")))

    def mark_stage1(self) -> None:
        ReadinessSignal.mark(self.stage1_marker)
        logger.info("bundle_stage1_complete", bundle=str(self.path))

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def read_text(self, name: str) -> str:
        path = self.path / name
        return path.read_text(encoding="utf-8") if path.exists() else ""

    def read_metadata(self) -> BundleMetadata:
        return BundleMetadata.model_validate_json(self.metadata_path.read_text(encoding="utf-8"))

    def read_extractions(self) -> list[dict[str, Any]]:
        """All extraction outputs, ordered by file name."""
        outputs = []
        for path in sorted((self.path / EXTRACTED_DIR).glob("*.json")):
            try:
                outputs.append(json.loads(path.read_text(encoding="utf-8")))
            except json.JSONDecodeError as exc:
                logger.warning("extraction_output_unreadable", file=path.name, error=str(exc))
        return outputs

    def read_aggregate(self) -> AggregateRecord:
        return AggregateRecord.model_validate_json(self.aggregate_path.read_text(encoding="utf-8"))

    # ------------------------------------------------------------------
    # Combine
    # ------------------------------------------------------------------

    def combine(self) -> AggregateRecord:
        """Merge subject, body, metadata and extraction outputs.

        Writes ``aggregate.json`` and then the ``stage2-complete`` marker.
        Safe to run again on a bundle that was already combined: the
        aggregate is rebuilt from the same inputs and comes out
        byte-identical.
        """
        if not self.stage1_marker.exists():
            raise PermanentExternalError(f"{self.path} has no {STAGE1_MARKER} marker")

        record = AggregateRecord(
            uid=self.uid,
            subject=self.read_text(SUBJECT_FILE),
            body=self.read_text(BODY_FILE),
            metadata=self.read_metadata(),
            attachments=self.read_extractions(),
        )
        _atomic_write(self.aggregate_path, _dump_json(record.model_dump(mode="json")))
        ReadinessSignal.mark(self.stage2_marker)
        logger.info(
            "bundle_combined",
            bundle=str(self.path),
            attachments=len(record.attachments),
        )
        return record
