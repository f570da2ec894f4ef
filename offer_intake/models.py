"""Data models for mailbox references, bundles and worker results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from .errors import ErrorKind


class ConnectionState(str, Enum):
    """Lifecycle state of the mailbox connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    LISTENING = "listening"
    ERROR = "error"
    CLOSED = "closed"


class ServiceStatus(str, Enum):
    """Runtime status of the service instance."""

    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


# ------------------------------------------------------------------
# Mailbox side (internal, immutable)
# ------------------------------------------------------------------


@dataclass(frozen=True)
class MimePart:
    """One leaf of a message's BODYSTRUCTURE."""

    part_id: str
    content_type: str
    disposition: str | None = None
    filename: str | None = None
    encoding: str = "7bit"
    charset: str | None = None
    size: int = 0

    @property
    def is_attachment(self) -> bool:
        # Inline parts such as signature logos are not offer documents
        return self.disposition == "attachment"


@dataclass(frozen=True)
class MessageRef:
    """Immutable reference to one unseen message."""

    uid: str
    subject: str = ""
    sender: str = ""
    date: str = ""
    message_id: str = ""
    parts: tuple[MimePart, ...] = ()

    @property
    def body_part(self) -> MimePart | None:
        """First ``text/plain`` part that is not an attachment."""
        for part in self.parts:
            if part.content_type == "text/plain" and part.disposition != "attachment":
                return part
        return None

    @property
    def attachment_parts(self) -> list[MimePart]:
        return [p for p in self.parts if p.is_attachment]


@dataclass
class AttachmentRecord:
    """An attachment derived from one MIME part."""

    part: MimePart
    filename: str
    mime_type: str
    extension: str
    allowed: bool
    payload: bytes | None = field(default=None, repr=False)


# ------------------------------------------------------------------
# Extraction outputs (persisted under extracted/)
# ------------------------------------------------------------------


class ExtractionResult(BaseModel):
    """Successful output of one extraction family handler."""

    ok: Literal[True] = True
    filename: str
    family: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class ExtractionError(BaseModel):
    """Caught handler failure, stored in place of a result."""

    ok: Literal[False] = False
    filename: str
    family: str | None = None
    kind: ErrorKind = ErrorKind.PERMANENT_EXTERNAL
    error: str


# ------------------------------------------------------------------
# Bundle descriptors
# ------------------------------------------------------------------


class AttachmentEntry(BaseModel):
    """One attachment as listed in ``metadata.json``."""

    filename: str
    mime_type: str
    extension: str
    output: str | None = Field(default=None, description="Path of the extraction output, relative to the bundle")
    ok: bool = False


class ContentSummary(BaseModel):
    subject: str = ""
    body: str = ""


class BundleMetadata(BaseModel):
    """Descriptor written to ``metadata.json``."""

    email_id: str = Field(description="Message-ID header, or the UID when absent")
    uid: str
    sender: str = ""
    date: str = ""
    content: ContentSummary = Field(default_factory=ContentSummary)
    attachments: list[AttachmentEntry] = Field(default_factory=list)

    @property
    def all_attachments_ok(self) -> bool:
        return all(a.ok for a in self.attachments)


class AggregateRecord(BaseModel):
    """Combined record written to ``aggregate.json`` and read by workers."""

    uid: str
    subject: str = ""
    body: str = ""
    metadata: BundleMetadata
    attachments: list[dict[str, Any]] = Field(default_factory=list)


class BacklogReport(BaseModel):
    """Counters for one backlog scan."""

    seen: int = 0
    acknowledged: int = 0
    failed: int = 0
    submitted: int = 0


# ------------------------------------------------------------------
# Worker pool
# ------------------------------------------------------------------


class WorkerTask(BaseModel):
    """A bundle waiting for a worker slot."""

    bundle_dir: str
    uid: str
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    admission_deadline: float | None = Field(
        default=None,
        description="Monotonic clock value after which admission is abandoned",
    )


class WorkerOutcome(BaseModel):
    """What a worker reports back to the coordinator."""

    bundle_dir: str
    uid: str = ""
    ok: bool
    error_kind: ErrorKind | None = None
    error: str | None = None
    commit_attempts: int = 0
    destination: str | None = Field(default=None, description="Sheet name the record was written to")


class HealthStatus(BaseModel):
    """Response model for the /health endpoint."""

    service_name: str
    status: ServiceStatus
    uptime_seconds: float
    connection_state: ConnectionState
    details: dict[str, Any] = Field(default_factory=dict)
