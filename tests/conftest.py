"""Shared test fixtures for the offer_intake test suite."""

from __future__ import annotations

import asyncio
import io
import zipfile
from collections.abc import Callable
from pathlib import Path

import pytest
from PIL import Image

from offer_intake.config import (
    EnrichmentConfig,
    ImapConfig,
    OAuthConfig,
    RetryConfig,
    ServiceConfig,
    SheetsConfig,
    StorageConfig,
    WorkerConfig,
)
from offer_intake.errors import ConnectivityError
from offer_intake.models import (
    AggregateRecord,
    AttachmentEntry,
    BundleMetadata,
    ContentSummary,
    MessageRef,
    MimePart,
)


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        host="imap.test.com",
        port=993,
        use_ssl=True,
        username="offers@test.com",
        mailbox="INBOX",
        timeout_seconds=5.0,
        reconnect_delay_seconds=0.01,
        idle_timeout_seconds=1.0,
    )


@pytest.fixture
def worker_config() -> WorkerConfig:
    return WorkerConfig(
        max_workers=2,
        admission_interval_seconds=0.01,
        readiness_poll_interval_seconds=0.01,
        readiness_timeout_seconds=0.05,
    )


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(max_retries=2, initial_delay_seconds=0.01)


@pytest.fixture
def service_config(
    tmp_path: Path,
    imap_config: ImapConfig,
    worker_config: WorkerConfig,
    retry_config: RetryConfig,
) -> ServiceConfig:
    return ServiceConfig(
        name="offer-intake-test",
        health_port=0,
        log_json=False,
        imap=imap_config,
        oauth=OAuthConfig(token_path=str(tmp_path / "token.json")),
        storage=StorageConfig(bundle_root=str(tmp_path / "bundles")),
        worker=worker_config,
        retry=retry_config,
        enrichment=EnrichmentConfig(api_key="sk-test", ocr_enabled=False),
        sheets=SheetsConfig(spreadsheet_id="sheet-123", service_account_file=str(tmp_path / "sa.json")),
    )


@pytest.fixture
def bundle_root(tmp_path: Path) -> Path:
    return tmp_path / "bundles"


# ------------------------------------------------------------------
# Mailbox builders
# ------------------------------------------------------------------


def make_part(
    part_id: str,
    content_type: str = "application/pdf",
    *,
    filename: str | None = None,
    disposition: str | None = "attachment",
    encoding: str = "base64",
    charset: str | None = None,
) -> MimePart:
    return MimePart(
        part_id=part_id,
        content_type=content_type,
        disposition=disposition,
        filename=filename,
        encoding=encoding,
        charset=charset,
    )


def body_part(part_id: str = "1") -> MimePart:
    return MimePart(part_id=part_id, content_type="text/plain", encoding="7bit", charset="utf-8")


def make_ref(uid: str, *attachments: MimePart, subject: str = "Offer HC220") -> MessageRef:
    return MessageRef(
        uid=uid,
        subject=subject,
        sender="Sales <sales@steelworks.test>",
        date="Mon, 01 Jun 2025 12:00:00 +0000",
        message_id=f"<offer-{uid}@steelworks.test>",
        parts=(body_part(), *attachments),
    )


class FakeMailbox:
    """In-memory :class:`MailboxHandle` with programmable failures."""

    def __init__(self) -> None:
        self.messages: dict[str, MessageRef] = {}
        self.payloads: dict[tuple[str, str], bytes] = {}
        self.seen: set[str] = set()
        self.fetch_calls: list[tuple[str, str]] = []
        self.fail_fetch: dict[tuple[str, str], Exception] = {}

    def add(
        self,
        ref: MessageRef,
        payloads: dict[str, bytes] | None = None,
        body: bytes = b"Please find our offer attached.",
    ) -> None:
        """Register *ref*; *payloads* maps part id to decoded bytes."""
        self.messages[ref.uid] = ref
        self.payloads[(ref.uid, "1")] = body
        for part_id, payload in (payloads or {}).items():
            self.payloads[(ref.uid, part_id)] = payload

    async def list_unseen(self) -> list[MessageRef]:
        return [ref for uid, ref in sorted(self.messages.items()) if uid not in self.seen]

    async def fetch_part(self, uid: str, part: MimePart) -> bytes:
        self.fetch_calls.append((uid, part.part_id))
        error = self.fail_fetch.get((uid, part.part_id))
        if error is not None:
            raise error
        return self.payloads.get((uid, part.part_id), b"")

    async def mark_seen(self, uid: str) -> None:
        self.seen.add(uid)


class ScriptedClient(FakeMailbox):
    """FakeMailbox with a scripted connection lifecycle.

    ``connect_errors`` are raised by successive connects; ``idle_results``
    are returned by successive IDLE rounds, after which IDLE blocks
    until :meth:`abort`.
    """

    def __init__(self, connect_errors=(), idle_results=()) -> None:
        super().__init__()
        self.connect_errors = list(connect_errors)
        self.idle_results = list(idle_results)
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.abort_calls = 0
        self.disconnect_error: Exception | None = None
        self.marked_unseen = 0
        self._aborted = asyncio.Event()

    async def connect(self) -> None:
        self.connect_calls += 1
        self._aborted.clear()
        if self.connect_errors:
            raise self.connect_errors.pop(0)

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        if self.disconnect_error is not None:
            raise self.disconnect_error

    async def idle(self, timeout: float) -> bool:
        if self.idle_results:
            result = self.idle_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        await self._aborted.wait()
        raise ConnectivityError("socket aborted")

    def abort(self) -> None:
        self.abort_calls += 1
        self._aborted.set()

    async def mark_all_unseen(self) -> int:
        self.marked_unseen = len(self.seen)
        self.seen.clear()
        return self.marked_unseen


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


class DroppingMailbox(FakeMailbox):
    """Loses the connection on every part fetch."""

    async def fetch_part(self, uid: str, part: MimePart) -> bytes:
        raise ConnectivityError("connection reset by peer")


@pytest.fixture
def mailbox() -> FakeMailbox:
    return FakeMailbox()


# ------------------------------------------------------------------
# File builders
# ------------------------------------------------------------------


def png_bytes(size: tuple[int, int] = (8, 4), color: str = "white") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def docx_bytes(*paragraphs: str) -> bytes:
    ns = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"
    body = "".join(f"<w:p><w:r><w:t>{p}</w:t></w:r></w:p>" for p in paragraphs)
    document = f'<?xml version="1.0" encoding="UTF-8"?><w:document xmlns:w="{ns}"><w:body>{body}</w:body></w:document>'
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("[Content_Types].xml", "<Types/>")
        zf.writestr("word/document.xml", document)
    return buf.getvalue()


def xlsx_bytes(rows: list[list[object]], title: str = "Offer") -> bytes:
    import openpyxl

    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = title
    for row in rows:
        ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def make_aggregate(uid: str = "42", *, content: str = "HC220 1.5x1250 EUR 720/t") -> AggregateRecord:
    metadata = BundleMetadata(
        email_id=f"<offer-{uid}@steelworks.test>",
        uid=uid,
        sender="sales@steelworks.test",
        date="Mon, 01 Jun 2025 12:00:00 +0000",
        content=ContentSummary(subject="Offer", body="See attached"),
        attachments=[
            AttachmentEntry(
                filename="offer.txt",
                mime_type="text/plain",
                extension=".txt",
                output="extracted/offer.txt.json",
                ok=True,
            )
        ],
    )
    return AggregateRecord(
        uid=uid,
        subject="Offer",
        body="See attached",
        metadata=metadata,
        attachments=[{"ok": True, "filename": "offer.txt", "family": "text", "content": content, "metadata": {}}],
    )
