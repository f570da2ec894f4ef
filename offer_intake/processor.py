"""MessageProcessor: turn one unseen message into a complete bundle.

For every message: fetch subject and body, fetch allowed attachments,
extract them concurrently, write ``stage1-complete``, combine into
``aggregate.json`` + ``stage2-complete``, then mark the message seen and
hand the bundle to the worker pool.  A message is marked seen only when
every attachment extraction succeeded and both markers exist; anything
less leaves it unseen for the next scan.
"""

from __future__ import annotations

import asyncio
import imaplib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from .attachments import AttachmentPipeline, ExtractionOutcome
from .bundle import Bundle, BundleState
from .errors import ConnectivityError, classify_exception
from .imap_client import MailboxHandle
from .models import (
    AttachmentEntry,
    AttachmentRecord,
    BacklogReport,
    BundleMetadata,
    ContentSummary,
    ExtractionError,
    ExtractionResult,
    MessageRef,
    MimePart,
)

logger = structlog.get_logger()

SubmitFn = Callable[[Bundle], Awaitable[Any]]

# Errors that mean the mailbox handle itself is unusable
_CONNECTION_ERRORS = (imaplib.IMAP4.abort, ConnectivityError)


@dataclass
class MessageResult:
    uid: str
    bundle: Bundle
    acknowledged: bool = False
    submitted: bool = False


def decode_text(payload: bytes, charset: str | None) -> str:
    try:
        return payload.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


class MessageProcessor:
    """Per-message pipeline over a live mailbox handle."""

    def __init__(
        self,
        bundle_root: str | Path,
        pipeline: AttachmentPipeline,
        submit: SubmitFn | None = None,
    ) -> None:
        self._root = Path(bundle_root)
        self._pipeline = pipeline
        self._submit = submit
        self.messages_acknowledged = 0
        self.messages_failed = 0
        self.bundles_submitted = 0

    # ------------------------------------------------------------------
    # Backlog scan
    # ------------------------------------------------------------------

    async def process_backlog(self, handle: MailboxHandle) -> BacklogReport:
        """Process every unseen message, one after another.

        A failing message is logged and skipped.  Connection-level
        errors abort the scan, since every later message would fail the
        same way; the connection manager reconnects.
        """
        refs = await handle.list_unseen()
        report = BacklogReport(seen=len(refs))
        logger.info("backlog_scan_started", unseen=len(refs))

        for ref in refs:
            try:
                result = await self.process_one(handle, ref)
            except _CONNECTION_ERRORS:
                raise
            except Exception as exc:
                self.messages_failed += 1
                report.failed += 1
                logger.exception(
                    "message_processing_failed",
                    uid=ref.uid,
                    error_kind=classify_exception(exc).value,
                )
                continue

            if result.acknowledged:
                report.acknowledged += 1
            else:
                report.failed += 1
            if result.submitted:
                report.submitted += 1

        logger.info("backlog_scan_finished", **report.model_dump())
        return report

    # ------------------------------------------------------------------
    # Single message
    # ------------------------------------------------------------------

    async def process_one(self, handle: MailboxHandle, ref: MessageRef) -> MessageResult:
        bundle = Bundle.open(self._root, ref.uid)
        result = MessageResult(uid=ref.uid, bundle=bundle)

        all_ok = await self._resume(bundle)
        if all_ok is None:
            bundle.clear()
            all_ok = await self._build(handle, ref, bundle)

        if not (all_ok and bundle.state is BundleState.COMBINED):
            logger.warning("message_left_unseen", uid=ref.uid, bundle=str(bundle.path))
            return result

        await handle.mark_seen(ref.uid)
        result.acknowledged = True
        self.messages_acknowledged += 1

        if self._submit is not None:
            task = await self._submit(bundle)
            result.submitted = task is not None
            if result.submitted:
                self.bundles_submitted += 1
        return result

    async def _resume(self, bundle: Bundle) -> bool | None:
        """Pick up a bundle a previous run finished but did not acknowledge.

        Returns True when the bundle is complete (combining again if
        only stage 1 finished), or None when it has to be rebuilt.
        """
        state = bundle.state
        if state is BundleState.EMPTY:
            return None
        try:
            metadata = bundle.read_metadata()
        except (OSError, ValidationError):
            return None
        if not metadata.all_attachments_ok:
            return None

        if state is BundleState.EXTRACTED:
            await asyncio.to_thread(bundle.combine)
        logger.info("bundle_resumed", uid=bundle.uid, state=state.value)
        return True

    async def _build(self, handle: MailboxHandle, ref: MessageRef, bundle: Bundle) -> bool:
        log = logger.bind(uid=ref.uid)

        body = ""
        if ref.body_part is not None:
            body = decode_text(await handle.fetch_part(ref.uid, ref.body_part), ref.body_part.charset)
        bundle.write_content(ref.subject, body)

        records: list[AttachmentRecord] = []
        pending: dict[str, asyncio.Task[ExtractionOutcome]] = {}
        names: set[str] = set()

        for part in ref.attachment_parts:
            record = self._pipeline.prepare(part)
            if not record.allowed:
                log.info(
                    "attachment_skipped",
                    attachment=record.filename,
                    mime_type=record.mime_type,
                    reason="disallowed_type",
                )
                continue

            record.filename = bundle.unique_attachment_name(record.filename, names)
            records.append(record)
            try:
                await self._store(handle, ref.uid, part, bundle, record)
            except _CONNECTION_ERRORS:
                await asyncio.gather(*pending.values(), return_exceptions=True)
                raise
            except Exception as exc:
                kind = classify_exception(exc)
                log.warning("attachment_fetch_failed", attachment=record.filename, error=str(exc))
                error = ExtractionError(filename=record.filename, kind=kind, error=str(exc))
                bundle.write_extraction(record.filename, error)
                continue
            pending[record.filename] = asyncio.create_task(
                asyncio.to_thread(self._pipeline.extract_into, bundle, record)
            )

        metadata = BundleMetadata(
            email_id=ref.message_id or ref.uid,
            uid=ref.uid,
            sender=ref.sender,
            date=ref.date,
            content=ContentSummary(subject=ref.subject, body=body),
            attachments=[
                AttachmentEntry(
                    filename=r.filename,
                    mime_type=r.mime_type,
                    extension=r.extension,
                    output=bundle.relative(bundle.extraction_path(r.filename)),
                )
                for r in records
            ],
        )
        bundle.write_metadata(metadata)

        # Stage 1: every extraction has settled, successfully or not
        outcomes = await asyncio.gather(*pending.values(), return_exceptions=True)
        settled = dict(zip(pending, outcomes))
        for record, entry in zip(records, metadata.attachments):
            # Failed fetches already wrote their error and stay not ok
            if record.filename in settled:
                entry.ok = self._settle(bundle, record, entry, settled[record.filename])

        bundle.write_metadata(metadata)
        bundle.mark_stage1()

        # Stage 2
        await asyncio.to_thread(bundle.combine)

        all_ok = metadata.all_attachments_ok
        log.info(
            "message_bundled",
            bundle=str(bundle.path),
            attachments=len(records),
            failed=sum(1 for a in metadata.attachments if not a.ok),
        )
        return all_ok

    async def _store(
        self,
        handle: MailboxHandle,
        uid: str,
        part: MimePart,
        bundle: Bundle,
        record: AttachmentRecord,
    ) -> None:
        record.payload = await handle.fetch_part(uid, part)
        bundle.write_attachment(record.filename, record.payload)
        logger.debug("attachment_saved", uid=uid, attachment=record.filename, bytes=len(record.payload))

    @staticmethod
    def _settle(
        bundle: Bundle,
        record: AttachmentRecord,
        entry: AttachmentEntry,
        outcome: ExtractionOutcome | BaseException,
    ) -> bool:
        if isinstance(outcome, BaseException):
            # extract() never raises; this is a failure writing the output
            error = ExtractionError(
                filename=record.filename,
                kind=classify_exception(outcome),
                error=f"{type(outcome).__name__}: {outcome}",
            )
            bundle.write_extraction(record.filename, error)
            return False
        if outcome is None:
            entry.output = None
            return True
        return isinstance(outcome, ExtractionResult)
