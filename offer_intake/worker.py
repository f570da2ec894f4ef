"""Worker task: wait for a bundle, enrich it, commit the result.

:func:`run_worker_task` is the entry point executed in a pool process.
It only needs the bundle directory and the service configuration; the
bundle's marker files tell it when the listener has finished writing.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol

import structlog
from pydantic import ValidationError

from .bundle import Bundle
from .config import ServiceConfig
from .enrichment import OfferEnricher, OfferRecord
from .errors import ErrorKind, ReadinessTimeout, classify_exception
from .logging import setup_logging_from_config
from .models import AggregateRecord, WorkerOutcome
from .readiness import ReadinessSignal
from .retry import RetryExecutor
from .sheets import CommitAck, SheetsCommitter

logger = structlog.get_logger()


class Enricher(Protocol):
    def enrich(self, record: AggregateRecord) -> OfferRecord: ...


class Committer(Protocol):
    def commit(self, offer: OfferRecord, *, key: str) -> CommitAck: ...


async def process_bundle(
    bundle_dir: str | Path,
    *,
    readiness: ReadinessSignal,
    readiness_timeout: float,
    enricher: Enricher,
    committer: Committer,
    retry: RetryExecutor,
) -> WorkerOutcome:
    """Run enrichment and commit for one bundle.  Never raises.

    The bundle is only read: a failed or refused bundle stays on disk
    exactly as the listener left it.
    """
    bundle = Bundle(bundle_dir)
    log = logger.bind(bundle=str(bundle.path), uid=bundle.uid)

    def failed(kind: ErrorKind, error: str, attempts: int = 0) -> WorkerOutcome:
        log.error("worker_task_failed", error_kind=kind.value, error=error)
        return WorkerOutcome(
            bundle_dir=str(bundle.path),
            uid=bundle.uid,
            ok=False,
            error_kind=kind,
            error=error,
            commit_attempts=attempts,
        )

    try:
        await readiness.await_file(bundle.stage1_marker, readiness_timeout)
        await readiness.await_file(bundle.stage2_marker, readiness_timeout)
        record = bundle.read_aggregate()
    except ReadinessTimeout as exc:
        return failed(ErrorKind.TIMEOUT, str(exc))
    except (OSError, ValidationError) as exc:
        return failed(ErrorKind.PERMANENT_EXTERNAL, f"unreadable aggregate: {exc}")

    enriched = await retry.arun(lambda: asyncio.to_thread(enricher.enrich, record))
    if not enriched.ok:
        assert enriched.error_kind is not None
        return failed(enriched.error_kind, str(enriched.error))
    offer = enriched.value
    assert offer is not None
    log.info("bundle_enriched", products=len(offer.products))

    committed = await retry.arun(
        lambda: asyncio.to_thread(committer.commit, offer, key=record.uid),
    )
    if not committed.ok:
        assert committed.error_kind is not None
        return failed(committed.error_kind, str(committed.error), committed.attempts)

    ack = committed.value
    assert ack is not None
    log.info("worker_task_succeeded", sheet=ack.sheet_name, commit_attempts=committed.attempts)
    return WorkerOutcome(
        bundle_dir=str(bundle.path),
        uid=bundle.uid,
        ok=True,
        commit_attempts=committed.attempts,
        destination=ack.sheet_name,
    )


def run_worker_task(bundle_dir: str, config: ServiceConfig) -> WorkerOutcome:
    """Process-pool entry point.  Builds collaborators from *config*."""
    setup_logging_from_config(config, role="worker")
    try:
        enricher = OfferEnricher.from_config(config.enrichment)
        committer = SheetsCommitter.from_config(config.sheets)
    except Exception as exc:
        logger.exception("worker_setup_failed", bundle=bundle_dir)
        return WorkerOutcome(
            bundle_dir=bundle_dir,
            uid=Path(bundle_dir).name,
            ok=False,
            error_kind=classify_exception(exc),
            error=str(exc),
        )

    return asyncio.run(
        process_bundle(
            bundle_dir,
            readiness=ReadinessSignal.from_config(config.worker),
            readiness_timeout=config.worker.readiness_timeout_seconds,
            enricher=enricher,
            committer=committer,
            retry=RetryExecutor.from_config(config.retry),
        )
    )
