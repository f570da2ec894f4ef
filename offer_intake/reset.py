"""Operator reset: mark the whole mailbox unseen and delete all bundles."""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

import structlog

from .config import ServiceConfig
from .credentials import CredentialManager
from .imap_client import AsyncImapClient

logger = structlog.get_logger()


def clear_bundles(root: str | Path) -> int:
    """Delete every bundle under *root*; returns how many were removed."""
    root = Path(root)
    if not root.exists():
        return 0
    count = sum(1 for p in root.iterdir() if p.is_dir())
    shutil.rmtree(root)
    return count


async def reset_mailbox(
    config: ServiceConfig,
    *,
    credentials: CredentialManager | None = None,
    client: AsyncImapClient | None = None,
) -> tuple[int, int]:
    """Make every message eligible for processing again.

    Returns ``(messages_marked_unseen, bundles_removed)``.
    """
    if credentials is None:
        credentials = CredentialManager.load(config.oauth)
    if credentials.is_expiring():
        await credentials.refresh()
    if client is None:
        client = AsyncImapClient(config.imap, lambda: credentials.access_token)

    await client.connect()
    try:
        marked = await client.mark_all_unseen()
    finally:
        await client.disconnect()

    removed = await asyncio.to_thread(clear_bundles, config.storage.bundle_root)
    logger.info("mailbox_reset", marked_unseen=marked, bundles_removed=removed)
    return marked, removed
