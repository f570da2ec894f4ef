"""Graceful shutdown handling via SIGTERM / SIGINT."""

from __future__ import annotations

import asyncio
import signal

import structlog

logger = structlog.get_logger()


def install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    """Register SIGTERM and SIGINT handlers that set *shutdown_event*.

    Call this once from the running event loop.  Setting the event stops
    the connection manager, cancels pending worker admissions and exits
    the health server.
    """
    loop = asyncio.get_running_loop()

    def _handle(sig: signal.Signals) -> None:
        if shutdown_event.is_set():
            logger.warning("shutdown_signal_repeated", signal=sig.name)
            return
        logger.info("shutdown_signal_received", signal=sig.name)
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handle, sig)


def remove_signal_handlers() -> None:
    """Undo :func:`install_signal_handlers` (used when the service exits)."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.remove_signal_handler(sig)
