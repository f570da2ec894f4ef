"""ConnectionManager: mailbox connection lifecycle and scan triggering."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import structlog

from .config import ImapConfig
from .errors import ConnectionClosedError
from .imap_client import MailboxHandle
from .models import ConnectionState

logger = structlog.get_logger()

ScanFn = Callable[[MailboxHandle], Awaitable[Any]]


class MailboxClient(MailboxHandle, Protocol):
    """The connection-level operations on top of :class:`MailboxHandle`."""

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def idle(self, timeout: float) -> bool: ...

    def abort(self) -> None: ...


class ConnectionManager:
    """Keep one authenticated IDLE session alive and scan on new mail.

    ``run()`` loops ``connecting -> listening -> error/closed ->
    disconnected`` until shutdown.  A full backlog scan runs after every
    successful connect and on every ``EXISTS`` push.  A credential
    refresh restarts the loop immediately; any other failure waits
    ``reconnect_delay_seconds`` first.
    """

    def __init__(self, config: ImapConfig, client: MailboxClient, scan_fn: ScanFn) -> None:
        self._config = config
        self._client = client
        self._scan_fn = scan_fn
        self._state = ConnectionState.DISCONNECTED
        self._restart = asyncio.Event()
        self._stop = asyncio.Event()
        self._scan_lock = asyncio.Lock()
        self._rescan_pending = False

        self.scans = 0
        self.scans_coalesced = 0
        self.reconnects = 0
        self.restarts = 0
        self.last_error: str | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    def _set_state(self, new: ConnectionState) -> None:
        if new is self._state:
            return
        logger.info("connection_state_changed", from_state=self._state.value, to_state=new.value)
        self._state = new

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on_credentials_refreshed(self, token: str) -> None:
        """Force a reconnect with the new token, skipping the delay."""
        logger.info("connection_restart_requested", reason="credentials_refreshed")
        self._restart.set()
        self._client.abort()

    async def on_new_message_event(self) -> None:
        await self.scan()

    def stop(self) -> None:
        """Leave IDLE and end :meth:`run` after logging out."""
        self._stop.set()
        self._client.abort()

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    async def scan(self) -> Any:
        """Run one backlog scan, or coalesce into the one already running.

        A call that arrives while a scan is in flight returns None at
        once; the running scan then repeats exactly once more.
        """
        if self._scan_lock.locked():
            self._rescan_pending = True
            self.scans_coalesced += 1
            logger.debug("scan_coalesced")
            return None

        async with self._scan_lock:
            while True:
                self._rescan_pending = False
                self.scans += 1
                logger.debug("scan_started", scan=self.scans)
                report = await self._scan_fn(self._client)
                if not self._rescan_pending:
                    return report

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Connect, scan, listen and reconnect until *shutdown_event* is set."""
        watcher = asyncio.create_task(self._watch_shutdown(shutdown_event))
        try:
            while not self._stopping(shutdown_event):
                self._restart.clear()
                await self._session(shutdown_event)

                if self._stopping(shutdown_event):
                    break
                if self._restart.is_set():
                    self.restarts += 1
                    continue
                await self._wait_before_reconnect(shutdown_event)
                self.reconnects += 1
        finally:
            watcher.cancel()
            self._set_state(ConnectionState.CLOSED)
            logger.info("connection_manager_stopped", scans=self.scans, reconnects=self.reconnects)

    async def _session(self, shutdown_event: asyncio.Event) -> None:
        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._client.connect()
            await self.scan()
            self._set_state(ConnectionState.LISTENING)
            await self._listen(shutdown_event)
            self._set_state(ConnectionState.CLOSED)
        except Exception as exc:
            if self._restart.is_set() or self._stopping(shutdown_event):
                # The socket was aborted on purpose
                self._set_state(ConnectionState.CLOSED)
            elif isinstance(exc, ConnectionClosedError):
                self.last_error = str(exc)
                logger.warning("connection_closed", error=str(exc))
                self._set_state(ConnectionState.CLOSED)
            else:
                self.last_error = str(exc)
                logger.exception("connection_error")
                self._set_state(ConnectionState.ERROR)
        finally:
            await self._teardown()

    async def _listen(self, shutdown_event: asyncio.Event) -> None:
        while not (self._restart.is_set() or self._stopping(shutdown_event)):
            new_mail = await self._client.idle(self._config.idle_timeout_seconds)
            if self._restart.is_set() or self._stopping(shutdown_event):
                return
            if new_mail:
                await self.on_new_message_event()

    async def _teardown(self) -> None:
        try:
            await self._client.disconnect()
        except Exception as exc:
            logger.warning("connection_teardown_failed", error=str(exc))
        self._set_state(ConnectionState.DISCONNECTED)

    async def _wait_before_reconnect(self, shutdown_event: asyncio.Event) -> None:
        delay = self._config.reconnect_delay_seconds
        logger.info("connection_reconnect_scheduled", delay_seconds=delay)
        waiters = {
            asyncio.create_task(shutdown_event.wait()),
            asyncio.create_task(self._stop.wait()),
            asyncio.create_task(self._restart.wait()),
        }
        try:
            await asyncio.wait(waiters, timeout=delay, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _watch_shutdown(self, shutdown_event: asyncio.Event) -> None:
        await shutdown_event.wait()
        self._client.abort()

    def _stopping(self, shutdown_event: asyncio.Event) -> bool:
        return shutdown_event.is_set() or self._stop.is_set()
