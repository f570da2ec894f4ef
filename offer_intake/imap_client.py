"""Async IMAP client wrapping stdlib imaplib with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import base64
import binascii
import imaplib
import itertools
import quopri
import select
import socket
import ssl
import time
from collections.abc import Callable
from typing import Protocol

import structlog

from .config import ImapConfig
from .envelope import bodystructure_from_fetch, extract_envelope
from .errors import ConnectionClosedError, ConnectivityError, PermanentExternalError
from .models import MessageRef, MimePart

logger = structlog.get_logger()

HEADER_FIELDS = "BODY.PEEK[HEADER.FIELDS (SUBJECT FROM DATE MESSAGE-ID)]"
IDLE_DONE_TIMEOUT = 30.0


class MailboxHandle(Protocol):
    """What the message processor may do with a live connection."""

    async def list_unseen(self) -> list[MessageRef]: ...

    async def fetch_part(self, uid: str, part: MimePart) -> bytes: ...

    async def mark_seen(self, uid: str) -> None: ...


def xoauth2_string(username: str, access_token: str) -> bytes:
    """SASL XOAUTH2 initial response (imaplib base64-encodes it)."""
    return f"user={username}\x01auth=Bearer {access_token}\x01\x01".encode()


def decode_transfer_encoding(payload: bytes, encoding: str) -> bytes:
    encoding = encoding.lower()
    if encoding == "base64":
        try:
            return base64.b64decode(payload)
        except binascii.Error as exc:
            raise PermanentExternalError(f"invalid base64 part: {exc}") from exc
    if encoding == "quoted-printable":
        return quopri.decodestring(payload)
    return payload


class _LineReader:
    """Read CRLF lines straight from the socket during IDLE.

    imaplib's own reader blocks without a deadline; IDLE needs to wake
    up for renewal and for :meth:`AsyncImapClient.abort`.  *buffered*
    seeds the reader with bytes imaplib had already read ahead.
    """

    def __init__(self, sock: socket.socket, buffered: bytes = b"") -> None:
        self._sock = sock
        self._buf = buffered

    def readline(self, deadline: float) -> bytes:
        while b"\n" not in self._buf:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError
            pending = isinstance(self._sock, ssl.SSLSocket) and self._sock.pending()
            if not pending:
                ready, _, _ = select.select([self._sock], [], [], remaining)
                if not ready:
                    raise TimeoutError
            chunk = self._sock.recv(4096)
            if not chunk:
                raise ConnectionClosedError("connection closed by server")
            self._buf += chunk
        line, _, self._buf = self._buf.partition(b"\n")
        return line + b"\n"

    def leftover_lines(self) -> list[bytes]:
        """Complete lines received after the last one returned."""
        return self._buf.split(b"\n")[:-1]


def _is_exists(line: bytes) -> bool:
    return line.startswith(b"*") and line.upper().rstrip().endswith(b"EXISTS")


class AsyncImapClient:
    """Async-friendly IMAP client authenticated with XOAUTH2.

    All blocking ``imaplib`` operations are wrapped with
    ``asyncio.to_thread()`` to avoid blocking the event loop.  The
    access token is obtained from *token_provider* on every connect and
    never cached here, because it is refreshed out-of-band.
    """

    def __init__(self, config: ImapConfig, token_provider: Callable[[], str]) -> None:
        self._config = config
        self._token_provider = token_provider
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._idle_tags = itertools.count(1)

    @property
    def connected(self) -> bool:
        return self._conn is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect, authenticate, and select the configured mailbox."""
        await asyncio.to_thread(self._connect_sync)
        logger.info(
            "imap_connected",
            host=self._config.host,
            mailbox=self._config.mailbox,
        )

    def _connect_sync(self) -> None:
        try:
            if self._config.use_ssl:
                conn = imaplib.IMAP4_SSL(
                    self._config.host, self._config.port, timeout=self._config.timeout_seconds
                )
            else:
                conn = imaplib.IMAP4(
                    self._config.host, self._config.port, timeout=self._config.timeout_seconds
                )
        except OSError as exc:
            raise ConnectivityError(f"cannot reach {self._config.host}: {exc}") from exc

        auth = xoauth2_string(self._config.username, self._token_provider())
        try:
            conn.authenticate("XOAUTH2", lambda _: auth)
            status, _ = conn.select(self._config.mailbox)
        except imaplib.IMAP4.error as exc:
            conn.shutdown()
            raise ConnectivityError(f"authentication failed: {exc}") from exc
        if status != "OK":
            conn.shutdown()
            raise ConnectivityError(f"cannot select mailbox {self._config.mailbox}")
        self._conn = conn

    async def disconnect(self) -> None:
        """Close mailbox and logout."""
        if self._conn is not None:
            await asyncio.to_thread(self._disconnect_sync)
            self._conn = None
            logger.info("imap_disconnected")

    def _disconnect_sync(self) -> None:
        assert self._conn is not None
        try:
            self._conn.socket().settimeout(self._config.timeout_seconds)
        except OSError:
            pass
        try:
            self._conn.close()
        except (imaplib.IMAP4.error, OSError):
            pass
        try:
            self._conn.logout()
        except (imaplib.IMAP4.error, OSError):
            pass

    def abort(self) -> None:
        """Shut the socket down from any thread.

        Unblocks a running :meth:`idle`, which then fails with
        :class:`ConnectivityError`.
        """
        if self._conn is None:
            return
        try:
            self._conn.socket().shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        logger.info("imap_aborted")

    async def is_connected(self) -> bool:
        """Check connection liveness with a NOOP command."""
        if self._conn is None:
            return False
        try:
            status, _ = await asyncio.to_thread(self._conn.noop)
            return status == "OK"
        except (imaplib.IMAP4.error, OSError):
            return False

    # ------------------------------------------------------------------
    # Message retrieval
    # ------------------------------------------------------------------

    async def list_unseen(self) -> list[MessageRef]:
        """Return references to every message without the ``\\Seen`` flag."""
        assert self._conn is not None, "Not connected"
        return await asyncio.to_thread(self._list_sync, "UNSEEN")

    async def fetch_part(self, uid: str, part: MimePart) -> bytes:
        """Fetch one MIME part without setting ``\\Seen``, transfer-decoded."""
        assert self._conn is not None, "Not connected"
        raw = await asyncio.to_thread(self._fetch_part_sync, uid, part.part_id)
        return decode_transfer_encoding(raw, part.encoding)

    async def mark_seen(self, uid: str) -> None:
        assert self._conn is not None, "Not connected"
        await asyncio.to_thread(self._store_sync, uid, "+FLAGS")
        logger.info("imap_marked_seen", uid=uid)

    async def mark_all_unseen(self) -> int:
        """Remove ``\\Seen`` from every message in the mailbox."""
        assert self._conn is not None, "Not connected"
        uids = await asyncio.to_thread(self._search_sync, "ALL")
        if uids:
            await asyncio.to_thread(self._store_sync, ",".join(uids), "-FLAGS")
        logger.info("imap_marked_all_unseen", count=len(uids))
        return len(uids)

    async def idle(self, timeout: float) -> bool:
        """Wait in IDLE until the server reports new mail or *timeout* passes.

        Returns True when an ``EXISTS`` notification arrived.
        """
        assert self._conn is not None, "Not connected"
        return await asyncio.to_thread(self._idle_sync, timeout)

    # ------------------------------------------------------------------
    # Synchronous helpers (run in thread)
    # ------------------------------------------------------------------

    def _search_sync(self, criteria: str) -> list[str]:
        assert self._conn is not None
        status, data = self._conn.uid("SEARCH", None, criteria)
        if status != "OK":
            raise ConnectivityError(f"UID SEARCH {criteria} failed")
        if not data or not data[0]:
            return []
        return sorted((u.decode() for u in data[0].split()), key=int)

    def _list_sync(self, criteria: str) -> list[MessageRef]:
        assert self._conn is not None
        refs: list[MessageRef] = []

        for uid in self._search_sync(criteria):
            status, struct_data = self._conn.uid("FETCH", uid, "(BODYSTRUCTURE)")
            if status != "OK" or not struct_data or struct_data[0] is None:
                logger.warning("imap_fetch_structure_failed", uid=uid)
                continue
            try:
                parts = bodystructure_from_fetch(struct_data)
            except (ValueError, KeyError, IndexError) as exc:
                logger.warning("imap_bodystructure_unparseable", uid=uid, error=str(exc))
                continue

            status, header_data = self._conn.uid("FETCH", uid, f"({HEADER_FIELDS})")
            header_bytes = b""
            if status == "OK":
                for item in header_data:
                    if isinstance(item, tuple):
                        header_bytes = item[1]
                        break
            envelope = extract_envelope(header_bytes)

            refs.append(
                MessageRef(
                    uid=uid,
                    subject=envelope["subject"],
                    sender=envelope["from"],
                    date=envelope["date"],
                    message_id=envelope["message_id"],
                    parts=parts,
                )
            )

        logger.debug("imap_list_complete", criteria=criteria, count=len(refs))
        return refs

    def _fetch_part_sync(self, uid: str, part_id: str) -> bytes:
        assert self._conn is not None
        status, data = self._conn.uid("FETCH", uid, f"(BODY.PEEK[{part_id}])")
        if status != "OK" or not data:
            raise PermanentExternalError(f"cannot fetch part {part_id} of message {uid}")
        for item in data:
            if isinstance(item, tuple):
                return item[1]
        # Empty parts come back as NIL without a literal
        return b""

    def _store_sync(self, uid_set: str, op: str) -> None:
        assert self._conn is not None
        status, _ = self._conn.uid("STORE", uid_set, op, "(\\Seen)")
        if status != "OK":
            raise ConnectivityError(f"UID STORE {op} failed for {uid_set}")

    def _take_pending_exists(self) -> bool:
        """Consume what imaplib queued while earlier commands ran.

        ``uid()`` only pops the responses it asked for, so an ``EXISTS``
        pushed during a scan stays in ``untagged_responses``.
        """
        assert self._conn is not None
        pending = self._conn.untagged_responses.pop("EXISTS", None)
        self._conn.untagged_responses.clear()
        return bool(pending)

    def _drain_buffered(self) -> bytes:
        """Return bytes imaplib read ahead from the socket but never parsed."""
        assert self._conn is not None
        sock = self._conn.socket()
        timeout = sock.gettimeout()
        sock.setblocking(False)
        try:
            return self._conn.file.read1(65536) or b""
        except (BlockingIOError, ssl.SSLWantReadError):
            return b""
        finally:
            sock.settimeout(timeout)

    def _idle_sync(self, timeout: float) -> bool:
        assert self._conn is not None
        if self._take_pending_exists():
            logger.debug("imap_idle_skipped", reason="exists_pending")
            return True

        tag = f"IDLE{next(self._idle_tags)}".encode()
        reader = _LineReader(self._conn.socket(), self._drain_buffered())
        deadline = time.monotonic() + timeout
        new_mail = False

        self._conn.send(tag + b" IDLE\r\n")
        continuation_deadline = time.monotonic() + IDLE_DONE_TIMEOUT
        while True:
            try:
                line = reader.readline(continuation_deadline)
            except TimeoutError as exc:
                raise ConnectivityError("no IDLE continuation from server") from exc
            if line.startswith(b"+"):
                break
            if line.upper().startswith(b"* BYE"):
                raise ConnectionClosedError("server closed the connection before IDLE")
            if not line.startswith(b"*"):
                raise ConnectivityError(f"IDLE rejected: {line.strip()!r}")
            new_mail = new_mail or _is_exists(line)
        logger.debug("imap_idle_started", timeout=timeout, new_mail=new_mail)

        while not new_mail:
            try:
                line = reader.readline(deadline)
            except TimeoutError:
                break
            if line.upper().startswith(b"* BYE"):
                raise ConnectionClosedError("server closed the connection during IDLE")
            new_mail = _is_exists(line)

        self._conn.send(b"DONE\r\n")
        done_deadline = time.monotonic() + IDLE_DONE_TIMEOUT
        while True:
            try:
                line = reader.readline(done_deadline)
            except TimeoutError as exc:
                raise ConnectivityError("IDLE was not terminated by server") from exc
            if line.startswith(tag + b" "):
                if not line[len(tag) + 1:].upper().startswith(b"OK"):
                    raise ConnectivityError(f"IDLE failed: {line.strip()!r}")
                break
            new_mail = new_mail or _is_exists(line)

        # Read past the tagged reply; imaplib never sees these lines
        new_mail = new_mail or any(_is_exists(line) for line in reader.leftover_lines())
        logger.debug("imap_idle_finished", new_mail=new_mail)
        return new_mail
