"""Error taxonomy shared by the pipeline, the worker pool and the connection."""

from __future__ import annotations

import imaplib
from enum import Enum

import openai
from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.errors import HttpError


class ErrorKind(str, Enum):
    """How a failure is handled by the unit that catches it."""

    TRANSIENT_EXTERNAL = "transient_external"
    PERMANENT_EXTERNAL = "permanent_external"
    CONNECTIVITY_FAILURE = "connectivity_failure"
    TIMEOUT = "timeout"


class IntakeError(Exception):
    """Base class for every error raised by offer_intake."""

    kind: ErrorKind = ErrorKind.PERMANENT_EXTERNAL


class TransientExternalError(IntakeError):
    """Network hiccup, rate limit or 5xx from an external service."""

    kind = ErrorKind.TRANSIENT_EXTERNAL


class PermanentExternalError(IntakeError):
    """Malformed input, unsupported format or failed validation."""

    kind = ErrorKind.PERMANENT_EXTERNAL


class ConnectivityError(IntakeError):
    """Mailbox connection dropped or authentication failed."""

    kind = ErrorKind.CONNECTIVITY_FAILURE


class ConnectionClosedError(ConnectivityError):
    """The server ended the session (EOF or BYE)."""


class ReadinessTimeout(IntakeError):
    """A bundle marker did not appear before the wait deadline."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, path: str, timeout: float, polls: int) -> None:
        super().__init__(f"{path} did not appear within {timeout}s ({polls} polls)")
        self.path = path
        self.timeout = timeout
        self.polls = polls


class EnrichmentRefusal(PermanentExternalError):
    """The enrichment model declined to produce a structured record."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


_TRANSIENT_HTTP_STATUSES = frozenset({429, 500, 502, 503, 504})


def is_transient(exc: BaseException) -> bool:
    """Return True if *exc* is worth retrying."""
    return classify_exception(exc) is ErrorKind.TRANSIENT_EXTERNAL


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map any exception onto an :class:`ErrorKind`.

    Library errors are recognised by type so callers never have to import
    the Google or OpenAI client packages just to decide on a retry.
    """
    if isinstance(exc, IntakeError):
        return exc.kind

    if isinstance(exc, HttpError):
        status = getattr(exc.resp, "status", None)
        if status is not None and int(status) in _TRANSIENT_HTTP_STATUSES:
            return ErrorKind.TRANSIENT_EXTERNAL
        return ErrorKind.PERMANENT_EXTERNAL
    if isinstance(
        exc,
        (
            openai.RateLimitError,
            openai.APIConnectionError,
            openai.InternalServerError,
        ),
    ):
        # APITimeoutError is a subclass of APIConnectionError
        return ErrorKind.TRANSIENT_EXTERNAL
    if isinstance(exc, openai.APIError):
        return ErrorKind.PERMANENT_EXTERNAL
    if isinstance(exc, RefreshError):
        return ErrorKind.CONNECTIVITY_FAILURE
    if isinstance(exc, TransportError):
        return ErrorKind.TRANSIENT_EXTERNAL
    if isinstance(exc, imaplib.IMAP4.error):
        return ErrorKind.CONNECTIVITY_FAILURE
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ErrorKind.TRANSIENT_EXTERNAL
    return ErrorKind.PERMANENT_EXTERNAL
