"""Tests for offer_intake.errors."""

from __future__ import annotations

import imaplib
from unittest.mock import MagicMock

import httpx
import openai
import pytest
from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.errors import HttpError

from offer_intake.errors import (
    ConnectionClosedError,
    ConnectivityError,
    EnrichmentRefusal,
    ErrorKind,
    PermanentExternalError,
    ReadinessTimeout,
    TransientExternalError,
    classify_exception,
    is_transient,
)

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def http_error(status: int) -> HttpError:
    resp = MagicMock()
    resp.status = status
    resp.reason = "error"
    return HttpError(resp, b"")


def openai_status_error(cls: type[openai.APIStatusError], status: int) -> openai.APIStatusError:
    return cls("boom", response=httpx.Response(status, request=_REQUEST), body=None)


class TestIntakeErrors:
    def test_kinds(self):
        assert TransientExternalError("x").kind is ErrorKind.TRANSIENT_EXTERNAL
        assert PermanentExternalError("x").kind is ErrorKind.PERMANENT_EXTERNAL
        assert ConnectivityError("x").kind is ErrorKind.CONNECTIVITY_FAILURE
        assert ConnectionClosedError("x").kind is ErrorKind.CONNECTIVITY_FAILURE

    def test_refusal_is_permanent(self):
        exc = EnrichmentRefusal("I can't help with that")
        assert exc.kind is ErrorKind.PERMANENT_EXTERNAL
        assert exc.reason == "I can't help with that"

    def test_readiness_timeout_message(self):
        exc = ReadinessTimeout("/b/1/stage1-complete", 3.0, 3)
        assert exc.kind is ErrorKind.TIMEOUT
        assert exc.polls == 3
        assert "stage1-complete" in str(exc)


class TestClassifyException:
    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_google_transient_statuses(self, status):
        assert classify_exception(http_error(status)) is ErrorKind.TRANSIENT_EXTERNAL

    @pytest.mark.parametrize("status", [400, 403, 404])
    def test_google_permanent_statuses(self, status):
        assert classify_exception(http_error(status)) is ErrorKind.PERMANENT_EXTERNAL

    def test_openai_rate_limit_is_transient(self):
        exc = openai_status_error(openai.RateLimitError, 429)
        assert classify_exception(exc) is ErrorKind.TRANSIENT_EXTERNAL

    def test_openai_server_error_is_transient(self):
        exc = openai_status_error(openai.InternalServerError, 500)
        assert classify_exception(exc) is ErrorKind.TRANSIENT_EXTERNAL

    def test_openai_connection_error_is_transient(self):
        assert is_transient(openai.APIConnectionError(request=_REQUEST))

    def test_openai_bad_request_is_permanent(self):
        exc = openai_status_error(openai.BadRequestError, 400)
        assert classify_exception(exc) is ErrorKind.PERMANENT_EXTERNAL

    def test_google_auth_errors(self):
        assert classify_exception(RefreshError("invalid_grant")) is ErrorKind.CONNECTIVITY_FAILURE
        assert classify_exception(TransportError("dns")) is ErrorKind.TRANSIENT_EXTERNAL

    def test_imap_error_is_connectivity(self):
        assert classify_exception(imaplib.IMAP4.abort("socket error")) is ErrorKind.CONNECTIVITY_FAILURE

    def test_builtin_network_errors_are_transient(self):
        assert is_transient(ConnectionResetError())
        assert is_transient(TimeoutError())

    def test_everything_else_is_permanent(self):
        assert classify_exception(ValueError("bad")) is ErrorKind.PERMANENT_EXTERNAL
        assert not is_transient(KeyError("x"))
