"""Tests for offer_intake.credentials."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from google.auth.exceptions import RefreshError, TransportError

from offer_intake.config import OAuthConfig
from offer_intake.credentials import CredentialManager, authorize
from offer_intake.errors import ConnectivityError, TransientExternalError


def utcnow() -> datetime:
    # google-auth keeps expiry as naive UTC
    return datetime.now(UTC).replace(tzinfo=None)


def fake_credentials(token: str | None = "token-1", expires_in: float = 3600) -> MagicMock:
    creds = MagicMock()
    creds.token = token
    creds.expiry = utcnow() + timedelta(seconds=expires_in)

    def refresh(request):
        creds.token = "token-2"
        creds.expiry = utcnow() + timedelta(hours=1)

    creds.refresh.side_effect = refresh
    creds.to_json.side_effect = lambda: json.dumps({"token": creds.token})
    return creds


@pytest.fixture
def oauth_config(tmp_path: Path) -> OAuthConfig:
    return OAuthConfig(
        client_id="client-id",
        client_secret="client-secret",
        token_path=str(tmp_path / "token.json"),
        refresh_margin_seconds=300,
        refresh_check_interval_seconds=0.01,
    )


def manager(config: OAuthConfig, creds: MagicMock) -> CredentialManager:
    return CredentialManager(config, creds, request_factory=MagicMock)


class TestLoad:
    def test_missing_token_file(self, oauth_config: OAuthConfig):
        with pytest.raises(ConnectivityError, match="authorize"):
            CredentialManager.load(oauth_config)

    def test_reads_authorized_user_file(self, oauth_config: OAuthConfig):
        Path(oauth_config.token_path).write_text(json.dumps({
            "token": "stored-token",
            "refresh_token": "refresh",
            "client_id": "client-id",
            "client_secret": "client-secret",
            "expiry": "2099-01-01T00:00:00Z",
        }))

        loaded = CredentialManager.load(oauth_config)

        assert loaded.access_token == "stored-token"
        assert not loaded.is_expiring()


class TestTokenAccess:
    def test_missing_token_raises(self, oauth_config: OAuthConfig):
        with pytest.raises(ConnectivityError):
            manager(oauth_config, fake_credentials(token=None)).access_token

    @pytest.mark.parametrize(
        ("expires_in", "expected"),
        [(3600, False), (200, True), (-10, True)],
    )
    def test_is_expiring(self, oauth_config: OAuthConfig, expires_in: float, expected: bool):
        assert manager(oauth_config, fake_credentials(expires_in=expires_in)).is_expiring() is expected

    def test_no_expiry_is_not_expiring(self, oauth_config: OAuthConfig):
        creds = fake_credentials()
        creds.expiry = None
        assert not manager(oauth_config, creds).is_expiring()

    def test_no_token_is_expiring(self, oauth_config: OAuthConfig):
        assert manager(oauth_config, fake_credentials(token=None)).is_expiring()


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_persists_and_notifies(self, oauth_config: OAuthConfig):
        mgr = manager(oauth_config, fake_credentials(expires_in=60))
        received: list[str] = []
        mgr.subscribe(received.append)

        token = await mgr.refresh()

        assert token == "token-2"
        assert mgr.access_token == "token-2"
        assert received == ["token-2"]
        assert mgr.refresh_count == 1
        assert json.loads(Path(oauth_config.token_path).read_text()) == {"token": "token-2"}

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self, oauth_config: OAuthConfig):
        mgr = manager(oauth_config, fake_credentials())
        received: list[str] = []
        mgr.subscribe(MagicMock(side_effect=RuntimeError("listener bug")))
        mgr.subscribe(received.append)

        await mgr.refresh()
        assert received == ["token-2"]

    @pytest.mark.asyncio
    async def test_rejected_refresh_is_connectivity_failure(self, oauth_config: OAuthConfig):
        creds = fake_credentials()
        creds.refresh.side_effect = RefreshError("invalid_grant")
        mgr = manager(oauth_config, creds)
        listener = MagicMock()
        mgr.subscribe(listener)

        with pytest.raises(ConnectivityError, match="invalid_grant"):
            await mgr.refresh()
        listener.assert_not_called()
        assert not Path(oauth_config.token_path).exists()

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self, oauth_config: OAuthConfig):
        creds = fake_credentials()
        creds.refresh.side_effect = TransportError("connection reset")
        with pytest.raises(TransientExternalError):
            await manager(oauth_config, creds).refresh()

    @pytest.mark.asyncio
    async def test_refresh_loop_refreshes_expiring_token(self, oauth_config: OAuthConfig):
        mgr = manager(oauth_config, fake_credentials(expires_in=30))
        shutdown = asyncio.Event()
        loop_task = asyncio.create_task(mgr.run_refresh_loop(shutdown))

        for _ in range(100):
            if mgr.refresh_count:
                break
            await asyncio.sleep(0.01)
        shutdown.set()
        await asyncio.wait_for(loop_task, 1)

        # Refreshed token is valid for an hour, so exactly one refresh
        assert mgr.refresh_count == 1

    @pytest.mark.asyncio
    async def test_refresh_loop_survives_failures(self, oauth_config: OAuthConfig):
        creds = fake_credentials(expires_in=30)
        creds.refresh.side_effect = RefreshError("revoked")
        mgr = manager(oauth_config, creds)
        shutdown = asyncio.Event()
        loop_task = asyncio.create_task(mgr.run_refresh_loop(shutdown))

        await asyncio.sleep(0.05)
        assert not loop_task.done()
        shutdown.set()
        await asyncio.wait_for(loop_task, 1)
        assert creds.refresh.call_count >= 2

    @pytest.mark.asyncio
    async def test_refresh_loop_survives_persist_failure(self, oauth_config: OAuthConfig):
        mgr = manager(oauth_config, fake_credentials(expires_in=30))
        shutdown = asyncio.Event()
        with patch.object(mgr, "persist", side_effect=OSError("disk full")) as persist:
            loop_task = asyncio.create_task(mgr.run_refresh_loop(shutdown))
            await asyncio.sleep(0.05)

            assert not loop_task.done()
            persist.assert_called_once()
            shutdown.set()
            await asyncio.wait_for(loop_task, 1)


class TestAuthorize:
    def test_writes_token_file(self, tmp_path: Path):
        config = OAuthConfig(client_id="cid", client_secret="secret", token_path=str(tmp_path / "auth" / "token.json"))
        creds = MagicMock()
        creds.to_json.return_value = '{"token": "fresh"}'

        with patch("offer_intake.credentials.InstalledAppFlow") as flow_cls:
            flow_cls.from_client_config.return_value.run_local_server.return_value = creds
            result = authorize(config)

        assert result is creds
        assert (tmp_path / "auth" / "token.json").read_text() == '{"token": "fresh"}'
        client_config, scopes = flow_cls.from_client_config.call_args.args
        assert client_config["installed"]["client_secret"] == "secret"
        assert scopes == ["https://mail.google.com/"]
