"""OAuth2 credential ownership: load, refresh, persist, notify.

One :class:`CredentialManager` per service instance owns the mutable
Google credential.  Consumers ask it for the current access token at
call time and subscribe to token changes; nothing else mutates it.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import structlog
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from .config import OAuthConfig
from .errors import ConnectivityError, IntakeError, TransientExternalError

logger = structlog.get_logger()

TokenListener = Callable[[str], None]


class CredentialManager:
    """Holds the shared OAuth credential and refreshes it before expiry."""

    def __init__(
        self,
        config: OAuthConfig,
        credentials: Credentials,
        *,
        request_factory: Callable[[], Request] = Request,
    ) -> None:
        self._config = config
        self._credentials = credentials
        self._request_factory = request_factory
        self._listeners: list[TokenListener] = []
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    @classmethod
    def load(cls, config: OAuthConfig) -> CredentialManager:
        """Read the authorized-user token written by :func:`authorize`."""
        path = Path(config.token_path)
        if not path.exists():
            raise ConnectivityError(
                f"token file {path} not found; run `python -m offer_intake authorize` first"
            )
        credentials = Credentials.from_authorized_user_file(str(path), config.scopes)
        logger.info("credentials_loaded", token_path=str(path), expiry=_iso(credentials.expiry))
        return cls(config, credentials)

    # ------------------------------------------------------------------
    # Token access
    # ------------------------------------------------------------------

    @property
    def access_token(self) -> str:
        """The current bearer token; always read at call time."""
        token = self._credentials.token
        if not token:
            raise ConnectivityError("no access token available; refresh required")
        return token

    def is_expiring(self, margin: float | None = None) -> bool:
        if not self._credentials.token:
            return True
        expiry = self._credentials.expiry
        if expiry is None:
            return False
        margin = self._config.refresh_margin_seconds if margin is None else margin
        # google-auth stores expiry as naive UTC
        now = datetime.now(UTC)
        if expiry.tzinfo is None:
            now = now.replace(tzinfo=None)
        return expiry - now <= timedelta(seconds=margin)

    def subscribe(self, listener: TokenListener) -> None:
        """Call *listener* with the new token after every refresh."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> str:
        """Refresh the token, persist it and notify subscribers.

        Concurrent callers are serialized; each refresh notifies
        subscribers once.
        """
        async with self._lock:
            try:
                await asyncio.to_thread(self._credentials.refresh, self._request_factory())
            except RefreshError as exc:
                raise ConnectivityError(f"token refresh rejected: {exc}") from exc
            except TransportError as exc:
                raise TransientExternalError(f"token refresh failed: {exc}") from exc

            self.refresh_count += 1
            self.persist()
            token = self.access_token
            logger.info(
                "credentials_refreshed",
                expiry=_iso(self._credentials.expiry),
                refresh_count=self.refresh_count,
            )

        for listener in list(self._listeners):
            try:
                listener(token)
            except Exception:
                logger.exception("token_listener_failed")
        return token

    def persist(self) -> None:
        path = Path(self._config.token_path)
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.write_text(self._credentials.to_json())
        os.replace(tmp, path)

    async def run_refresh_loop(self, shutdown_event: asyncio.Event) -> None:
        """Refresh the token whenever it is about to expire, until shutdown."""
        interval = self._config.refresh_check_interval_seconds
        logger.info("credential_refresh_loop_started", interval=interval)
        while not shutdown_event.is_set():
            if self.is_expiring():
                try:
                    await self.refresh()
                except IntakeError as exc:
                    logger.error("credential_refresh_failed", error_kind=exc.kind.value, error=str(exc))
                except Exception:
                    logger.exception("credential_refresh_failed")
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
            except TimeoutError:
                pass
        logger.info("credential_refresh_loop_stopped")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def authorize(config: OAuthConfig) -> Credentials:
    """Run the one-time browser consent flow and store the token file."""
    client_config = {
        "installed": {
            "client_id": config.client_id,
            "client_secret": config.client_secret.get_secret_value(),
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": "https://oauth2.googleapis.com/token",
            "redirect_uris": ["http://localhost"],
        }
    }
    flow = InstalledAppFlow.from_client_config(client_config, config.scopes)
    credentials = flow.run_local_server(port=0, access_type="offline", prompt="consent")

    path = Path(config.token_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(credentials.to_json())
    logger.info("credentials_authorized", token_path=str(path))
    return credentials
