"""Service configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
The worker process receives the pickled :class:`ServiceConfig` with each
task, so both sides of the process boundary run on the same settings.
"""

from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings

GMAIL_SCOPE = "https://mail.google.com/"


class ImapConfig(BaseSettings):
    """IMAP mailbox connection settings."""

    model_config = {"env_prefix": "IMAP_"}

    host: str = Field(default="imap.gmail.com", description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    use_ssl: bool = Field(default=True, description="Use IMAP4_SSL")
    username: str = Field(default="", description="Mailbox address used for XOAUTH2")
    mailbox: str = Field(default="INBOX", description="Mailbox folder to watch")
    timeout_seconds: float = Field(default=60.0, description="Socket timeout for IMAP commands")
    reconnect_delay_seconds: float = Field(
        default=60.0,
        description="Fixed delay before reconnecting after an error or close",
    )
    idle_timeout_seconds: float = Field(
        default=1740.0,
        description="Renew IDLE after this many seconds (servers drop it at 30 min)",
    )


class OAuthConfig(BaseSettings):
    """OAuth2 installed-app client and token refresh settings."""

    model_config = {"env_prefix": "OAUTH_"}

    client_id: str = Field(default="", description="OAuth2 client id")
    client_secret: SecretStr = Field(default=SecretStr(""), description="OAuth2 client secret")
    token_path: str = Field(default="token.json", description="Where the authorized token is stored")
    scopes: list[str] = Field(default_factory=lambda: [GMAIL_SCOPE], description="Granted scopes")
    refresh_margin_seconds: float = Field(
        default=300.0,
        description="Refresh the access token when it expires within this window",
    )
    refresh_check_interval_seconds: float = Field(
        default=60.0,
        description="How often the background task checks token expiry",
    )


class StorageConfig(BaseSettings):
    """Bundle directory settings."""

    model_config = {"env_prefix": "STORAGE_"}

    bundle_root: str = Field(default="data/bundles", description="Root directory for message bundles")


class WorkerConfig(BaseSettings):
    """Worker pool admission and readiness polling settings."""

    model_config = {"env_prefix": "WORKER_"}

    max_workers: int = Field(default=2, ge=1, description="Maximum concurrently active workers")
    admission_interval_seconds: float = Field(
        default=1.0,
        description="Delay between admission attempts while the pool is full",
    )
    admission_timeout_seconds: float | None = Field(
        default=None,
        description="Drop a task that waited this long for a slot (None waits forever)",
    )
    readiness_poll_interval_seconds: float = Field(
        default=1.0,
        description="Interval between marker file existence checks",
    )
    readiness_timeout_seconds: float = Field(
        default=300.0,
        description="Give up waiting for a bundle marker after this many seconds",
    )
    readiness_jitter_seconds: float = Field(
        default=0.0,
        description="Random extra delay added to each readiness poll",
    )


class RetryConfig(BaseSettings):
    """Retry / backoff settings for external calls."""

    model_config = {"env_prefix": "RETRY_"}

    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt")
    initial_delay_seconds: float = Field(
        default=1.0,
        description="Delay before the first retry; doubles on each further retry",
    )


class EnrichmentConfig(BaseSettings):
    """OpenAI enrichment and OCR settings."""

    model_config = {"env_prefix": "OPENAI_"}

    api_key: SecretStr = Field(default=SecretStr(""), description="OpenAI API key")
    model: str = Field(default="gpt-4o-2024-08-06", description="Model used for structured extraction")
    ocr_model: str = Field(default="gpt-4o-mini", description="Vision model used for OCR")
    ocr_enabled: bool = Field(default=True, description="Run OCR on images and scanned PDF pages")
    timeout_seconds: float = Field(default=120.0, description="Per-request timeout")


class SheetsConfig(BaseSettings):
    """Google Sheets sink settings."""

    model_config = {"env_prefix": "SHEETS_"}

    spreadsheet_id: str = Field(default="", description="Target spreadsheet id")
    template_sheet_id: int = Field(default=0, description="Sheet id duplicated for every offer")
    service_account_file: str = Field(
        default="service-account.json",
        description="Path to the service account key file",
    )


class ServiceConfig(BaseSettings):
    """Root configuration for an offer-intake instance.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = {"env_prefix": "SERVICE_"}

    name: str = Field(default="offer-intake", description="Service name used in logs and health")
    health_port: int = Field(default=8080, description="Port for health probes (0 disables)")
    log_json: bool = Field(default=True, description="Emit JSON log lines")
    log_level: str = Field(default="INFO", description="Root log level")

    imap: ImapConfig = Field(default_factory=ImapConfig)
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    enrichment: EnrichmentConfig = Field(default_factory=EnrichmentConfig)
    sheets: SheetsConfig = Field(default_factory=SheetsConfig)
