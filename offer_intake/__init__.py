"""Offer intake: mailbox listener, attachment bundling and offer enrichment workers.

Public API re-exported here for convenience::

    from offer_intake import OfferIntakeService, ServiceConfig
"""

from .attachments import AttachmentPipeline, Classification, FilenameDecoder
from .bundle import Bundle, BundleState
from .config import (
    EnrichmentConfig,
    ImapConfig,
    OAuthConfig,
    RetryConfig,
    ServiceConfig,
    SheetsConfig,
    StorageConfig,
    WorkerConfig,
)
from .connection import ConnectionManager
from .coordinator import WorkerCoordinator
from .credentials import CredentialManager, authorize
from .enrichment import OfferEnricher, OfferRecord
from .errors import (
    ConnectivityError,
    EnrichmentRefusal,
    ErrorKind,
    IntakeError,
    PermanentExternalError,
    ReadinessTimeout,
    TransientExternalError,
)
from .health import create_health_app
from .imap_client import AsyncImapClient, MailboxHandle
from .logging import setup_logging
from .models import (
    AggregateRecord,
    BundleMetadata,
    ConnectionState,
    ExtractionError,
    ExtractionResult,
    MessageRef,
    ServiceStatus,
    WorkerOutcome,
    WorkerTask,
)
from .processor import MessageProcessor
from .readiness import ReadinessSignal
from .retry import RetryExecutor, RetryOutcome
from .service import OfferIntakeService
from .sheets import SheetsCommitter
from .shutdown import install_signal_handlers
from .worker import process_bundle, run_worker_task

__all__ = [
    "AggregateRecord",
    "AsyncImapClient",
    "AttachmentPipeline",
    "Bundle",
    "BundleMetadata",
    "BundleState",
    "Classification",
    "ConnectionManager",
    "ConnectionState",
    "ConnectivityError",
    "CredentialManager",
    "EnrichmentConfig",
    "EnrichmentRefusal",
    "ErrorKind",
    "ExtractionError",
    "ExtractionResult",
    "FilenameDecoder",
    "ImapConfig",
    "IntakeError",
    "MailboxHandle",
    "MessageProcessor",
    "MessageRef",
    "OAuthConfig",
    "OfferEnricher",
    "OfferIntakeService",
    "OfferRecord",
    "PermanentExternalError",
    "ReadinessSignal",
    "ReadinessTimeout",
    "RetryConfig",
    "RetryExecutor",
    "RetryOutcome",
    "ServiceConfig",
    "ServiceStatus",
    "SheetsCommitter",
    "SheetsConfig",
    "StorageConfig",
    "TransientExternalError",
    "WorkerConfig",
    "WorkerCoordinator",
    "WorkerOutcome",
    "WorkerTask",
    "authorize",
    "create_health_app",
    "install_signal_handlers",
    "process_bundle",
    "run_worker_task",
    "setup_logging",
]
