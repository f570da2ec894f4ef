"""OfferIntakeService: wires the listener side together and runs it."""

from __future__ import annotations

import asyncio
import time

import structlog
import uvicorn

from .attachments import AttachmentPipeline, FilenameDecoder
from .config import ServiceConfig
from .connection import ConnectionManager
from .coordinator import WorkerCoordinator
from .credentials import CredentialManager
from .errors import IntakeError
from .extractors import build_ocr_engine, default_registry
from .health import create_health_app
from .imap_client import AsyncImapClient
from .logging import setup_logging_from_config
from .models import ConnectionState, ServiceStatus
from .processor import MessageProcessor
from .shutdown import install_signal_handlers, remove_signal_handlers

logger = structlog.get_logger()


class OfferIntakeService:
    """Listener process: mailbox connection, bundling and worker dispatch.

    ``run()`` starts the following concurrently via
    :class:`asyncio.TaskGroup`:

    * the connection manager (connect, scan, IDLE, reconnect)
    * the credential refresh loop
    * the FastAPI health server (unless ``health_port`` is 0)

    Workers run in a separate process pool owned by the coordinator and
    are drained on shutdown.
    """

    def __init__(
        self,
        config: ServiceConfig,
        *,
        credentials: CredentialManager | None = None,
        coordinator: WorkerCoordinator | None = None,
        client: AsyncImapClient | None = None,
    ) -> None:
        self.config = config
        self.status: ServiceStatus = ServiceStatus.STARTING
        self.start_time: float = time.monotonic()

        self._credentials = credentials
        self._client = client
        self.decoder = FilenameDecoder()
        self.pipeline = AttachmentPipeline(
            default_registry(build_ocr_engine(config.enrichment)),
            self.decoder,
        )
        self.coordinator = coordinator or WorkerCoordinator(config)
        self.processor = MessageProcessor(
            config.storage.bundle_root,
            self.pipeline,
            submit=self.coordinator.submit,
        )
        self.connection: ConnectionManager | None = None
        self._shutdown_event = asyncio.Event()

    @property
    def connection_state(self) -> ConnectionState:
        if self.connection is None:
            return ConnectionState.DISCONNECTED
        return self.connection.state

    async def health_check(self) -> dict[str, object]:
        details: dict[str, object] = {
            "imap_host": self.config.imap.host,
            "imap_mailbox": self.config.imap.mailbox,
            "messages_acknowledged": self.processor.messages_acknowledged,
            "messages_failed": self.processor.messages_failed,
            "bundles_submitted": self.processor.bundles_submitted,
            **self.coordinator.stats(),
        }
        if self.connection is not None:
            details["scans"] = self.connection.scans
            details["reconnects"] = self.connection.reconnects
            details["last_error"] = self.connection.last_error
        if self._credentials is not None:
            details["token_refreshes"] = self._credentials.refresh_count
        return details

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Subsystems
    # ------------------------------------------------------------------

    async def _prepare(self) -> None:
        if self._credentials is None:
            self._credentials = CredentialManager.load(self.config.oauth)
        credentials = self._credentials
        if credentials.is_expiring():
            # The refresh loop retries; connect attempts fail and back off until then
            try:
                await credentials.refresh()
            except IntakeError as exc:
                logger.error("credential_startup_refresh_failed", error_kind=exc.kind.value, error=str(exc))
            except Exception:
                logger.exception("credential_startup_refresh_failed")

        if self._client is None:
            self._client = AsyncImapClient(self.config.imap, lambda: credentials.access_token)
        self.connection = ConnectionManager(self.config.imap, self._client, self.processor.process_backlog)
        credentials.subscribe(self.connection.on_credentials_refreshed)

    async def _run_connection(self) -> None:
        assert self.connection is not None
        self.status = ServiceStatus.RUNNING
        try:
            await self.connection.run(self._shutdown_event)
        except Exception:
            self.status = ServiceStatus.DEGRADED
            logger.exception("connection_manager_failed", service=self.config.name)
            raise

    async def _run_health_server(self) -> None:
        """Start the FastAPI health server and shut it down on signal."""
        app = create_health_app(self)
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.config.health_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start all listener subsystems and run until shutdown.

        Call ``asyncio.run(service.run())``.
        """
        setup_logging_from_config(self.config)
        install_signal_handlers(self._shutdown_event)
        self.start_time = time.monotonic()

        logger.info(
            "service_starting",
            service=self.config.name,
            bundle_root=self.config.storage.bundle_root,
            max_workers=self.config.worker.max_workers,
        )

        try:
            await self._prepare()
            assert self._credentials is not None
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._run_connection())
                tg.create_task(self._credentials.run_refresh_loop(self._shutdown_event))
                if self.config.health_port:
                    tg.create_task(self._run_health_server())
        except* Exception:
            self.status = ServiceStatus.DEGRADED
            logger.exception("service_task_group_error", service=self.config.name)
        finally:
            self.status = ServiceStatus.STOPPING
            self._shutdown_event.set()
            await self.coordinator.shutdown()
            remove_signal_handlers()
            self.status = ServiceStatus.STOPPED
            logger.info("service_stopped", service=self.config.name)
