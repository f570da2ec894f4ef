"""FastAPI health endpoints for liveness and readiness probes."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .models import ConnectionState, HealthStatus, ServiceStatus

if TYPE_CHECKING:
    from .service import OfferIntakeService


def create_health_app(service: OfferIntakeService) -> FastAPI:
    """Build a minimal FastAPI app with ``/health`` and ``/ready`` routes.

    ``/health`` reports the service status plus pool and connection
    counters.  ``/ready`` is 200 only while the mailbox connection is
    listening.
    """
    app = FastAPI(title=f"{service.config.name} health", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        details = await service.health_check()
        status = HealthStatus(
            service_name=service.config.name,
            status=service.status,
            uptime_seconds=time.monotonic() - service.start_time,
            connection_state=service.connection_state,
            details=details,
        )
        code = 200 if service.status in (ServiceStatus.RUNNING, ServiceStatus.STARTING) else 503
        return JSONResponse(content=status.model_dump(mode="json"), status_code=code)

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = (
            service.status == ServiceStatus.RUNNING
            and service.connection_state == ConnectionState.LISTENING
        )
        return JSONResponse(
            content={"ready": is_ready, "connection_state": service.connection_state.value},
            status_code=200 if is_ready else 503,
        )

    return app
