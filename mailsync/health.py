"""FastAPI liveness and readiness endpoints for the sync service.

``/health`` answers 503 once the last pass left an account or folder
failed (DEGRADED) or the service is shutting down.  ``/ready`` is 200 as
soon as the first pass has completed, degraded or not.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .models import HealthStatus, ServiceStatus

if TYPE_CHECKING:
    from .service import MailSyncService

LIVE_STATES = frozenset({ServiceStatus.STARTING, ServiceStatus.RUNNING})
READY_STATES = frozenset({ServiceStatus.RUNNING, ServiceStatus.DEGRADED})


def _respond(payload: dict, ok: bool) -> JSONResponse:
    return JSONResponse(content=payload, status_code=200 if ok else 503)


def create_health_app(service: MailSyncService) -> FastAPI:
    app = FastAPI(title=f"{service.name} health", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        current = service.status
        report = HealthStatus(
            service_name=service.name,
            status=current,
            uptime_seconds=time.monotonic() - service.start_time,
            details=await service.health_check(),
        )
        return _respond(report.model_dump(mode="json"), current in LIVE_STATES)

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = service.status in READY_STATES
        return _respond({"ready": is_ready}, is_ready)

    return app
