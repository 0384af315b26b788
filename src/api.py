"""
Health API - liveness, readiness and work queue statistics.

Served by uvicorn on the operator's event loop next to the controller.
"""

import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from controller import Controller
from version import app_version

logger = logging.getLogger(__name__)


class ControllerStatsResponse(BaseModel):
    """Work queue statistics."""

    running: bool
    queue_depth: int = Field(..., description="Keys waiting for a worker")
    in_flight: int = Field(..., description="Keys being reconciled right now")
    reconciles_succeeded: int
    reconciles_failed: int
    reconciles_requeued: int
    last_error: Optional[str] = None


def create_app(controller: Controller) -> FastAPI:
    """Build the FastAPI app bound to ``controller``."""
    app = FastAPI(
        title="SopsSecret Operator",
        description="Health and statistics for the SopsSecret operator",
        version=app_version(),
    )

    @app.get("/")
    async def service_info():
        """Service information."""
        return {"status": "ok", "service": "sops-secret-operator"}

    @app.get("/healthz")
    async def healthz():
        """Liveness probe."""
        return {"status": "ok"}

    @app.get("/readyz")
    async def readyz():
        """Readiness probe: ready once the controller workers are running."""
        if not controller.running:
            return JSONResponse(status_code=503, content={"status": "not ready"})
        return {"status": "ready"}

    @app.get("/api/v1/stats", response_model=ControllerStatsResponse)
    async def stats():
        """Reconciliation counters."""
        return ControllerStatsResponse(
            running=controller.running,
            queue_depth=controller.queue_depth,
            in_flight=controller.in_flight,
            reconciles_succeeded=controller.stats.reconciles_succeeded,
            reconciles_failed=controller.stats.reconciles_failed,
            reconciles_requeued=controller.stats.reconciles_requeued,
            last_error=controller.stats.last_error,
        )

    return app


class HealthServer:
    """Runs the health API with uvicorn."""

    def __init__(self, controller: Controller, host: str = "0.0.0.0", port: int = 8080):
        self.host = host
        self.port = port
        self.app = create_app(controller)
        self.server: Optional[uvicorn.Server] = None
        self._stopped = False

    async def start(self) -> None:
        """Start the HTTP server."""
        if self._stopped:
            logger.info("Health API stopped before it started")
            return
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting health API on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping health API")
        self._stopped = True
        if self.server:
            self.server.should_exit = True
