"""
Health Endpoint

Read-only HTTP surface for a running synchronizer. Served next to the
Supervisor in `listen` mode when MEDSYNC_HEALTH_PORT is set.

    GET /health        liveness
    GET /health/sync   {running, state, last_block, head_block, lag, last_error}
    GET /metrics       counters, gauges and tick latency percentiles
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from medsync import __version__
from medsync.core.supervisor import Supervisor
from medsync.observability import get_logger

logger = get_logger(__name__)


def create_app(supervisor: Supervisor) -> FastAPI:
    """Build the health app around an injected Supervisor."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.supervisor = supervisor
        logger.info("Health endpoint started", contract=supervisor.config.checksum_address)

        yield

        # The owner of the supervisor closes it; here we only stop the polling
        supervisor.request_stop()
        logger.info("Health endpoint shutdown complete")

    app = FastAPI(
        title="medsync",
        description="Health and metrics for the ledger synchronizer.",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.supervisor = supervisor

    @app.get("/health", tags=["System"])
    async def health():
        """
        Basic health check endpoint.

        Returns 200 if the process is serving requests.
        For synchronizer state, use /health/sync
        """
        return {"status": "healthy", "service": "medsync"}

    @app.get("/health/sync", tags=["System"])
    async def health_sync(request: Request):
        """
        Synchronizer health.

        Returns 200 while the poller is running, 503 once it has stopped
        or failed. The body is the same either way.
        """
        sup: Supervisor = request.app.state.supervisor
        body = sup.health()
        healthy = body["running"] and not sup.failed
        body["status"] = "healthy" if healthy else "unhealthy"
        return JSONResponse(body, status_code=200 if healthy else 503)

    @app.get("/metrics", tags=["System"])
    async def metrics(request: Request):
        """
        Get synchronizer metrics.

        Returns counters, gauges, and latency percentiles.
        """
        return request.app.state.supervisor.metrics.get_summary()

    return app
