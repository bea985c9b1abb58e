"""Main FastAPI application"""

import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST

from issue_relay.api import conflicts, events, queues
from issue_relay.config import Settings
from issue_relay.relay import Relay, build_relay
from issue_relay.services.metrics import PrometheusMetrics

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    relay_factory: Callable[[Settings], Relay] = build_relay,
) -> FastAPI:
    """Application factory; the relay is built and started by the lifespan."""
    settings = settings or Settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events"""
        # Startup
        logger.info("Starting Issue Relay Service")
        relay = relay_factory(settings)
        app.state.relay = relay
        relay.start()
        yield
        # Shutdown
        logger.info("Stopping Issue Relay Service")
        relay.stop()

    app = FastAPI(
        title="Issue Relay Service",
        description="Relay issue events between GitLab and Jira",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Include API routers
    app.include_router(events.router)
    app.include_router(queues.router)
    app.include_router(conflicts.router)

    @app.get("/health")
    def health_check(request: Request):
        """Health check endpoint"""
        health = request.app.state.relay.get_health()
        return JSONResponse(status_code=200 if health["healthy"] else 503, content=health)

    @app.get("/metrics")
    def metrics(request: Request):
        """Prometheus exposition"""
        sink = request.app.state.relay.metrics
        if not isinstance(sink, PrometheusMetrics):
            raise HTTPException(status_code=404, detail="Metrics are disabled")
        return Response(content=sink.render(), media_type=CONTENT_TYPE_LATEST)

    return app


def main():
    import uvicorn

    settings = Settings()
    uvicorn.run(
        "issue_relay.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
