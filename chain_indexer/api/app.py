"""FastAPI application serving health and Prometheus metrics"""

import time
from typing import Optional

import structlog
from fastapi import FastAPI, Request, Response

from chain_indexer.config.models import Settings
from chain_indexer.database.manager import DatabaseManager
from chain_indexer.monitoring import metrics
from chain_indexer.monitors.sync_loop import SyncLoop

logger = structlog.get_logger()


def create_app(
    settings: Settings, db_manager: DatabaseManager, sync_loop: Optional[SyncLoop] = None
) -> FastAPI:
    """
    Create and configure FastAPI application.
    
    Args:
        settings: Application settings
        db_manager: Database manager instance
        sync_loop: Sync loop whose progress is reported by the health check
        
    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Chain Indexer",
        description="Health and metrics for the blockchain ingestion pipeline",
        version="1.0.0",
        docs_url="/docs",
        redoc_url=None,
    )

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Middleware to track request metrics"""
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.time()
        response = await call_next(request)

        metrics.api_request_latency.labels(
            endpoint=request.url.path,
            method=request.method,
        ).observe(time.time() - start_time)
        metrics.api_requests_total.labels(
            endpoint=request.url.path,
            method=request.method,
            status=response.status_code,
        ).inc()
        return response

    app.state.db_manager = db_manager
    app.state.settings = settings
    app.state.sync_loop = sync_loop

    from chain_indexer.api.routes import health

    app.include_router(health.router)

    @app.get("/metrics")
    async def metrics_endpoint():
        """Prometheus metrics endpoint"""
        return Response(content=metrics.get_metrics(), media_type=metrics.get_content_type())

    logger.info(
        "fastapi_app_created",
        title=app.title,
        version=app.version,
        chain_id=settings.chain_id,
    )

    return app
