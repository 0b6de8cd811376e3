"""Health check endpoint"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel, Field

from chain_indexer.database.manager import DatabaseManager
from chain_indexer.monitors.sync_loop import SyncLoop, SyncState

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1", tags=["health"])


async def get_db_manager(request: Request) -> DatabaseManager:
    """Get database manager from app state"""
    return request.app.state.db_manager


async def get_sync_loop(request: Request) -> Optional[SyncLoop]:
    """Get sync loop from app state"""
    return request.app.state.sync_loop


class HealthResponse(BaseModel):
    """Health check response model"""

    status: str = Field(description="Overall health status (healthy or unhealthy)")
    database: str = Field(description="Database connection status")
    database_pool_size: int = Field(description="Current database connection pool size")
    database_pool_free: int = Field(description="Number of free connections in pool")
    chain_id: int = Field(description="Chain indexed by this instance")
    last_processed_block: Optional[int] = Field(
        default=None, description="Checkpoint of the sync loop, if known"
    )
    sync_state: str = Field(description="Sync loop state (idle, processing or stopped)")


@router.get("/health", response_model=HealthResponse)
async def health_check(
    request: Request,
    response: Response,
    db_manager: DatabaseManager = Depends(get_db_manager),
    sync_loop: Optional[SyncLoop] = Depends(get_sync_loop),
) -> HealthResponse:
    """
    Health check endpoint to verify indexer status.
    
    Returns:
    - 200 OK if the database is reachable and the sync loop has not failed
    - 503 Service Unavailable otherwise
    """
    chain_id = request.app.state.settings.chain_id
    sync_state = sync_loop.state.value if sync_loop else SyncState.STOPPED.value
    last_processed_block = sync_loop.last_processed_block if sync_loop else None
    loop_failed = sync_loop is not None and sync_loop.fatal_error is not None

    database = "connected"
    pool_size = 0
    pool_free = 0
    try:
        if not db_manager.pool:
            logger.error("health_check_failed", reason="database_pool_not_initialized")
            database = "disconnected"
        else:
            pool_size = await db_manager.get_pool_size()
            pool_free = await db_manager.get_pool_free_size()
            async with db_manager.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
    except Exception as e:
        logger.error("health_check_failed", error=str(e), error_type=type(e).__name__)
        database = "error"

    healthy = database == "connected" and not loop_failed
    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        if loop_failed:
            logger.error("health_check_failed", reason="sync_loop_fatal_error")
    else:
        logger.debug("health_check_success", pool_size=pool_size, pool_free=pool_free)

    return HealthResponse(
        status="healthy" if healthy else "unhealthy",
        database=database,
        database_pool_size=pool_size,
        database_pool_free=pool_free,
        chain_id=chain_id,
        last_processed_block=last_processed_block,
        sync_state=sync_state,
    )
