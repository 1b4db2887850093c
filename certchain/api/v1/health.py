"""
Health check API endpoints.
Reports service status and the state of the chain connection.
"""

import time
from typing import Optional

from fastapi import APIRouter, Depends

from ... import __version__
from ...core.dependencies import get_optional_chain_client, get_orchestrator
from ...services.batch_orchestrator import BatchOrchestrator
from ...services.chain_client import ChainClient
from ...utils.logger import get_logger

logger = get_logger("health")

SERVICE_NAME = "CertChain"

router = APIRouter(
    prefix="/api/v1",
    tags=["health"],
    responses={
        404: {"description": "Not found"},
        500: {"description": "Internal server error"}
    }
)


@router.get(
    "/health",
    summary="Health Check",
    description="Returns the health status of the service and its chain connection",
    response_description="Service health information"
)
async def health_check(
    chain_client: Optional[ChainClient] = Depends(get_optional_chain_client),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator)
):
    """
    Health check endpoint.

    A missing or unreachable chain connection degrades the status but is
    still reported with a 200 so the response body can be inspected.

    Returns:
        Dictionary containing service status, chain details and active jobs
    """
    health = {
        "status": "ok",
        "service": SERVICE_NAME,
        "timestamp": int(time.time()),
        "version": __version__,
        "active_jobs": len(orchestrator.active_jobs),
    }

    if chain_client is None:
        health["status"] = "degraded"
        health["blockchain"] = {"connected": False, "error": "not configured"}
        return health

    try:
        network = await chain_client.network_info()
        health["blockchain"] = {"connected": True, **network}
    except Exception as e:
        logger.error(f"Health check could not reach the chain: {e}")
        health["status"] = "degraded"
        health["blockchain"] = {"connected": False, "error": str(e)}

    return health


@router.get(
    "/health/live",
    summary="Liveness Check",
    description="Returns liveness status for container health checks",
    response_description="Service liveness information"
)
async def liveness_check():
    """
    Liveness check endpoint.
    Simple check to verify the service is running.
    """
    return {
        "status": "alive",
        "service": SERVICE_NAME,
        "timestamp": int(time.time())
    }
