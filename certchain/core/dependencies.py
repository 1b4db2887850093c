"""
Service dependencies for FastAPI routes.
Services are built once in the application lifespan and kept on app.state.
"""

from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from ..services.batch_orchestrator import BatchOrchestrator
from ..services.chain_client import ChainClient
from ..services.pdf_service import PDFService
from ..services.qr_service import QRCodeService
from ..utils.logger import get_logger
from .config import Settings

logger = get_logger("dependencies")


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_orchestrator(request: Request) -> BatchOrchestrator:
    return request.app.state.orchestrator


def get_pdf_service(request: Request) -> PDFService:
    return request.app.state.pdf_service


def get_optional_chain_client(request: Request) -> Optional[ChainClient]:
    return getattr(request.app.state, "chain_client", None)


def get_chain_client(
    chain_client: Optional[ChainClient] = Depends(get_optional_chain_client)
) -> ChainClient:
    """
    Chain client for routes that need on-chain access.

    Raises:
        HTTPException: 503 if the service was started without chain credentials
    """
    if chain_client is None:
        logger.warning("Chain access requested but the chain client is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Blockchain not configured. Set PRIVATE_KEY and CONTRACT_ADDRESS."
        )
    return chain_client


def get_qr_service(request: Request) -> QRCodeService:
    return request.app.state.qr_service
