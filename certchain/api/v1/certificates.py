"""
Certificate API endpoints.
Single issuance, on-chain verification and registry statistics.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from ...core.dependencies import get_chain_client, get_orchestrator
from ...core.errors import (
    ChainError,
    ChainNotConfigured,
    InvalidRecord,
    RenderError,
    TemplateNotFound,
)
from ...models.requests import IssueCertificateRequest
from ...services.batch_orchestrator import BatchOrchestrator
from ...services.chain_client import ChainClient
from ...utils.logger import get_logger

logger = get_logger("certificates_api")

router = APIRouter(
    prefix="/api/v1/certificates",
    tags=["certificates"],
    responses={
        400: {"description": "Bad Request"},
        404: {"description": "Not Found"},
        502: {"description": "Blockchain Error"},
        500: {"description": "Internal Server Error"}
    }
)


@router.post(
    "/issue",
    status_code=status.HTTP_201_CREATED,
    summary="Issue a single certificate",
    description="Render, store and record one certificate on-chain, waiting for confirmation"
)
async def issue_certificate(
    request: IssueCertificateRequest,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator)
):
    """
    Issue one certificate synchronously.

    Args:
        request: Certificate details

    Returns:
        The per-record result with document, content, transaction, QR and notification blocks

    Raises:
        HTTPException: 400 for invalid records or templates, 502 for chain failures
    """
    try:
        result = await orchestrator.issue_one(
            request.record_data(),
            template_id=request.template_id,
            notify=request.send_email
        )
        return {"success": True, "certificate": result.model_dump(mode="json")}

    except InvalidRecord as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Invalid certificate data", "errors": e.errors}
        )
    except TemplateNotFound as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except ChainNotConfigured as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    except ChainError as e:
        logger.error(f"Single issuance failed on-chain: {e.message}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)
    except RenderError as e:
        logger.error(f"Single issuance failed to render: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to render certificate"
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Single issuance failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to issue certificate"
        )


@router.get(
    "/verify/{cert_id}",
    summary="Verify a certificate",
    description="Look up a certificate on-chain by id"
)
async def verify_certificate(cert_id: str, chain_client: ChainClient = Depends(get_chain_client)):
    try:
        certificate = await chain_client.verify_certificate(cert_id)
    except Exception as e:
        logger.error(f"Verification of {cert_id} failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to read certificate from the blockchain"
        )

    if not certificate["exists"]:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Certificate not found: {cert_id}"
        )
    return {"success": True, "verified": certificate["is_valid"], "certificate": certificate}


@router.get(
    "/stats",
    summary="Registry statistics",
    description="Totals recorded by the certificate registry contract"
)
async def registry_stats(chain_client: ChainClient = Depends(get_chain_client)):
    try:
        stats = await chain_client.get_stats()
    except Exception as e:
        logger.error(f"Failed to read registry stats: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to read registry statistics"
        )
    return {"success": True, "stats": stats}
