"""
Email API endpoints.
Re-send certificate emails for a completed batch.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from ...core.dependencies import get_orchestrator
from ...core.errors import JobNotCompleted, JobNotFound, NotifierNotConfigured
from ...models.certificate import NotificationStatus
from ...services.batch_orchestrator import BatchOrchestrator
from ...utils.logger import get_logger

logger = get_logger("email_api")

router = APIRouter(
    prefix="/api/v1/email",
    tags=["email"],
    responses={
        404: {"description": "Not Found"},
        409: {"description": "Conflict"},
        503: {"description": "Email Not Configured"}
    }
)


@router.post(
    "/bulk-send/{job_id}",
    summary="Re-send batch emails",
    description="Email every certificate a completed job issued on-chain to its recipient again"
)
async def bulk_send_emails(job_id: str, orchestrator: BatchOrchestrator = Depends(get_orchestrator)):
    """
    Re-send certificate emails for a completed job.

    Raises:
        HTTPException: 404 unknown job, 409 job not completed, 503 SMTP not configured
    """
    try:
        receipts = await orchestrator.resend_notifications(job_id)
    except JobNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except JobNotCompleted as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    except NotifierNotConfigured as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Re-sending emails for job {job_id} failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to send emails"
        )

    sent = sum(1 for receipt in receipts if receipt.status == NotificationStatus.SENT)
    return {
        "success": True,
        "job_id": job_id,
        "sent": sent,
        "failed": len(receipts) - sent,
        "results": [receipt.model_dump(mode="json") for receipt in receipts],
    }
