"""
QR code API endpoints.
Verification QR codes for a certificate id as PNG, SVG or a data URL.
"""

from enum import Enum

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from ...core.dependencies import get_qr_service
from ...services.qr_service import QRCodeService
from ...utils.logger import get_logger

logger = get_logger("qr_api")

router = APIRouter(
    prefix="/api/v1/qr",
    tags=["qr"],
    responses={
        400: {"description": "Bad Request"},
        500: {"description": "Internal Server Error"}
    }
)


class QRFormat(str, Enum):
    PNG = "png"
    SVG = "svg"
    DATAURL = "dataurl"


@router.get(
    "/{cert_id}",
    summary="Verification QR code",
    description="QR code linking to the verification page of a certificate"
)
async def get_qr_code(
    cert_id: str,
    format: QRFormat = Query(QRFormat.PNG, description="png, svg or dataurl"),
    width: int = Query(400, ge=64, le=2000, description="Edge length in pixels (png and dataurl)"),
    qr_service: QRCodeService = Depends(get_qr_service)
):
    """
    Render a verification QR code on demand.

    The certificate is not looked up on-chain; the code only encodes its
    verification URL.
    """
    try:
        if format == QRFormat.SVG:
            return Response(content=qr_service.generate_svg(cert_id), media_type="image/svg+xml")

        if format == QRFormat.DATAURL:
            return {
                "cert_id": cert_id,
                "data_url": qr_service.generate_data_url(cert_id, size=width),
                "verify_url": qr_service.verify_url(cert_id),
            }

        return Response(
            content=qr_service.generate_png(cert_id, size=width),
            media_type="image/png",
            headers={"Content-Disposition": f'inline; filename="{cert_id}-qr.png"'}
        )
    except Exception as e:
        logger.error(f"QR generation failed for {cert_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to generate QR code"
        )
