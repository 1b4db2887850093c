"""
QR code generation for certificate verification.
Each code links to the public verification page for one certificate id.
"""

import base64
import os
from io import BytesIO
from typing import Awaitable, Callable, List, Optional
from urllib.parse import quote

import aiofiles
import qrcode
from qrcode.image.svg import SvgPathImage

from ..core.config import Settings
from ..models.certificate import OutcomeStatus, QROutcome
from ..utils.logger import get_logger

logger = get_logger("qr_service")


class QRCodeService:
    """Service for generating verification QR codes"""

    def __init__(self, verify_base_url: str = "http://localhost:3000/verify", output_dir: str = "output"):
        self.verify_base_url = verify_base_url
        self.output_dir = os.path.join(output_dir, "qrcodes")

    @classmethod
    def from_settings(cls, settings: Settings) -> "QRCodeService":
        return cls(verify_base_url=settings.verify_base_url, output_dir=settings.output_dir)

    def verify_url(self, cert_id: str) -> str:
        """Public verification URL for a certificate id"""
        return f"{self.verify_base_url}?certId={quote(cert_id, safe='')}"

    def generate_png(
        self,
        cert_id: str,
        size: int = 400,
        border: int = 2,
        fill_color: str = "#111827"
    ) -> bytes:
        """
        Generate a verification QR code as PNG bytes.

        Args:
            cert_id: Certificate identifier encoded in the verification URL
            size: Image edge length in pixels
            border: Quiet-zone width in modules
            fill_color: Module colour

        Returns:
            PNG image bytes
        """
        qr = qrcode.QRCode(
            version=None,
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=10,
            border=border,
        )
        qr.add_data(self.verify_url(cert_id))
        qr.make(fit=True)

        img = qr.make_image(fill_color=fill_color, back_color="white")
        img = img.resize((size, size))

        buffer = BytesIO()
        img.save(buffer, format="PNG")
        return buffer.getvalue()

    def generate_svg(self, cert_id: str, border: int = 2) -> str:
        """Verification QR code as a standalone SVG document"""
        qr = qrcode.QRCode(
            version=None,
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            border=border,
            image_factory=SvgPathImage,
        )
        qr.add_data(self.verify_url(cert_id))
        qr.make(fit=True)
        return qr.make_image().to_string(encoding="unicode")

    def generate_data_url(self, cert_id: str, size: int = 200) -> str:
        """QR code as a data URL for embedding in HTML emails"""
        png = self.generate_png(cert_id, size=size, border=1)
        return "data:image/png;base64," + base64.b64encode(png).decode()

    async def save(self, cert_id: str, size: int = 600, file_name: Optional[str] = None) -> QROutcome:
        """Generate a QR code and write it under the qrcodes output directory"""
        png = self.generate_png(cert_id, size=size)

        os.makedirs(self.output_dir, exist_ok=True)
        file_name = file_name or f"{cert_id}.png"
        file_path = os.path.join(self.output_dir, file_name)

        async with aiofiles.open(file_path, "wb") as f:
            await f.write(png)

        logger.info(f"Generated QR code for certificate {cert_id}")

        return QROutcome(
            status=OutcomeStatus.SUCCESS,
            file_name=file_name,
            file_path=file_path,
            verify_url=self.verify_url(cert_id),
        )

    async def bulk_generate(
        self,
        cert_ids: List[str],
        on_each: Optional[Callable[[int, QROutcome], Awaitable[None]]] = None
    ) -> List[QROutcome]:
        """
        Generate QR codes for several certificates.

        A failure for one id is recorded in its outcome and does not stop the rest.

        Args:
            cert_ids: Certificate ids in order
            on_each: Awaited after each id with its index and outcome

        Returns:
            One outcome per id, in input order
        """
        outcomes: List[QROutcome] = []
        for index, cert_id in enumerate(cert_ids):
            try:
                outcome = await self.save(cert_id)
            except Exception as e:
                logger.error(f"QR generation failed for {cert_id}: {e}")
                outcome = QROutcome(status=OutcomeStatus.FAILED, error=str(e))
            outcomes.append(outcome)
            if on_each:
                await on_each(index, outcome)
        return outcomes
