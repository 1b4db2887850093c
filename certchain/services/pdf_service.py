"""
PDF rendering service for certificates.
Draws certificate documents with ReportLab and embeds a verification QR code.
"""

import asyncio
import io
import os
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

import aiofiles
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from ..core.config import Settings
from ..core.errors import RenderError, TemplateNotFound
from ..models.certificate import CertificateRecord
from ..utils.dates import format_display_date
from ..utils.logger import get_logger
from .qr_service import QRCodeService

logger = get_logger("pdf_service")


DEFAULT_TEMPLATE = "default-certificate"


@dataclass(frozen=True)
class CertificateTemplate:
    """Visual layout for a certificate"""
    template_id: str
    name: str
    heading: str
    accent: str
    border: str
    body_font: str = "Helvetica"
    heading_font: str = "Helvetica-Bold"


@dataclass
class RenderedDocument:
    """One rendered certificate"""
    file_name: str
    file_path: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


TEMPLATES: Dict[str, CertificateTemplate] = {
    "default-certificate": CertificateTemplate(
        template_id="default-certificate",
        name="Default Certificate",
        heading="Certificate of Achievement",
        accent="#1D4ED8",
        border="#1E3A8A",
    ),
    "classic-certificate": CertificateTemplate(
        template_id="classic-certificate",
        name="Classic Certificate",
        heading="Certificate of Graduation",
        accent="#92400E",
        border="#78350F",
        body_font="Times-Roman",
        heading_font="Times-Bold",
    ),
    "modern-certificate": CertificateTemplate(
        template_id="modern-certificate",
        name="Modern Certificate",
        heading="Certificate",
        accent="#047857",
        border="#111827",
    ),
}


def safe_file_stem(value: str) -> str:
    """Strip characters that are unsafe in file names and join words with underscores"""
    cleaned = re.sub(r"[^a-zA-Z0-9\s]", "", value)
    return re.sub(r"\s+", "_", cleaned.strip())


class RenderSession:
    """
    A rendering context shared by every record of one batch.

    The template and QR generator are resolved once; each call to ``render``
    draws one document and writes it under the certificates output directory.
    """

    def __init__(self, template: CertificateTemplate, output_dir: str, qr_service: QRCodeService):
        self.template = template
        self.output_dir = output_dir
        self.qr_service = qr_service
        self.rendered = 0
        self._closed = False

    async def __aenter__(self) -> "RenderSession":
        os.makedirs(self.output_dir, exist_ok=True)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._closed = True
        logger.info(f"Render session for '{self.template.template_id}' closed after {self.rendered} documents")

    async def render(self, record: CertificateRecord) -> RenderedDocument:
        """
        Render one certificate.

        Args:
            record: Record with an assigned certificate id

        Returns:
            RenderedDocument with the PDF bytes and where they were written

        Raises:
            RenderError: If the record cannot be rendered
        """
        if self._closed:
            raise RenderError("Render session is closed")
        if not record.cert_id:
            raise RenderError(f"Row {record.row} has no certificate id")

        try:
            data = await asyncio.to_thread(self._draw, record)
        except RenderError:
            raise
        except Exception as e:
            raise RenderError(f"Failed to render certificate {record.cert_id}: {e}") from e

        file_name = f"{record.cert_id}-{safe_file_stem(record.student_name)}.pdf"
        file_path = os.path.join(self.output_dir, file_name)

        async with aiofiles.open(file_path, "wb") as f:
            await f.write(data)

        self.rendered += 1
        return RenderedDocument(file_name=file_name, file_path=file_path, data=data)

    def _draw(self, record: CertificateRecord) -> bytes:
        template = self.template
        width, height = landscape(A4)
        buffer = io.BytesIO()

        pdf = canvas.Canvas(buffer, pagesize=(width, height), invariant=1)
        pdf.setTitle(f"{template.heading} - {record.student_name}")
        pdf.setAuthor(record.institution)
        pdf.setSubject(record.cert_id)

        # Frame
        pdf.setStrokeColor(colors.HexColor(template.border))
        pdf.setLineWidth(6)
        pdf.rect(24, 24, width - 48, height - 48)
        pdf.setLineWidth(1.5)
        pdf.rect(36, 36, width - 72, height - 72)

        center = width / 2
        pdf.setFillColor(colors.HexColor(template.accent))
        pdf.setFont(template.heading_font, 34)
        pdf.drawCentredString(center, height - 120, template.heading)

        pdf.setFillColor(colors.HexColor("#374151"))
        pdf.setFont(template.body_font, 14)
        pdf.drawCentredString(center, height - 170, "This is to certify that")

        pdf.setFillColor(colors.HexColor("#111827"))
        pdf.setFont(template.heading_font, 30)
        pdf.drawCentredString(center, height - 215, record.student_name)

        pdf.setFillColor(colors.HexColor("#374151"))
        pdf.setFont(template.body_font, 14)
        pdf.drawCentredString(center, height - 255, "has successfully completed the requirements for")

        pdf.setFillColor(colors.HexColor(template.accent))
        pdf.setFont(template.heading_font, 20)
        pdf.drawCentredString(center, height - 290, record.degree)

        pdf.setFillColor(colors.HexColor("#374151"))
        pdf.setFont(template.body_font, 14)
        pdf.drawCentredString(center, height - 325, f"awarded by {record.institution}")
        pdf.drawCentredString(center, height - 350, f"on {format_display_date(record.issue_date)}")

        pdf.setFont(template.body_font, 10)
        pdf.drawString(60, 70, f"Certificate ID: {record.cert_id}")
        pdf.drawString(60, 56, f"Student ID: {record.student_id}")
        pdf.drawString(60, 42, f"Verify at: {self.qr_service.verify_url(record.cert_id)}")

        qr_png = self.qr_service.generate_png(record.cert_id, size=300, border=1)
        qr_size = 96
        pdf.drawImage(
            ImageReader(io.BytesIO(qr_png)),
            width - qr_size - 60, 48,
            width=qr_size,
            height=qr_size,
            mask="auto"
        )

        pdf.showPage()
        pdf.save()
        return buffer.getvalue()


class PDFService:
    """Service for certificate PDF rendering."""

    def __init__(self, qr_service: QRCodeService, output_dir: str = "output"):
        self.qr_service = qr_service
        self.output_dir = os.path.join(output_dir, "certificates")

    @classmethod
    def from_settings(cls, settings: Settings, qr_service: QRCodeService) -> "PDFService":
        return cls(qr_service=qr_service, output_dir=settings.output_dir)

    def list_templates(self) -> List[Dict[str, str]]:
        return [
            {"id": template.template_id, "name": template.name, "heading": template.heading}
            for template in TEMPLATES.values()
        ]

    def get_template(self, template_id: Optional[str]) -> CertificateTemplate:
        template = TEMPLATES.get(template_id or DEFAULT_TEMPLATE)
        if template is None:
            raise TemplateNotFound(template_id)
        return template

    def session(self, template_id: Optional[str] = None) -> RenderSession:
        """
        Open a render session for a batch.

        Raises:
            TemplateNotFound: If the template id is unknown
        """
        return RenderSession(self.get_template(template_id), self.output_dir, self.qr_service)

    async def render(self, template_id: Optional[str], record: CertificateRecord) -> RenderedDocument:
        """Render a single certificate outside of a batch"""
        async with self.session(template_id) as session:
            return await session.render(record)
