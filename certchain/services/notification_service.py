"""
Certificate delivery over SMTP.
Sends each recipient an HTML email with the PDF attached and a verification link.
"""

import asyncio
import html
import smtplib
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Awaitable, Callable, List, Optional

from pydantic import BaseModel

from ..core.config import Settings
from ..models.certificate import DeliveryResult
from ..utils.dates import format_display_date
from ..utils.logger import get_logger
from .qr_service import QRCodeService

logger = get_logger("notification_service")


EMAIL_TEMPLATE = """\
<div style="font-family:system-ui,sans-serif;max-width:600px;margin:0 auto;padding:24px;">
  <h2 style="color:#111827;">Your Certificate is Ready</h2>
  <p>Dear <strong>{student_name}</strong>,</p>
  <p>Congratulations! Your certificate for <strong>{degree}</strong> from
     <strong>{institution}</strong> has been issued and recorded on the blockchain.</p>
  <p><strong>Certificate ID:</strong> <code>{cert_id}</code></p>
  <p><strong>Issue Date:</strong> {issue_date}</p>
  <p>Your certificate is attached to this email as a PDF. You can verify it anytime at:</p>
  <p><a href="{verify_url}" style="color:#2563eb;">{verify_url}</a></p>
  <p><img src="{qr_data_url}" alt="Verification QR code" width="150" height="150"/></p>
  <p>Best regards,<br/>{institution}</p>
</div>
"""


class EmailJob(BaseModel):
    """One certificate email to deliver"""
    to: str
    student_name: str
    cert_id: str
    degree: str
    institution: str
    issue_date: str
    pdf_data: Optional[bytes] = None
    pdf_file_name: Optional[str] = None


class NotificationService:
    """Service for delivering issued certificates by email"""

    def __init__(
        self,
        qr_service: QRCodeService,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_pass: Optional[str] = None,
        email_from: Optional[str] = None,
        delay_seconds: float = 0.5
    ):
        self.qr_service = qr_service
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_pass = smtp_pass
        self.email_from = email_from or smtp_user
        self.delay_seconds = delay_seconds

    @classmethod
    def from_settings(cls, settings: Settings, qr_service: QRCodeService) -> "NotificationService":
        return cls(
            qr_service=qr_service,
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_pass=settings.smtp_pass,
            email_from=settings.email_from,
            delay_seconds=settings.email_delay_seconds,
        )

    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_pass)

    def build_message(self, job: EmailJob) -> EmailMessage:
        """Compose the certificate email for one recipient"""
        verify_url = self.qr_service.verify_url(job.cert_id)
        body = EMAIL_TEMPLATE.format(
            student_name=html.escape(job.student_name),
            degree=html.escape(job.degree),
            institution=html.escape(job.institution),
            cert_id=html.escape(job.cert_id),
            issue_date=html.escape(format_display_date(job.issue_date)),
            verify_url=html.escape(verify_url),
            qr_data_url=self.qr_service.generate_data_url(job.cert_id, size=150),
        )

        msg = EmailMessage()
        msg["Subject"] = f"Your {job.degree} Certificate - {job.institution}"
        msg["From"] = self.email_from
        msg["To"] = job.to
        msg["Message-ID"] = make_msgid(domain=(self.smtp_host or "localhost"))
        msg.set_content(
            f"Dear {job.student_name},\n\n"
            f"Your certificate {job.cert_id} for {job.degree} from {job.institution} has been issued.\n"
            f"Verify it at: {verify_url}\n"
        )
        msg.add_alternative(body, subtype="html")

        if job.pdf_data:
            msg.add_attachment(
                job.pdf_data,
                maintype="application",
                subtype="pdf",
                filename=job.pdf_file_name or f"{job.cert_id}-Certificate.pdf"
            )
        return msg

    def _connect(self, timeout: int) -> smtplib.SMTP:
        if self.smtp_port == 465:
            return smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, timeout=timeout)
        server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=timeout)
        server.starttls()
        return server

    def _deliver(self, msg: EmailMessage) -> None:
        server = self._connect(timeout=30)
        try:
            server.login(self.smtp_user, self.smtp_pass)
            server.send_message(msg)
        finally:
            server.quit()

    async def send(self, job: EmailJob) -> DeliveryResult:
        """
        Send one certificate email.

        Never raises; delivery problems are reported in the result.
        """
        if not self.is_configured():
            return DeliveryResult(
                sent=False,
                to=job.to,
                error="Email not configured. Set SMTP_HOST, SMTP_USER, SMTP_PASS in .env"
            )

        try:
            msg = self.build_message(job)
            await asyncio.to_thread(self._deliver, msg)
        except Exception as e:
            logger.error(f"Failed to send certificate {job.cert_id} to {job.to}: {e}")
            return DeliveryResult(sent=False, to=job.to, error=str(e))

        logger.info(f"Certificate {job.cert_id} sent to {job.to}")
        return DeliveryResult(sent=True, to=job.to, message_id=msg["Message-ID"])

    async def bulk_send(
        self,
        jobs: List[EmailJob],
        on_each: Optional[Callable[[int, DeliveryResult], Awaitable[None]]] = None
    ) -> List[DeliveryResult]:
        """Send emails one after another with a short pause between them"""
        results: List[DeliveryResult] = []
        for index, job in enumerate(jobs):
            result = await self.send(job)
            results.append(result)
            if on_each:
                await on_each(index, result)
            if self.delay_seconds and index < len(jobs) - 1:
                await asyncio.sleep(self.delay_seconds)

        sent = sum(1 for result in results if result.sent)
        logger.info(f"Bulk email finished: {sent} sent, {len(results) - sent} failed")
        return results

    async def verify_connection(self) -> bool:
        """Check that the SMTP server accepts our credentials"""
        if not self.is_configured():
            return False

        def _check() -> None:
            server = self._connect(timeout=10)
            try:
                server.login(self.smtp_user, self.smtp_pass)
            finally:
                server.quit()

        try:
            await asyncio.to_thread(_check)
            return True
        except Exception as e:
            logger.warning(f"SMTP connection check failed: {e}")
            return False
