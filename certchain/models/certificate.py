"""
Certificate record models and per-stage outcome schemas for batch issuance.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from ..core.errors import StageFieldAlreadySet
from ..utils.dates import to_unix_timestamp


IDENTITY_FIELDS = frozenset({
    "row", "student_name", "student_id", "degree", "institution", "issue_date", "email"
})

# Write-once fields filled in by the pipeline
STAGE_FIELDS = frozenset({
    "cert_id", "document_hash", "content_id", "content_pinned", "content_gateway", "content_error"
})


class OutcomeStatus(str, Enum):
    """Per-stage result status."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class NotificationStatus(str, Enum):
    """Per-record notification status."""
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class CertificateRecord(BaseModel):
    """One row of intended issuance."""

    row: int = Field(..., ge=1, description="1-based row in the uploaded file")
    student_name: str
    student_id: str
    degree: str
    institution: str
    issue_date: str
    email: Optional[str] = None

    cert_id: Optional[str] = None
    document_hash: Optional[str] = None
    content_id: Optional[str] = None
    content_pinned: Optional[bool] = None
    content_gateway: Optional[str] = None
    content_error: Optional[str] = None

    _sealed: bool = PrivateAttr(default=False)

    def seal(self) -> None:
        """Freeze the identity fields. Called when the record enters a batch run."""
        self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    def assign(self, field: str, value: Any) -> None:
        """Set a write-once stage field."""
        if field not in STAGE_FIELDS:
            raise AttributeError(f"'{field}' is not a stage field")
        setattr(self, field, value)

    def __setattr__(self, name: str, value: Any) -> None:
        if name in IDENTITY_FIELDS and self._sealed:
            raise AttributeError(f"'{name}' is read-only once the record is in a batch")
        if name in STAGE_FIELDS and getattr(self, name) is not None:
            raise StageFieldAlreadySet(name, self.row)
        super().__setattr__(name, value)

    @property
    def issue_timestamp(self) -> int:
        """Issue date as Unix seconds (UTC)."""
        return to_unix_timestamp(self.issue_date)


class TransactionOutcome(BaseModel):
    """Terminal chain result for one record."""

    model_config = ConfigDict(frozen=True)

    status: OutcomeStatus
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    error: Optional[str] = None
    accepted: bool = False

    @classmethod
    def skipped(cls, reason: str) -> "TransactionOutcome":
        return cls(status=OutcomeStatus.SKIPPED, error=reason)


class DocumentOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: OutcomeStatus
    file_name: Optional[str] = None
    file_path: Optional[str] = None
    size: Optional[int] = None
    error: Optional[str] = None


class QROutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: OutcomeStatus
    file_name: Optional[str] = None
    file_path: Optional[str] = None
    verify_url: Optional[str] = None
    error: Optional[str] = None


class DeliveryResult(BaseModel):
    """Result of one notification send. Never raised, always returned."""

    sent: bool
    to: Optional[str] = None
    message_id: Optional[str] = None
    error: Optional[str] = None


class NotificationOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: NotificationStatus
    to: Optional[str] = None
    error: Optional[str] = None


class NotificationReceipt(BaseModel):
    """Notification outcome for one row of a completed job"""

    row: int
    cert_id: Optional[str] = None
    status: NotificationStatus
    to: Optional[str] = None
    error: Optional[str] = None


class ContentBlock(BaseModel):
    content_id: Optional[str] = None
    document_hash: Optional[str] = None
    pinned: bool = False
    gateway: Optional[str] = None
    error: Optional[str] = None


class RecordResult(BaseModel):
    """Compiled per-record result of a finished batch."""

    row: int
    cert_id: Optional[str] = None
    student_name: str
    student_id: str
    degree: str
    institution: str
    issue_date: str
    email: Optional[str] = None
    pdf: DocumentOutcome
    content: ContentBlock
    blockchain: TransactionOutcome
    qr: QROutcome
    notification: NotificationOutcome
