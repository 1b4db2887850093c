from .certificate import (
    CertificateRecord,
    ContentBlock,
    DeliveryResult,
    DocumentOutcome,
    NotificationOutcome,
    NotificationReceipt,
    NotificationStatus,
    OutcomeStatus,
    QROutcome,
    RecordResult,
    TransactionOutcome,
)
from .job import (
    BatchPhase,
    BatchSummary,
    InvalidRow,
    Job,
    JobStatus,
    Progress,
    ValidationIssue,
    ValidationReport,
)

__all__ = [
    "BatchPhase",
    "BatchSummary",
    "CertificateRecord",
    "ContentBlock",
    "DeliveryResult",
    "DocumentOutcome",
    "InvalidRow",
    "Job",
    "JobStatus",
    "NotificationOutcome",
    "NotificationReceipt",
    "NotificationStatus",
    "OutcomeStatus",
    "Progress",
    "QROutcome",
    "RecordResult",
    "TransactionOutcome",
    "ValidationIssue",
    "ValidationReport",
]
