"""
Batch job models: lifecycle status, progress descriptor, validation report and summary.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .certificate import CertificateRecord, RecordResult


class JobStatus(str, Enum):
    """Batch job lifecycle."""
    VALIDATED = "validated"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchPhase(str, Enum):
    """Pipeline phases, in execution order."""
    STARTING = "starting"
    GENERATING_IDS = "generating_ids"
    GENERATING_DOCUMENTS = "generating_documents"
    STORING_CONTENT = "storing_content"
    CHAIN_SUBMISSION = "chain_submission"
    GENERATING_SECONDARY_ARTIFACTS = "generating_secondary_artifacts"
    NOTIFYING = "notifying"
    COMPLETED = "completed"


class Progress(BaseModel):
    """Progress descriptor. Replaced as a whole on every update so pollers never see a partial write."""

    model_config = ConfigDict(frozen=True)

    phase: BatchPhase
    current: int = 0
    total: int = 0
    percent: int = 0

    @classmethod
    def at(cls, phase: BatchPhase, current: int, total: int) -> "Progress":
        percent = round(current / total * 100) if total else 100
        return cls(phase=phase, current=current, total=total, percent=percent)


class ValidationIssue(BaseModel):
    field: str
    message: str
    row: int


class InvalidRow(BaseModel):
    row: int
    data: Dict[str, Any]
    errors: List[ValidationIssue]


class ValidationReport(BaseModel):
    """Outcome of validating a parsed batch."""

    total_rows: int
    valid_count: int
    invalid_count: int
    has_errors: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
    valid_records: List[CertificateRecord] = Field(default_factory=list)
    invalid_records: List[InvalidRow] = Field(default_factory=list)


class BatchSummary(BaseModel):
    total: int
    pdfs_generated: int = 0
    pdfs_failed: int = 0
    content_stored: int = 0
    blockchain_success: int = 0
    blockchain_failed: int = 0
    blockchain_skipped: int = 0
    qr_codes_generated: int = 0
    emails_sent: int = 0
    emails_failed: int = 0
    emails_skipped: int = 0
    nonces_consumed: int = 0


class Job(BaseModel):
    """One batch-processing run, owned by the job store."""

    job_id: str
    status: JobStatus = JobStatus.VALIDATED
    file_name: Optional[str] = None
    staging_path: Optional[str] = None
    records: List[CertificateRecord] = Field(default_factory=list)
    validation: Optional[ValidationReport] = None
    template_id: Optional[str] = None
    notify: bool = False
    progress: Optional[Progress] = None
    results: Optional[List[RecordResult]] = None
    partial_results: Optional[List[RecordResult]] = None
    summary: Optional[BatchSummary] = None
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)
