"""
Exception hierarchy for the CertChain service.

Structural errors are raised synchronously, before any background work starts.
Per-record failures inside a batch are never raised across a phase boundary;
they are recorded on the record as reason strings.
"""

from typing import List, Optional


class CertChainError(Exception):
    """Base class for all service errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# Structural (whole-batch) errors

class NoDataRows(CertChainError):
    """The parsed input contained no data rows."""

    def __init__(self):
        super().__init__("No data rows found in file")


class MissingColumns(CertChainError):
    """Required columns are absent from the parsed input."""

    def __init__(self, missing: List[str], hint: Optional[str] = None):
        super().__init__(f"Missing required columns: {', '.join(missing)}")
        self.missing = missing
        self.hint = hint


class UnsupportedFileFormat(CertChainError):
    """The uploaded file is not a supported tabular format."""

    def __init__(self, extension: str):
        super().__init__(f"Unsupported file format: {extension or '<none>'}. Use CSV or XLSX.")
        self.extension = extension


class UnreadableFile(CertChainError):
    """The uploaded file could not be decoded as a table."""

    def __init__(self, detail: str):
        super().__init__(f"Could not read file: {detail}")
        self.detail = detail


class JobNotFound(CertChainError):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobAlreadyProcessing(CertChainError):
    """A run for the job is active or has already finished; jobs run at most once."""

    def __init__(self, job_id: str, status: str = "processing"):
        if status == "processing":
            message = f"Job {job_id} is already being processed"
        else:
            message = f"Job {job_id} has already been processed (status: {status})"
        super().__init__(message)
        self.job_id = job_id
        self.status = status


class JobNotCompleted(CertChainError):
    def __init__(self, job_id: str, status: str):
        super().__init__(f"Job {job_id} is not completed (status: {status})")
        self.job_id = job_id
        self.status = status


class NoValidRecords(CertChainError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} has no valid records to process")
        self.job_id = job_id


class InvalidRecord(CertChainError):
    """A single record submitted for issuance failed validation."""

    def __init__(self, errors: List[str]):
        super().__init__(f"Invalid record: {'; '.join(errors)}")
        self.errors = errors


class StageFieldAlreadySet(CertChainError):
    """A write-once stage field on a record was written twice."""

    def __init__(self, field: str, row: int):
        super().__init__(f"Field '{field}' on row {row} is already set")
        self.field = field
        self.row = row


# Chain errors

class ChainError(CertChainError):
    """Base class for on-chain interaction failures."""


class ChainNotConfigured(ChainError):
    def __init__(self, detail: str):
        super().__init__(f"Chain client not configured: {detail}")


class ChainSubmissionError(ChainError):
    """A transaction was rejected before the network accepted it."""


class TransactionReverted(ChainError):
    """A transaction was accepted but failed or timed out on-chain."""

    def __init__(self, message: str, tx_hash: str):
        super().__init__(message)
        self.tx_hash = tx_hash


# Collaborator errors

class NotifierNotConfigured(CertChainError):
    def __init__(self):
        super().__init__("Email not configured. Set SMTP_HOST, SMTP_USER, SMTP_PASS in .env")


class TemplateNotFound(CertChainError):
    def __init__(self, template_id: str):
        super().__init__(f"Template not found: {template_id}")
        self.template_id = template_id


class RenderError(CertChainError):
    """Rendering a single document failed."""


class ContentStoreError(CertChainError):
    """Uploading content to the storage backend failed."""


def describe_error(error: BaseException) -> str:
    """Short, human-readable reason for an error, without stack detail or server paths."""
    if isinstance(error, OSError) and error.strerror:
        return error.strerror
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(error) or error.__class__.__name__
