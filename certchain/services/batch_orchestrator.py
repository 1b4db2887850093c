"""
Batch orchestrator for bulk certificate issuance.

Drives a validated job through id generation, rendering, content storage,
sequenced chain submission, QR generation and optional email delivery. Each
phase finishes for the whole batch before the next starts, and per-record
failures are recorded as data so one bad record never stops the batch.
"""

import asyncio
import io
import json
import os
import zipfile
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import aiofiles

from ..core.errors import (
    ChainNotConfigured,
    InvalidRecord,
    JobAlreadyProcessing,
    JobNotCompleted,
    NoValidRecords,
    NotifierNotConfigured,
    describe_error,
)
from ..models.certificate import (
    CertificateRecord,
    ContentBlock,
    DocumentOutcome,
    NotificationOutcome,
    NotificationReceipt,
    NotificationStatus,
    OutcomeStatus,
    QROutcome,
    RecordResult,
    TransactionOutcome,
)
from ..models.job import BatchPhase, BatchSummary, Job, JobStatus, Progress
from ..utils.logger import get_logger
from .chain_client import ChainClient
from .content_store import ContentStore, compute_content_hash
from .csv_parser import normalize_row, parse_file
from .job_store import JobStore
from .notification_service import EmailJob, NotificationService
from .pdf_service import PDFService
from .qr_service import QRCodeService
from .record_validator import build_record, validate_batch, validate_columns, validate_record

logger = get_logger("batch_orchestrator")


NOT_REACHED = "Batch stopped before this stage"


@dataclass
class BatchState:
    """Per-row stage outcomes collected while a batch runs"""
    documents: Dict[int, DocumentOutcome] = field(default_factory=dict)
    chain: Dict[int, TransactionOutcome] = field(default_factory=dict)
    qr: Dict[int, QROutcome] = field(default_factory=dict)
    notifications: Dict[int, NotificationOutcome] = field(default_factory=dict)
    nonces_consumed: int = 0

    def has_document(self, row: int) -> bool:
        outcome = self.documents.get(row)
        return outcome is not None and outcome.status == OutcomeStatus.SUCCESS

    def chain_succeeded(self, row: int) -> bool:
        outcome = self.chain.get(row)
        return outcome is not None and outcome.status == OutcomeStatus.SUCCESS


async def _read_bytes(path: str) -> bytes:
    async with aiofiles.open(path, "rb") as f:
        return await f.read()


class BatchOrchestrator:
    """Runs bulk issuance jobs in the background and reports their progress"""

    def __init__(
        self,
        job_store: JobStore,
        pdf_service: PDFService,
        content_store: ContentStore,
        qr_service: QRCodeService,
        notifier: Optional[NotificationService] = None,
        chain_client: Optional[ChainClient] = None
    ):
        self.job_store = job_store
        self.pdf_service = pdf_service
        self.content_store = content_store
        self.qr_service = qr_service
        self.notifier = notifier
        self.chain_client = chain_client
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def active_jobs(self) -> List[str]:
        return list(self._tasks)

    def _require_chain(self) -> ChainClient:
        if self.chain_client is None:
            raise ChainNotConfigured("set PRIVATE_KEY and CONTRACT_ADDRESS to enable issuance")
        return self.chain_client

    # Job creation

    def create_job(
        self,
        rows: Sequence[Mapping[str, str]],
        file_name: Optional[str] = None,
        staging_path: Optional[str] = None
    ) -> Job:
        """
        Validate parsed rows and register a job for them.

        Raises:
            NoDataRows: If there are no rows
            MissingColumns: If required columns are absent
        """
        validate_columns(rows)
        report = validate_batch(rows)
        return self.job_store.create(
            records=report.valid_records,
            validation=report,
            file_name=file_name,
            staging_path=staging_path,
        )

    async def create_job_from_file(self, path: str, file_name: Optional[str] = None) -> Job:
        """
        Parse an uploaded file and register a job for it.

        The file stays in place as the job's staging file and is removed when
        the batch finishes.
        """
        rows = await asyncio.to_thread(parse_file, path)
        return self.create_job(rows, file_name=file_name or os.path.basename(path), staging_path=path)

    # Batch lifecycle

    def begin_batch(self, job_id: str, template_id: Optional[str] = None, notify: bool = False) -> Job:
        """
        Start processing a validated job and return without waiting for it.

        Raises:
            JobNotFound: If the job does not exist
            JobAlreadyProcessing: If the job is running or has already run
            NoValidRecords: If the job has nothing to issue
            TemplateNotFound: If the template id is unknown
            ChainNotConfigured: If no chain client is available
        """
        job = self.job_store.get(job_id)
        if job.status != JobStatus.VALIDATED:
            raise JobAlreadyProcessing(job_id, job.status.value)
        if not job.records:
            raise NoValidRecords(job_id)

        self._require_chain()
        template = self.pdf_service.get_template(template_id)

        job = self.job_store.mark_processing(job_id, template.template_id, notify)
        for record in job.records:
            record.seal()

        task = asyncio.create_task(self._run(job_id))
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))

        logger.info(
            f"Started job {job_id}: {len(job.records)} records, template '{template.template_id}', notify={notify}"
        )
        return job

    def poll_status(self, job_id: str) -> Dict[str, Any]:
        """Current status of a job; results and summary only once it has completed"""
        job = self.job_store.get(job_id)

        status: Dict[str, Any] = {
            "job_id": job.job_id,
            "status": job.status.value,
            "file_name": job.file_name,
            "total_records": len(job.records),
            "created_at": job.created_at.isoformat(),
        }
        if job.progress is not None:
            status["phase"] = job.progress.phase.value
            status["progress"] = job.progress.model_dump(mode="json")
        if job.status == JobStatus.COMPLETED:
            status["summary"] = job.summary.model_dump()
            status["results"] = [result.model_dump(mode="json") for result in job.results]
        if job.status == JobStatus.FAILED:
            status["error"] = job.error
            if job.partial_results is not None:
                status["partial_results"] = [result.model_dump(mode="json") for result in job.partial_results]
        if job.completed_at is not None:
            status["completed_at"] = job.completed_at.isoformat()
        return status

    def get_results(self, job_id: str) -> Job:
        """
        Completed job with its results and summary.

        Raises:
            JobNotFound: If the job does not exist
            JobNotCompleted: If the job has not completed
        """
        job = self.job_store.get(job_id)
        if job.status != JobStatus.COMPLETED:
            raise JobNotCompleted(job_id, job.status.value)
        return job

    async def wait_for(self, job_id: str) -> None:
        """Wait until the background run for a job has finished"""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)

    # Pipeline

    def _progress(self, job_id: str, phase: BatchPhase, current: int, total: int) -> None:
        self.job_store.update_progress(job_id, Progress.at(phase, current, total))

    async def _run(self, job_id: str) -> None:
        job = self.job_store.get(job_id)
        records = job.records
        state = BatchState()

        try:
            await self._generate_ids(job_id, records)
            await self._render_documents(job_id, job.template_id, records, state)
            await self._store_content(job_id, records, state)
            await self._submit_to_chain(job_id, records, state)
            await self._generate_qr_codes(job_id, records, state)
            await self._notify(job_id, records, state, job.notify)

            results = self._compile_results(records, state)
            summary = self._summarize(results, state)
            self.job_store.complete(job_id, results, summary)

            logger.info(
                f"Job {job_id} completed: {summary.blockchain_success} issued, "
                f"{summary.blockchain_failed} failed, {summary.blockchain_skipped} skipped"
            )
        except Exception as e:
            logger.exception(f"Job {job_id} failed: {e}")
            self.job_store.fail(job_id, describe_error(e), self._compile_results(records, state))
        finally:
            self._cleanup_staging(job)

    async def _generate_ids(self, job_id: str, records: List[CertificateRecord]) -> None:
        chain = self._require_chain()
        total = len(records)
        self._progress(job_id, BatchPhase.GENERATING_IDS, 0, total)

        generated = 0
        for index, record in enumerate(records):
            if not record.cert_id:
                record.assign("cert_id", await chain.generate_certificate_id(offset=generated))
                generated += 1
            self._progress(job_id, BatchPhase.GENERATING_IDS, index + 1, total)

        logger.info(f"Job {job_id}: {generated} certificate ids generated")

    async def _render_documents(
        self,
        job_id: str,
        template_id: Optional[str],
        records: List[CertificateRecord],
        state: BatchState
    ) -> None:
        total = len(records)
        self._progress(job_id, BatchPhase.GENERATING_DOCUMENTS, 0, total)

        async with self.pdf_service.session(template_id) as session:
            for index, record in enumerate(records):
                try:
                    document = await session.render(record)
                    state.documents[record.row] = DocumentOutcome(
                        status=OutcomeStatus.SUCCESS,
                        file_name=document.file_name,
                        file_path=document.file_path,
                        size=document.size,
                    )
                except Exception as e:
                    logger.warning(f"Job {job_id}: rendering row {record.row} failed: {describe_error(e)}")
                    state.documents[record.row] = DocumentOutcome(status=OutcomeStatus.FAILED, error=describe_error(e))
                self._progress(job_id, BatchPhase.GENERATING_DOCUMENTS, index + 1, total)

    async def _store_content(self, job_id: str, records: List[CertificateRecord], state: BatchState) -> None:
        eligible = [record for record in records if state.has_document(record.row)]
        total = len(eligible)
        self._progress(job_id, BatchPhase.STORING_CONTENT, 0, total)

        for index, record in enumerate(eligible):
            document = state.documents[record.row]
            try:
                data = await _read_bytes(document.file_path)
                record.assign("document_hash", compute_content_hash(data))
                stored = await self.content_store.store(
                    data,
                    document.file_name,
                    metadata={"certId": record.cert_id, "studentId": record.student_id},
                )
                record.assign("content_id", stored.content_id)
                record.assign("content_pinned", stored.confirmed)
                if stored.gateway:
                    record.assign("content_gateway", stored.gateway)
            except Exception as e:
                logger.warning(f"Job {job_id}: storing row {record.row} failed: {describe_error(e)}")
                record.assign("content_id", "")
                record.assign("content_pinned", False)
                record.assign("content_error", describe_error(e))
            self._progress(job_id, BatchPhase.STORING_CONTENT, index + 1, total)

    async def _submit_to_chain(self, job_id: str, records: List[CertificateRecord], state: BatchState) -> None:
        chain = self._require_chain()
        total = len(records)
        self._progress(job_id, BatchPhase.CHAIN_SUBMISSION, 0, total)

        async with chain.batch_session() as session:
            for index, record in enumerate(records):
                if state.has_document(record.row):
                    state.chain[record.row] = await session.issue(record)
                else:
                    state.chain[record.row] = TransactionOutcome.skipped("No document was generated")
                self._progress(job_id, BatchPhase.CHAIN_SUBMISSION, index + 1, total)
            state.nonces_consumed = session.nonces_consumed

    async def _generate_qr_codes(self, job_id: str, records: List[CertificateRecord], state: BatchState) -> None:
        eligible = [record for record in records if state.chain_succeeded(record.row)]
        for record in records:
            if not state.chain_succeeded(record.row):
                state.qr[record.row] = QROutcome(status=OutcomeStatus.SKIPPED, error="Not issued on-chain")

        total = len(eligible)
        self._progress(job_id, BatchPhase.GENERATING_SECONDARY_ARTIFACTS, 0, total)

        async def on_each(index: int, outcome: QROutcome) -> None:
            state.qr[eligible[index].row] = outcome
            self._progress(job_id, BatchPhase.GENERATING_SECONDARY_ARTIFACTS, index + 1, total)

        await self.qr_service.bulk_generate([record.cert_id for record in eligible], on_each=on_each)

    async def _email_job(self, record: CertificateRecord, document: DocumentOutcome) -> EmailJob:
        return EmailJob(
            to=record.email,
            student_name=record.student_name,
            cert_id=record.cert_id,
            degree=record.degree,
            institution=record.institution,
            issue_date=record.issue_date,
            pdf_data=await _read_bytes(document.file_path),
            pdf_file_name=document.file_name,
        )

    async def _deliver_all(
        self,
        job_id: str,
        recipients: List[Tuple[CertificateRecord, DocumentOutcome]],
        outcomes: Dict[int, NotificationOutcome],
        track_progress: bool = True
    ) -> None:
        """
        Email each recipient its certificate, recording one outcome per row.

        A PDF that can no longer be read fails only that recipient's notification.
        """
        total = len(recipients)
        if track_progress:
            self._progress(job_id, BatchPhase.NOTIFYING, 0, total)

        ready: List[CertificateRecord] = []
        jobs: List[EmailJob] = []
        for record, document in recipients:
            try:
                jobs.append(await self._email_job(record, document))
                ready.append(record)
            except Exception as e:
                logger.warning(f"Job {job_id}: cannot attach PDF for row {record.row}: {describe_error(e)}")
                outcomes[record.row] = NotificationOutcome(
                    status=NotificationStatus.FAILED,
                    to=record.email,
                    error=f"Certificate PDF unavailable: {describe_error(e)}",
                )
        done = total - len(ready)

        async def on_each(index, result) -> None:
            record = ready[index]
            outcomes[record.row] = NotificationOutcome(
                status=NotificationStatus.SENT if result.sent else NotificationStatus.FAILED,
                to=result.to,
                error=result.error,
            )
            if track_progress:
                self._progress(job_id, BatchPhase.NOTIFYING, done + index + 1, total)

        await self.notifier.bulk_send(jobs, on_each=on_each)

    async def _notify(
        self,
        job_id: str,
        records: List[CertificateRecord],
        state: BatchState,
        requested: bool
    ) -> None:
        if not requested or self.notifier is None or not self.notifier.is_configured():
            reason = "Notification not requested" if not requested else "Email not configured"
            for record in records:
                state.notifications[record.row] = NotificationOutcome(
                    status=NotificationStatus.SKIPPED, to=record.email, error=reason
                )
            logger.info(f"Job {job_id}: notifying skipped ({reason})")
            return

        recipients: List[Tuple[CertificateRecord, DocumentOutcome]] = []
        for record in records:
            if not state.chain_succeeded(record.row):
                reason = "Not issued on-chain"
            elif not record.email:
                reason = "No email address"
            else:
                recipients.append((record, state.documents[record.row]))
                continue
            state.notifications[record.row] = NotificationOutcome(
                status=NotificationStatus.SKIPPED, to=record.email, error=reason
            )

        await self._deliver_all(job_id, recipients, state.notifications)

    async def resend_notifications(self, job_id: str) -> List[NotificationReceipt]:
        """
        Email a completed job's issued certificates again.

        Only records that succeeded on-chain and have an email address are sent.
        The job's stored results are left unchanged.

        Raises:
            JobNotFound: If the job does not exist
            JobNotCompleted: If the job has not completed
            NotifierNotConfigured: If SMTP is not configured
        """
        job = self.get_results(job_id)
        if self.notifier is None or not self.notifier.is_configured():
            raise NotifierNotConfigured()

        recipients: List[Tuple[CertificateRecord, DocumentOutcome]] = []
        for record in job.records:
            result = next((r for r in job.results if r.row == record.row), None)
            if result is None or result.blockchain.status != OutcomeStatus.SUCCESS or not record.email:
                continue
            recipients.append((record, result.pdf))

        outcomes: Dict[int, NotificationOutcome] = {}
        await self._deliver_all(job_id, recipients, outcomes, track_progress=False)

        logger.info(f"Job {job_id}: re-sent {len(outcomes)} certificate emails")
        return [
            NotificationReceipt(row=record.row, cert_id=record.cert_id, **outcomes[record.row].model_dump())
            for record, _ in recipients
        ]

    # Results

    def _compile_results(self, records: List[CertificateRecord], state: BatchState) -> List[RecordResult]:
        results: List[RecordResult] = []
        for record in records:
            row = record.row
            results.append(RecordResult(
                row=row,
                cert_id=record.cert_id,
                student_name=record.student_name,
                student_id=record.student_id,
                degree=record.degree,
                institution=record.institution,
                issue_date=record.issue_date,
                email=record.email,
                pdf=state.documents.get(row) or DocumentOutcome(status=OutcomeStatus.SKIPPED, error=NOT_REACHED),
                content=ContentBlock(
                    content_id=record.content_id,
                    document_hash=record.document_hash,
                    pinned=bool(record.content_pinned),
                    gateway=record.content_gateway,
                    error=record.content_error,
                ),
                blockchain=state.chain.get(row) or TransactionOutcome.skipped(NOT_REACHED),
                qr=state.qr.get(row) or QROutcome(status=OutcomeStatus.SKIPPED, error=NOT_REACHED),
                notification=state.notifications.get(row) or NotificationOutcome(
                    status=NotificationStatus.SKIPPED, to=record.email, error=NOT_REACHED
                ),
            ))
        return results

    def _summarize(self, results: List[RecordResult], state: BatchState) -> BatchSummary:
        def count(predicate) -> int:
            return sum(1 for result in results if predicate(result))

        return BatchSummary(
            total=len(results),
            pdfs_generated=count(lambda r: r.pdf.status == OutcomeStatus.SUCCESS),
            pdfs_failed=count(lambda r: r.pdf.status == OutcomeStatus.FAILED),
            content_stored=count(lambda r: bool(r.content.content_id) and r.content.error is None),
            blockchain_success=count(lambda r: r.blockchain.status == OutcomeStatus.SUCCESS),
            blockchain_failed=count(lambda r: r.blockchain.status == OutcomeStatus.FAILED),
            blockchain_skipped=count(lambda r: r.blockchain.status == OutcomeStatus.SKIPPED),
            qr_codes_generated=count(lambda r: r.qr.status == OutcomeStatus.SUCCESS),
            emails_sent=count(lambda r: r.notification.status == NotificationStatus.SENT),
            emails_failed=count(lambda r: r.notification.status == NotificationStatus.FAILED),
            emails_skipped=count(lambda r: r.notification.status == NotificationStatus.SKIPPED),
            nonces_consumed=state.nonces_consumed,
        )

    def _cleanup_staging(self, job: Job) -> None:
        if not job.staging_path:
            return
        try:
            os.remove(job.staging_path)
            logger.debug(f"Removed staging file {job.staging_path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove staging file {job.staging_path}: {e}")

    # Export

    async def build_archive(self, job_id: str) -> bytes:
        """
        ZIP archive of a completed job's PDFs, QR codes and a summary.json.

        Raises:
            JobNotFound: If the job does not exist
            JobNotCompleted: If the job has not completed
        """
        job = self.get_results(job_id)

        def _build() -> bytes:
            buffer = io.BytesIO()
            with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
                for result in job.results:
                    if result.pdf.file_path and os.path.exists(result.pdf.file_path):
                        archive.write(result.pdf.file_path, f"certificates/{result.pdf.file_name}")
                    if result.qr.file_path and os.path.exists(result.qr.file_path):
                        archive.write(result.qr.file_path, f"qrcodes/{result.qr.file_name}")
                archive.writestr("summary.json", json.dumps({
                    "job_id": job.job_id,
                    "file_name": job.file_name,
                    "completed_at": job.completed_at.isoformat() if job.completed_at else None,
                    "summary": job.summary.model_dump(),
                    "results": [result.model_dump(mode="json") for result in job.results],
                }, indent=2))
            return buffer.getvalue()

        return await asyncio.to_thread(_build)

    # Single issuance

    async def issue_one(
        self,
        data: Mapping[str, str],
        template_id: Optional[str] = None,
        notify: bool = False
    ) -> RecordResult:
        """
        Issue one certificate synchronously, outside of any job.

        Raises:
            InvalidRecord: If the record fails validation
            TemplateNotFound: If the template id is unknown
            RenderError: If the document could not be rendered
            ChainSubmissionError: If the transaction was not accepted
            TransactionReverted: If the accepted transaction failed
        """
        chain = self._require_chain()
        row = normalize_row(data)
        errors, _ = validate_record(row)
        if errors:
            raise InvalidRecord([error.message for error in errors])

        record = build_record(row)
        record.seal()
        state = BatchState()

        record.assign("cert_id", await chain.generate_certificate_id())

        document = await self.pdf_service.render(template_id, record)
        state.documents[record.row] = DocumentOutcome(
            status=OutcomeStatus.SUCCESS,
            file_name=document.file_name,
            file_path=document.file_path,
            size=document.size,
        )

        record.assign("document_hash", compute_content_hash(document.data))
        try:
            stored = await self.content_store.store(
                document.data, document.file_name, metadata={"certId": record.cert_id}
            )
            record.assign("content_id", stored.content_id)
            record.assign("content_pinned", stored.confirmed)
            if stored.gateway:
                record.assign("content_gateway", stored.gateway)
        except Exception as e:
            logger.warning(f"Storing {record.cert_id} failed: {describe_error(e)}")
            record.assign("content_id", "")
            record.assign("content_pinned", False)
            record.assign("content_error", describe_error(e))

        state.chain[record.row] = await chain.issue_certificate(record)
        state.qr[record.row] = await self.qr_service.save(record.cert_id)

        if notify and record.email and self.notifier is not None and self.notifier.is_configured():
            result = await self.notifier.send(EmailJob(
                to=record.email,
                student_name=record.student_name,
                cert_id=record.cert_id,
                degree=record.degree,
                institution=record.institution,
                issue_date=record.issue_date,
                pdf_data=document.data,
                pdf_file_name=document.file_name,
            ))
            state.notifications[record.row] = NotificationOutcome(
                status=NotificationStatus.SENT if result.sent else NotificationStatus.FAILED,
                to=result.to,
                error=result.error,
            )
        else:
            state.notifications[record.row] = NotificationOutcome(
                status=NotificationStatus.SKIPPED, to=record.email, error="Notification not sent"
            )

        logger.info(f"Issued single certificate {record.cert_id}")
        return self._compile_results([record], state)[0]
