"""
In-memory store for batch jobs.
Jobs are written only by their own orchestrator run and read by status pollers.
"""

import os
import time
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from ..core.errors import JobAlreadyProcessing, JobNotFound
from ..models.certificate import CertificateRecord, RecordResult
from ..models.job import BatchPhase, BatchSummary, Job, JobStatus, Progress, ValidationReport
from ..utils.logger import get_logger

logger = get_logger("job_store")


class JobStore:
    """
    Job registry with time- and size-bounded retention.

    Terminal jobs and never-processed validated jobs older than ``ttl_seconds``
    are purged on access, along with their staging files. When more than
    ``max_jobs`` are held the oldest terminal jobs go first, then the oldest
    validated ones. Jobs that are processing, and the job just created, are
    never evicted.
    """

    def __init__(
        self,
        ttl_seconds: int = 24 * 60 * 60,
        max_jobs: int = 200,
        clock: Callable[[], float] = time.monotonic
    ):
        self.ttl_seconds = ttl_seconds
        self.max_jobs = max_jobs
        self._clock = clock
        self._jobs: "OrderedDict[str, Job]" = OrderedDict()
        self._finished_at: Dict[str, float] = {}
        self._created_at: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def create(
        self,
        records: List[CertificateRecord],
        validation: Optional[ValidationReport] = None,
        file_name: Optional[str] = None,
        staging_path: Optional[str] = None
    ) -> Job:
        """Register a validated job and return it"""
        self.purge()

        job = Job(
            job_id=uuid.uuid4().hex,
            status=JobStatus.VALIDATED,
            file_name=file_name,
            staging_path=staging_path,
            records=records,
            validation=validation,
            created_at=datetime.now(timezone.utc),
        )
        self._jobs[job.job_id] = job
        self._created_at[job.job_id] = self._clock()
        self._evict_overflow(keep=job.job_id)

        logger.info(f"Created job {job.job_id} with {len(records)} records")
        return job

    def get(self, job_id: str) -> Job:
        """
        Look up a job.

        Raises:
            JobNotFound: If the job does not exist or has been evicted
        """
        self.purge()
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def list_jobs(self) -> List[Job]:
        self.purge()
        return list(self._jobs.values())

    def mark_processing(self, job_id: str, template_id: Optional[str], notify: bool) -> Job:
        """
        Move a job into processing.

        Raises:
            JobNotFound: If the job does not exist
            JobAlreadyProcessing: If the job is running or has already run
        """
        job = self.get(job_id)
        if job.status != JobStatus.VALIDATED:
            raise JobAlreadyProcessing(job_id, job.status.value)

        job.status = JobStatus.PROCESSING
        job.template_id = template_id
        job.notify = notify
        job.progress = Progress.at(BatchPhase.STARTING, 0, len(job.records))
        job.started_at = datetime.now(timezone.utc)
        return job

    def update_progress(self, job_id: str, progress: Progress) -> None:
        """Replace the job's progress descriptor as a whole"""
        job = self._jobs.get(job_id)
        if job is not None:
            job.progress = progress

    def complete(self, job_id: str, results: List[RecordResult], summary: BatchSummary) -> Job:
        job = self._require(job_id)
        job.results = results
        job.summary = summary
        job.status = JobStatus.COMPLETED
        job.progress = Progress.at(BatchPhase.COMPLETED, summary.total, summary.total)
        job.completed_at = datetime.now(timezone.utc)
        self._finished_at[job_id] = self._clock()
        return job

    def fail(self, job_id: str, error: str, partial_results: Optional[List[RecordResult]] = None) -> Job:
        job = self._require(job_id)
        job.status = JobStatus.FAILED
        job.error = error
        job.partial_results = partial_results
        job.completed_at = datetime.now(timezone.utc)
        self._finished_at[job_id] = self._clock()
        return job

    def purge(self) -> int:
        """
        Remove expired jobs. Returns how many were removed.

        Terminal jobs expire ``ttl_seconds`` after finishing, and validated jobs
        that were never processed expire ``ttl_seconds`` after creation.
        """
        now = self._clock()
        expired = []
        for job_id in self._jobs:
            since = self._retained_since(job_id)
            if since is not None and now - since >= self.ttl_seconds:
                expired.append(job_id)
        for job_id in expired:
            self._remove(job_id)
        if expired:
            logger.info(f"Purged {len(expired)} expired jobs")
        return len(expired)

    def _retained_since(self, job_id: str) -> Optional[float]:
        """Clock time retention counts from, or None while the job is processing"""
        job = self._jobs[job_id]
        if job.is_terminal:
            return self._finished_at.get(job_id, self._created_at.get(job_id, 0.0))
        if job.status == JobStatus.VALIDATED:
            return self._created_at.get(job_id, 0.0)
        return None

    def _evict_overflow(self, keep: Optional[str] = None) -> None:
        while len(self._jobs) > self.max_jobs:
            # Finished jobs go before unprocessed uploads; the job just created stays
            candidates = [job_id for job_id, job in self._jobs.items() if job.is_terminal]
            if not candidates:
                candidates = [
                    job_id for job_id, job in self._jobs.items()
                    if job.status == JobStatus.VALIDATED and job_id != keep
                ]
            if not candidates:
                logger.warning(f"Job store holds {len(self._jobs)} jobs that cannot be evicted, above the limit of {self.max_jobs}")
                return
            oldest = min(candidates, key=self._retained_since)
            logger.info(f"Evicting job {oldest} to stay within {self.max_jobs} jobs")
            self._remove(oldest)

    def _remove(self, job_id: str) -> None:
        job = self._jobs.pop(job_id, None)
        self._finished_at.pop(job_id, None)
        self._created_at.pop(job_id, None)
        if job is not None and job.staging_path:
            try:
                os.remove(job.staging_path)
                logger.debug(f"Removed staging file {job.staging_path}")
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove staging file {job.staging_path}: {e}")

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job
