"""
Bulk issuance API endpoints.
Upload a CSV, start processing, poll progress and download the results.
"""

import os
import uuid
from pathlib import Path

import aiofiles
from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile, status

from ...core.config import Settings
from ...core.dependencies import get_app_settings, get_orchestrator, get_pdf_service
from ...core.errors import (
    ChainNotConfigured,
    JobAlreadyProcessing,
    JobNotCompleted,
    JobNotFound,
    MissingColumns,
    NoDataRows,
    NoValidRecords,
    TemplateNotFound,
    UnreadableFile,
    UnsupportedFileFormat,
)
from ...models.requests import ProcessBatchRequest
from ...services.batch_orchestrator import BatchOrchestrator
from ...services.csv_parser import SUPPORTED_EXTENSIONS, sample_csv
from ...services.pdf_service import PDFService
from ...utils.logger import get_logger

logger = get_logger("bulk_api")

MAX_REPORTED_ISSUES = 50
PREVIEW_ROWS = 10
CHUNK_SIZE = 1024 * 1024

router = APIRouter(
    prefix="/api/v1/bulk",
    tags=["bulk"],
    responses={
        400: {"description": "Bad Request"},
        404: {"description": "Not Found"},
        409: {"description": "Conflict"},
        500: {"description": "Internal Server Error"}
    }
)


async def _stage_upload(file: UploadFile, upload_dir: str, max_bytes: int) -> str:
    """Write an upload to the staging directory, enforcing the size limit"""
    os.makedirs(upload_dir, exist_ok=True)
    extension = Path(file.filename or "").suffix.lower()
    staging_path = os.path.join(upload_dir, f"{uuid.uuid4().hex}{extension}")

    written = 0
    async with aiofiles.open(staging_path, "wb") as out:
        while True:
            chunk = await file.read(CHUNK_SIZE)
            if not chunk:
                break
            written += len(chunk)
            if written > max_bytes:
                break
            await out.write(chunk)

    if written > max_bytes:
        os.remove(staging_path)
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large. Maximum size is {max_bytes // (1024 * 1024)} MB"
        )
    return staging_path


def _discard(path):
    if path and os.path.exists(path):
        os.remove(path)


@router.post(
    "/upload",
    status_code=status.HTTP_201_CREATED,
    summary="Upload a batch",
    description="Upload a CSV or XLSX file of certificate records, validate it and create a job"
)
async def upload_batch(
    file: UploadFile = File(...),
    settings: Settings = Depends(get_app_settings),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator)
):
    """
    Validate an uploaded file and register a job for its valid rows.

    Returns:
        Job id, validation summary and a preview of the valid records

    Raises:
        HTTPException: 400 for empty, unreadable or unsupported files and missing columns
    """
    extension = Path(file.filename or "").suffix.lower()
    if extension not in SUPPORTED_EXTENSIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=UnsupportedFileFormat(extension).message
        )

    staging_path = None
    try:
        staging_path = await _stage_upload(file, settings.upload_dir, settings.max_upload_size)
        job = await orchestrator.create_job_from_file(staging_path, file_name=file.filename)
        report = job.validation

        logger.info(f"Upload {file.filename} registered as job {job.job_id}")

        return {
            "success": True,
            "job_id": job.job_id,
            "file_name": file.filename,
            "validation": {
                "total_rows": report.total_rows,
                "valid_count": report.valid_count,
                "invalid_count": report.invalid_count,
                "has_errors": report.has_errors,
                "errors": [issue.model_dump() for issue in report.errors[:MAX_REPORTED_ISSUES]],
                "warnings": [issue.model_dump() for issue in report.warnings[:MAX_REPORTED_ISSUES]],
            },
            "preview": [
                record.model_dump(include={
                    "row", "student_name", "student_id", "degree", "institution", "issue_date", "email"
                })
                for record in report.valid_records[:PREVIEW_ROWS]
            ],
        }

    except (NoDataRows, UnreadableFile, UnsupportedFileFormat) as e:
        _discard(staging_path)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except MissingColumns as e:
        _discard(staging_path)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": e.message, "missing": e.missing, "hint": e.hint}
        )
    except HTTPException:
        _discard(staging_path)
        raise
    except Exception as e:
        _discard(staging_path)
        logger.error(f"Upload of {file.filename} failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process uploaded file"
        )


@router.post(
    "/process",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start processing a batch",
    description="Issue certificates for every valid record of an uploaded batch in the background"
)
async def process_batch(
    request: ProcessBatchRequest,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator)
):
    """
    Start a background run for a validated job.

    Raises:
        HTTPException: 404 unknown job, 409 already processed, 400 nothing to issue
    """
    try:
        job = orchestrator.begin_batch(request.job_id, request.template_id, request.send_emails)
        return {
            "success": True,
            "job_id": job.job_id,
            "status": job.status.value,
            "total_records": len(job.records),
            "message": f"Processing {len(job.records)} certificates. Poll /api/v1/bulk/status/{job.job_id}"
        }

    except JobNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except JobAlreadyProcessing as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    except (NoValidRecords, TemplateNotFound) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except ChainNotConfigured as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to start job {request.job_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to start processing"
        )


@router.get(
    "/status/{job_id}",
    summary="Job status",
    description="Phase, progress and (once completed) the summary and results of a job"
)
async def job_status(job_id: str, orchestrator: BatchOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.poll_status(job_id)
    except JobNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)


@router.get(
    "/results/{job_id}",
    summary="Job results",
    description="Per-record results and summary of a completed job"
)
async def job_results(job_id: str, orchestrator: BatchOrchestrator = Depends(get_orchestrator)):
    try:
        job = orchestrator.get_results(job_id)
        return {
            "job_id": job.job_id,
            "file_name": job.file_name,
            "summary": job.summary.model_dump(),
            "results": [result.model_dump(mode="json") for result in job.results],
        }
    except JobNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except JobNotCompleted as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)


@router.get(
    "/download/{job_id}",
    summary="Download job artifacts",
    description="ZIP archive with the certificates, QR codes and a summary.json"
)
async def download_results(job_id: str, orchestrator: BatchOrchestrator = Depends(get_orchestrator)):
    try:
        archive = await orchestrator.build_archive(job_id)
    except JobNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except JobNotCompleted as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    except Exception as e:
        logger.error(f"Failed to build archive for job {job_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to build download archive"
        )

    return Response(
        content=archive,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="certificates-{job_id}.zip"'}
    )


@router.get(
    "/sample-csv",
    summary="Sample CSV",
    description="A CSV template with the expected columns"
)
async def download_sample_csv():
    return Response(
        content=sample_csv(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="sample-certificates.csv"'}
    )


@router.get(
    "/templates",
    summary="Certificate templates",
    description="Templates available for rendering"
)
async def list_templates(pdf_service: PDFService = Depends(get_pdf_service)):
    return {"templates": pdf_service.list_templates()}
