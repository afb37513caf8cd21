"""
Jobs router - Upload spreadsheets and track transformation jobs.

This module provides endpoints for submitting a file against a
configuration and checking the status of the resulting job.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, UploadFile, File, Form, Depends, HTTPException, status

from api.dependencies import get_current_user, get_services, verify_file_extension, verify_file_size
from api.schemas.job_schema import (
    JobCreateResponse, JobProgressResponse, JobStatsResponse, JobStatusResponse, QueueCounts
)
from backend.models.job import JobStatus
from services.container import ServiceContainer
from services.errors import WebhookValidationError
from services.transformation_service import encode_file_payload
from services.webhook_service import validate_webhook_url
from tasks.queue import PROCESS_TRANSFORMATION_TASK

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix='/jobs', tags=['jobs'])

PROGRESS_KEY = 'job_progress:{job_id}'


def _latest_progress(services: ServiceContainer, job_id: str) -> Optional[JobProgressResponse]:
    """Latest progress from Redis, falling back to the database."""
    if services.redis_client is not None:
        try:
            progress_data = services.redis_client.get(PROGRESS_KEY.format(job_id=job_id))
            if progress_data:
                return JobProgressResponse(**json.loads(progress_data))
        except Exception as e:
            logger.warning(f"Could not fetch progress from Redis for {job_id}: {e}")

    latest = services.job_store.latest_progress(job_id)
    if latest is None:
        return None
    return JobProgressResponse(
        stage=latest.stage,
        percent=float(latest.percent),
        message=latest.message or "",
        timestamp=latest.timestamp
    )


@router.post('', response_model=JobCreateResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_job(
    file: UploadFile = File(..., description="Spreadsheet to transform (.xlsx, .xlsm, .csv, .tsv)"),
    organization_id: str = Form(..., min_length=1, max_length=255),
    configuration_id: str = Form(..., min_length=1),
    callback_url: Optional[str] = Form(None, description="Webhook URL overriding configured targets"),
    uid: Optional[str] = Form(None, description="Caller-supplied correlation id"),
    services: ServiceContainer = Depends(get_services),
    current_user: str = Depends(get_current_user)
):
    """
    Upload a file and enqueue a transformation job.

    **Workflow:**
    1. Validate file type and size
    2. Check the configuration exists
    3. Create a pending job record
    4. Enqueue the job with the file as a base64 payload
    5. Return job ID for status tracking

    **Returns:**
    - 202 Accepted with job_id
    """
    logger.info(f"Upload request from {current_user}: {file.filename} for configuration {configuration_id}")

    verify_file_extension(file.filename)
    buffer = await file.read()
    verify_file_size(len(buffer))

    configuration = services.job_store.get_configuration(configuration_id)
    if configuration.organization_id != organization_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Configuration {configuration_id} not found"
        )

    if callback_url:
        try:
            callback_url = validate_webhook_url(callback_url, allow_localhost=not services.settings.is_production)
        except WebhookValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    max_attempts = services.settings.max_attempts_for(len(buffer))
    job = services.job_store.create_job(
        organization_id=organization_id,
        configuration_id=configuration_id,
        original_file_name=file.filename,
        file_size=len(buffer),
        callback_url=callback_url,
        uid=uid,
        max_attempts=max_attempts,
    )

    services.queue.enqueue(
        PROCESS_TRANSFORMATION_TASK,
        {'job_id': job.id, 'file_data': encode_file_payload(buffer)},
        task_id=job.id,
        attempts=max_attempts,
    )

    logger.info(f"Enqueued job {job.id} ({len(buffer) / 1024 / 1024:.2f} MB, {max_attempts} attempts)")

    return JobCreateResponse(
        job_id=job.id,
        status_url=f"/api/jobs/{job.id}",
        progress_url=f"/api/jobs/{job.id}/progress"
    )


@router.get('/stats', response_model=JobStatsResponse)
async def get_job_stats(services: ServiceContainer = Depends(get_services)):
    """
    Job counts by status, delivery counts by status and per-queue task counts.
    """
    queues = {}
    try:
        queues = {
            name: QueueCounts(**counts)
            for name, counts in services.queue.get_job_counts().items()
        }
    except Exception as e:
        logger.warning(f"Could not fetch queue counts: {e}")

    return JobStatsResponse(
        jobs=services.job_store.job_counts(),
        deliveries=services.delivery_store.delivery_counts(),
        queues=queues
    )


@router.get('/{job_id}', response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    services: ServiceContainer = Depends(get_services)
):
    """
    Get current status of a transformation job.

    **Status Values:**
    - `pending`: Job is queued, waiting for worker
    - `processing`: Job is currently running
    - `completed`: Output is available for download
    - `failed`: Job failed; see `error_message` and `execution_log`
    """
    job = services.job_store.get_job(job_id)

    output_url = None
    if job.status == JobStatus.COMPLETED.value and job.output_file_key:
        output_url, _ = services.storage.download_url(job.output_file_key, services.settings.FILE_TTL)

    return JobStatusResponse(
        job_id=job.id,
        organization_id=job.organization_id,
        configuration_id=job.configuration_id,
        status=job.status,
        original_file_name=job.original_file_name,
        file_size=job.file_size,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        attempts=job.attempts or 0,
        max_attempts=job.max_attempts,
        progress=_latest_progress(services, job_id),
        output_file_url=output_url,
        execution_log=job.execution_log or [],
        error_message=job.error_message,
        result_metadata=job.result_metadata,
        webhook_delivered=bool(job.webhook_delivered),
        webhook_attempts=job.webhook_attempts or 0,
        webhook_last_attempt=job.webhook_last_attempt
    )


@router.get('/{job_id}/progress', response_model=Optional[JobProgressResponse])
async def get_job_progress(
    job_id: str,
    services: ServiceContainer = Depends(get_services)
):
    """Latest progress checkpoint for a job (null before the first checkpoint)."""
    services.job_store.get_job(job_id)
    return _latest_progress(services, job_id)
