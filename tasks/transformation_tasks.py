"""
Transformation background tasks.

This module defines Celery tasks for transformation jobs with progress
tracking, and the periodic cleanup of old job records.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict

from celery import Task
from sqlalchemy.exc import OperationalError

from api.config import settings
from tasks.celery_app import celery_app, get_container, redis_client
from tasks.queue import CLEANUP_JOBS_TASK, PROCESS_TRANSFORMATION_TASK

logger = logging.getLogger(__name__)

PROGRESS_KEY = 'job_progress:{job_id}'


class TransformationTask(Task):
    """
    Base task class with progress tracking.

    Provides methods for updating job progress in both Redis (for real-time)
    and the database (for persistence). Progress is never read back to
    resume work.
    """

    def on_progress(self, job_id: str, stage: str, percent: float, message: str):
        """
        Update job progress in Redis and database.

        Args:
            job_id: Job ID
            stage: Current stage (e.g., 'configuration', 'transformed')
            percent: Progress percentage (0-100)
            message: Human-readable progress message
        """
        try:
            progress_data = {
                'stage': stage,
                'percent': float(percent),
                'message': message,
                'timestamp': datetime.utcnow().isoformat()
            }

            redis_client.setex(
                PROGRESS_KEY.format(job_id=job_id),
                settings.PROGRESS_CACHE_EXPIRY,
                json.dumps(progress_data)
            )

            get_container().job_store.record_progress(job_id, stage, percent, message)

            logger.debug(f"Progress updated: {job_id} - {stage} ({percent}%)")

        except Exception as e:
            logger.error(f"Error updating progress for {job_id}: {e}")


@celery_app.task(
    base=TransformationTask,
    bind=True,
    name=PROCESS_TRANSFORMATION_TASK,
    autoretry_for=(OperationalError,),
    retry_backoff=settings.JOB_BACKOFF_SECONDS,
    retry_jitter=False,
    max_retries=settings.LARGE_JOB_MAX_ATTEMPTS,
)
def process_transformation(self, job_id: str, file_data: str) -> Dict[str, Any]:
    """
    Background task to run one transformation job.

    Store errors before the job enters `processing` are retried with
    exponential backoff; everything after that is recorded on the job.

    Args:
        job_id: Job ID (also the task id)
        file_data: Base64-encoded original upload

    Returns:
        Result dictionary from TransformationService.process
    """
    logger.info(f"Starting transformation task {self.request.id} for job {job_id} "
                f"(delivery {self.request.retries + 1})")

    service = get_container().transformation_service(
        progress_callback=lambda stage, percent, message: self.on_progress(job_id, stage, percent, message)
    )
    result = service.process(job_id, file_data)

    logger.info(f"Transformation task for job {job_id} finished with status {result.get('status')}")
    return result


@celery_app.task(name=CLEANUP_JOBS_TASK)
def cleanup_old_jobs(days_to_keep: int = 30) -> Dict[str, Any]:
    """
    Clean up terminal job records, their progress entries and stored files.

    Args:
        days_to_keep: Number of days to keep job records

    Returns:
        Dictionary with cleanup statistics
    """
    logger.info(f"Starting cleanup of jobs older than {days_to_keep} days")
    container = get_container()

    try:
        deleted_jobs, deleted_progress, expired = container.job_store.cleanup_terminal_jobs(days_to_keep)
    except OperationalError as e:
        logger.error(f"Error during cleanup: {e}", exc_info=True)
        return {
            'error': str(e),
            'deleted_jobs': 0,
            'deleted_progress': 0,
            'deleted_files': 0,
        }

    deleted_files = 0
    for organization_id, job_id in expired:
        deleted_files += container.storage.cleanup_prefix(organization_id, job_id)

    logger.info(f"Cleanup complete: {deleted_jobs} jobs, {deleted_progress} progress entries, "
                f"{deleted_files} files deleted")

    return {
        'deleted_jobs': deleted_jobs,
        'deleted_progress': deleted_progress,
        'deleted_files': deleted_files,
    }
