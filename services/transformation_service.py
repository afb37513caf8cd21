"""
Transformation Service - Runs one job through its state machine.

    pending --dequeued--> processing --success--> completed
    processing --any exception--> failed

Framework-agnostic: the Celery task supplies the stores, the blob store and
a progress callback. Progress checkpoints are informational only; a
redelivered job always restarts from its original input.
"""

import base64
import binascii
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from backend.models.job import TERMINAL_STATUSES
from services.errors import JobNotFoundError, MutateError
from services.job_store import JobStore
from services.rule_engine import ExecutionLog, RuleEngine
from services.storage_service import StorageService

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float, str], None]


def decode_file_payload(file_data: str) -> bytes:
    """
    Decode the base64 file payload carried in the queue message.

    Raises:
        ValueError: If the payload is not valid base64
    """
    try:
        return base64.b64decode(file_data, validate=True)
    except (binascii.Error, TypeError) as e:
        raise ValueError(f"Invalid file payload encoding: {e}") from e


def encode_file_payload(buffer: bytes) -> str:
    return base64.b64encode(buffer).decode('ascii')


def output_file_name(original_file_name: Optional[str]) -> str:
    """report.xlsx -> report_transformed.csv"""
    stem = Path(original_file_name or 'output').stem or 'output'
    return f"{stem}_transformed.csv"


class TransformationService:
    """
    Service for executing transformation jobs.

    Usage:
        service = TransformationService(job_store, storage, notifier)
        result = service.process(job_id, file_data)
    """

    def __init__(self, job_store: JobStore, storage: StorageService, notifier=None,
                 engine: Optional[RuleEngine] = None, stage_input_files: bool = False,
                 progress_callback: Optional[ProgressCallback] = None):
        """
        Initialize transformation service.

        Args:
            job_store: Durable job store
            storage: Blob store for inputs and outputs
            notifier: Object with `notify_job_outcome(job_id)`, or None
            engine: Rule engine (a fresh one by default)
            stage_input_files: Also keep the raw upload in the blob store
            progress_callback: Called as callback(stage, percent, message)
        """
        self.job_store = job_store
        self.storage = storage
        self.notifier = notifier
        self.engine = engine or RuleEngine()
        self.stage_input_files = stage_input_files
        self.progress_callback = progress_callback

    def _update_progress(self, stage: str, percent: float, message: str):
        """Update progress via callback if provided."""
        if self.progress_callback:
            self.progress_callback(stage, percent, message)
        logger.info(f"[{stage}] {percent:.0f}% - {message}")

    def _notify(self, job_id: str):
        """Request the outcome webhook; failures here never change the job."""
        if self.notifier is None:
            return
        try:
            self.notifier.notify_job_outcome(job_id)
        except Exception as e:
            logger.error(f"Failed to request webhook for job {job_id}: {e}", exc_info=True)

    def process(self, job_id: str, file_data: str) -> Dict[str, Any]:
        """
        Execute one job.

        Store errors raised before the job enters `processing` propagate so
        the queue can retry with backoff. Anything raised afterwards fails
        the job.

        Args:
            job_id: Job to run
            file_data: Base64-encoded original upload

        Returns:
            Result dictionary with job_id, status and output/error details
        """
        try:
            job = self.job_store.get_job(job_id)
        except JobNotFoundError:
            logger.warning(f"Job {job_id} not found; acknowledging without work")
            return {'job_id': job_id, 'status': None, 'skipped': True}

        if job.status in TERMINAL_STATUSES:
            # The outcome may have been committed before the notify step ran.
            logger.info(f"Job {job_id} already {job.status}; re-requesting webhook and acknowledging redelivery")
            self._notify(job_id)
            return {'job_id': job_id, 'status': job.status, 'skipped': True}

        if (job.attempts or 0) >= job.max_attempts:
            error = f"Job exceeded maximum attempts ({job.max_attempts})"
            logger.error(f"Job {job_id}: {error}")
            self.job_store.fail_job(job_id, error, job.execution_log or [])
            self._notify(job_id)
            return {'job_id': job_id, 'status': 'failed', 'error': error}

        if not self.job_store.start_job(job_id):
            logger.info(f"Job {job_id} could not be started; it reached a terminal state concurrently")
            return {'job_id': job_id, 'status': self.job_store.get_job(job_id).status, 'skipped': True}

        log = ExecutionLog()
        try:
            return self._run(job, file_data, log)
        except Exception as e:
            error = str(e) if isinstance(e, MutateError) else f"{type(e).__name__}: {e}"
            log.add(f"Job failed: {error}", logging.ERROR)
            logger.error(f"Job {job_id} failed: {error}", exc_info=not isinstance(e, MutateError))
            self.job_store.fail_job(job_id, error, log.to_list())
            self._update_progress('failed', 100, error)
            self._notify(job_id)
            return {'job_id': job_id, 'status': 'failed', 'error': error}

    def _run(self, job, file_data: str, log: ExecutionLog) -> Dict[str, Any]:
        job_id = job.id
        self._update_progress('started', 10, 'Job started')

        buffer = decode_file_payload(file_data)
        log.add(f"Processing {job.original_file_name} ({len(buffer)} bytes)")

        if self.stage_input_files:
            stored = self.storage.upload(buffer, job.original_file_name, job.organization_id, job_id)
            self.job_store.record_input(job_id, stored.url, stored.key)
            log.add(f"Staged input file: {stored.key}")
        self._update_progress('input', 20, 'Input received')

        snapshot = job.configuration_snapshot
        if not snapshot:
            snapshot = self.job_store.get_configuration(job.configuration_id).snapshot()
            self.job_store.save_snapshot(job_id, snapshot)
        self._update_progress('configuration', 30, f"Loaded configuration version {snapshot.get('version')}")

        result = self.engine.transform(
            buffer,
            job.original_file_name,
            snapshot.get('rules') or [],
            snapshot.get('output_format'),
            configuration_name=snapshot.get('name'),
            log=log,
        )
        if not result.success:
            self.job_store.fail_job(job_id, result.error, log.to_list())
            self._update_progress('failed', 100, result.error)
            self._notify(job_id)
            return {'job_id': job_id, 'status': 'failed', 'error': result.error}
        self._update_progress('transformed', 70, f"Applied {len(snapshot.get('rules') or [])} rules")

        stored = self.storage.upload(result.output.data, output_file_name(job.original_file_name),
                                     job.organization_id, job_id)
        self._update_progress('uploaded', 90, 'Output stored')

        if not self.job_store.complete_job(job_id, stored.url, stored.key, log.to_list(), result.metadata):
            logger.warning(f"Job {job_id} left processing before completion was recorded")
            return {'job_id': job_id, 'status': self.job_store.get_job(job_id).status, 'skipped': True}
        self._update_progress('completed', 100, 'Transformation completed')

        self._notify(job_id)
        logger.info(f"Job {job_id} completed: {result.metadata}")
        return {
            'job_id': job_id,
            'status': 'completed',
            'output_file_url': stored.url,
            'output_file_key': stored.key,
            'metadata': result.metadata,
        }
