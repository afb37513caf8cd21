"""
Durable store for configurations, jobs and webhook deliveries.

All status transitions are single-row conditional updates keyed by id
(`UPDATE ... WHERE id = :id AND status IN (:allowed)`), so concurrent or
redelivered workers can never move a record backwards.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from backend.models.job import JobProgress, JobStatus, TransformationJob, TERMINAL_STATUSES
from backend.models.schema import Configuration, ConfigurationVersion, OrganizationWebhook
from backend.models.webhook import DeliveryStatus, WebhookDelivery
from services.errors import ConfigurationNotFoundError, JobNotFoundError
from services.output_service import OutputFormat
from services.rules import dump_rules, parse_rules

logger = logging.getLogger(__name__)


class BaseStore:
    """Session handling shared by the stores."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def session_scope(self) -> Iterable[Session]:
        """Provide a transactional scope: commit on success, roll back on error."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _conditional_update(self, model, record_id: str, allowed: Iterable[str],
                            values: Dict[str, Any]) -> bool:
        """Apply values only if the record is in one of the allowed statuses."""
        with self.session_scope() as session:
            result = session.execute(
                update(model)
                .where(model.id == record_id, model.status.in_(list(allowed)))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1


class JobStore(BaseStore):
    """Configurations, transformation jobs and progress checkpoints."""

    # ------------------------------------------------------------------
    # Configurations
    # ------------------------------------------------------------------

    def create_configuration(self, organization_id: str, name: str,
                             rules: List[Dict[str, Any]],
                             output_format: Optional[Dict[str, Any]] = None,
                             description: Optional[str] = None,
                             callback_url: Optional[str] = None,
                             webhook_id: Optional[str] = None) -> Configuration:
        """
        Create a configuration and its first version row.

        Rules and output format are validated before anything is written.

        Raises:
            RuleApplicationError: If a rule is malformed
        """
        normalized_rules = dump_rules(parse_rules(rules))
        normalized_format = OutputFormat.model_validate(output_format or {}).model_dump(by_alias=True)

        with self.session_scope() as session:
            configuration = Configuration(
                organization_id=organization_id,
                name=name,
                description=description,
                version=1,
                rules=normalized_rules,
                output_format=normalized_format,
                callback_url=callback_url,
                webhook_id=webhook_id,
            )
            session.add(configuration)
            session.flush()
            session.add(ConfigurationVersion(
                configuration_id=configuration.id,
                version=1,
                rules=normalized_rules,
                output_format=normalized_format,
            ))

        logger.info(f"Created configuration {configuration.id} ('{name}') with {len(normalized_rules)} rules")
        return configuration

    def update_configuration(self, configuration_id: str, **changes) -> Configuration:
        """
        Save a new version of a configuration.

        Accepted keys: name, description, rules, output_format, callback_url,
        webhook_id. Every save bumps the version and writes a version row.
        """
        if 'rules' in changes and changes['rules'] is not None:
            changes['rules'] = dump_rules(parse_rules(changes['rules']))
        if 'output_format' in changes and changes['output_format'] is not None:
            changes['output_format'] = OutputFormat.model_validate(changes['output_format']).model_dump(by_alias=True)

        with self.session_scope() as session:
            configuration = session.get(Configuration, configuration_id)
            if configuration is None:
                raise ConfigurationNotFoundError(configuration_id)

            for key in ('name', 'description', 'rules', 'output_format', 'callback_url', 'webhook_id'):
                if key in changes and changes[key] is not None:
                    setattr(configuration, key, changes[key])

            configuration.version = (configuration.version or 0) + 1
            session.add(ConfigurationVersion(
                configuration_id=configuration.id,
                version=configuration.version,
                rules=configuration.rules,
                output_format=configuration.output_format,
            ))

        logger.info(f"Configuration {configuration_id} saved as version {configuration.version}")
        return configuration

    def get_configuration(self, configuration_id: str) -> Configuration:
        with self.session_scope() as session:
            configuration = session.get(Configuration, configuration_id)
            if configuration is None:
                raise ConfigurationNotFoundError(configuration_id)
            return configuration

    def create_webhook(self, organization_id: str, name: str, url: str,
                       secret: Optional[str] = None, is_default: bool = False) -> OrganizationWebhook:
        with self.session_scope() as session:
            webhook = OrganizationWebhook(
                organization_id=organization_id,
                name=name,
                url=url,
                secret=secret,
                is_default=is_default,
            )
            session.add(webhook)
        return webhook

    def get_webhook(self, webhook_id: str) -> Optional[OrganizationWebhook]:
        with self.session_scope() as session:
            return session.get(OrganizationWebhook, webhook_id)

    def get_default_webhook(self, organization_id: str) -> Optional[OrganizationWebhook]:
        with self.session_scope() as session:
            return session.execute(
                select(OrganizationWebhook)
                .where(OrganizationWebhook.organization_id == organization_id,
                       OrganizationWebhook.is_default.is_(True))
                .order_by(OrganizationWebhook.created_at)
                .limit(1)
            ).scalar_one_or_none()

    def touch_webhook(self, webhook_id: str):
        with self.session_scope() as session:
            session.execute(
                update(OrganizationWebhook)
                .where(OrganizationWebhook.id == webhook_id)
                .values(last_used_at=datetime.utcnow())
            )

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(self, organization_id: str, configuration_id: str,
                   original_file_name: str, file_size: int,
                   callback_url: Optional[str] = None, uid: Optional[str] = None,
                   max_attempts: int = 3, job_id: Optional[str] = None) -> TransformationJob:
        """Insert a pending job."""
        with self.session_scope() as session:
            job = TransformationJob(
                organization_id=organization_id,
                configuration_id=configuration_id,
                status=JobStatus.PENDING.value,
                original_file_name=original_file_name,
                file_size=file_size,
                callback_url=callback_url,
                uid=uid,
                max_attempts=max_attempts,
                execution_log=[],
            )
            if job_id:
                job.id = job_id
            session.add(job)

        logger.info(f"Created job {job.id} for configuration {configuration_id} ({original_file_name})")
        return job

    def get_job(self, job_id: str) -> TransformationJob:
        with self.session_scope() as session:
            job = session.get(TransformationJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job

    def start_job(self, job_id: str) -> bool:
        """
        Move a job to processing and count the attempt.

        processing -> processing is allowed so a crashed worker's job can be
        re-run from its original input.
        """
        return self._conditional_update(
            TransformationJob, job_id,
            (JobStatus.PENDING.value, JobStatus.PROCESSING.value),
            {
                'status': JobStatus.PROCESSING.value,
                'started_at': datetime.utcnow(),
                'attempts': TransformationJob.attempts + 1,
                'error_message': None,
            },
        )

    def save_snapshot(self, job_id: str, snapshot: Dict[str, Any]) -> bool:
        return self._conditional_update(
            TransformationJob, job_id, (JobStatus.PROCESSING.value,),
            {'configuration_snapshot': snapshot},
        )

    def record_input(self, job_id: str, url: str, key: str) -> bool:
        return self._conditional_update(
            TransformationJob, job_id, (JobStatus.PROCESSING.value,),
            {'input_file_url': url, 'input_file_key': key},
        )

    def complete_job(self, job_id: str, output_url: str, output_key: str,
                     execution_log: List[str], metadata: Optional[Dict[str, Any]] = None) -> bool:
        """processing -> completed."""
        return self._conditional_update(
            TransformationJob, job_id, (JobStatus.PROCESSING.value,),
            {
                'status': JobStatus.COMPLETED.value,
                'output_file_url': output_url,
                'output_file_key': output_key,
                'execution_log': list(execution_log),
                'result_metadata': metadata,
                'completed_at': datetime.utcnow(),
            },
        )

    def fail_job(self, job_id: str, error: str, execution_log: List[str]) -> bool:
        """pending|processing -> failed."""
        return self._conditional_update(
            TransformationJob, job_id,
            (JobStatus.PENDING.value, JobStatus.PROCESSING.value),
            {
                'status': JobStatus.FAILED.value,
                'error_message': error,
                'execution_log': list(execution_log),
                'completed_at': datetime.utcnow(),
            },
        )

    def record_progress(self, job_id: str, stage: str, percent: float, message: str):
        with self.session_scope() as session:
            session.add(JobProgress(job_id=job_id, stage=stage, percent=percent, message=message))

    def latest_progress(self, job_id: str) -> Optional[JobProgress]:
        with self.session_scope() as session:
            return session.execute(
                select(JobProgress)
                .where(JobProgress.job_id == job_id)
                .order_by(JobProgress.timestamp.desc(), JobProgress.id.desc())
                .limit(1)
            ).scalar_one_or_none()

    def update_webhook_tracking(self, job_id: str, attempts: int, delivered: bool):
        """Mirror delivery progress onto the job; never touches job status."""
        with self.session_scope() as session:
            session.execute(
                update(TransformationJob)
                .where(TransformationJob.id == job_id)
                .values(
                    webhook_attempts=attempts,
                    webhook_delivered=delivered,
                    webhook_last_attempt=datetime.utcnow(),
                )
            )

    def job_counts(self) -> Dict[str, int]:
        with self.session_scope() as session:
            rows = session.execute(
                select(TransformationJob.status, func.count()).group_by(TransformationJob.status)
            ).all()
        counts = {status.value: 0 for status in JobStatus}
        counts.update({status: count for status, count in rows})
        return counts

    def cleanup_terminal_jobs(self, days_to_keep: int) -> Tuple[int, int, List[Tuple[str, str]]]:
        """
        Delete terminal jobs completed before the retention cutoff.

        Returns:
            Tuple of (deleted_jobs, deleted_progress, [(organization_id, job_id), ...])
        """
        cutoff_date = datetime.utcnow() - timedelta(days=days_to_keep)
        with self.session_scope() as session:
            expired = session.execute(
                select(TransformationJob.id, TransformationJob.organization_id)
                .where(TransformationJob.completed_at < cutoff_date,
                       TransformationJob.status.in_(TERMINAL_STATUSES))
            ).all()
            job_ids = [job_id for job_id, _ in expired]
            if not job_ids:
                return 0, 0, []

            deleted_progress = session.query(JobProgress).filter(
                JobProgress.job_id.in_(job_ids)
            ).delete(synchronize_session=False)
            deleted_jobs = session.query(TransformationJob).filter(
                TransformationJob.id.in_(job_ids)
            ).delete(synchronize_session=False)

        return deleted_jobs, deleted_progress, [(org, job_id) for job_id, org in expired]


class DeliveryStore(BaseStore):
    """Webhook delivery records."""

    def create_delivery(self, **fields) -> Tuple[WebhookDelivery, bool]:
        """
        Insert a delivery, collapsing onto an existing record with the same key.

        Returns:
            Tuple of (delivery, created)
        """
        try:
            with self.session_scope() as session:
                delivery = WebhookDelivery(**fields)
                session.add(delivery)
            return delivery, True
        except IntegrityError:
            existing = self.get_by_key(fields['idempotency_key'])
            if existing is None:
                raise
            logger.info(f"Delivery {existing.id} already exists for key {existing.idempotency_key[:16]}...")
            return existing, False

    def get_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        with self.session_scope() as session:
            return session.get(WebhookDelivery, delivery_id)

    def get_by_key(self, idempotency_key: str) -> Optional[WebhookDelivery]:
        with self.session_scope() as session:
            return session.execute(
                select(WebhookDelivery).where(WebhookDelivery.idempotency_key == idempotency_key)
            ).scalar_one_or_none()

    def record_signature(self, delivery_id: str, signature: Optional[str], signed_at: datetime) -> bool:
        return self._conditional_update(
            WebhookDelivery, delivery_id, (DeliveryStatus.PENDING.value,),
            {'signature': signature, 'signed_at': signed_at},
        )

    def mark_success(self, delivery_id: str, attempts: int, response_status: int) -> bool:
        """pending -> success."""
        now = datetime.utcnow()
        return self._conditional_update(
            WebhookDelivery, delivery_id, (DeliveryStatus.PENDING.value,),
            {
                'status': DeliveryStatus.SUCCESS.value,
                'attempts': attempts,
                'last_attempt_at': now,
                'next_attempt_at': None,
                'response_status': response_status,
                'error': None,
                'completed_at': now,
            },
        )

    def record_failure(self, delivery_id: str, attempts: int, error: str,
                       response_status: Optional[int], next_attempt_at: datetime) -> bool:
        """pending -> pending with the attempt counted."""
        return self._conditional_update(
            WebhookDelivery, delivery_id, (DeliveryStatus.PENDING.value,),
            {
                'attempts': attempts,
                'last_attempt_at': datetime.utcnow(),
                'next_attempt_at': next_attempt_at,
                'response_status': response_status,
                'error': error,
            },
        )

    def mark_dead(self, delivery_id: str, attempts: int, error: str,
                  response_status: Optional[int]) -> bool:
        """
        pending -> dead.

        Returns:
            True only for the call that performed the transition
        """
        now = datetime.utcnow()
        return self._conditional_update(
            WebhookDelivery, delivery_id, (DeliveryStatus.PENDING.value,),
            {
                'status': DeliveryStatus.DEAD.value,
                'attempts': attempts,
                'last_attempt_at': now,
                'next_attempt_at': None,
                'response_status': response_status,
                'error': error,
                'completed_at': now,
            },
        )

    def reset_for_reprocess(self, delivery_id: str) -> bool:
        """dead -> pending with attempts and error cleared."""
        return self._conditional_update(
            WebhookDelivery, delivery_id, (DeliveryStatus.DEAD.value,),
            {
                'status': DeliveryStatus.PENDING.value,
                'attempts': 0,
                'error': None,
                'response_status': None,
                'next_attempt_at': None,
                'completed_at': None,
            },
        )

    def list_dead(self, limit: int = 100) -> List[WebhookDelivery]:
        with self.session_scope() as session:
            return list(session.execute(
                select(WebhookDelivery)
                .where(WebhookDelivery.status == DeliveryStatus.DEAD.value)
                .order_by(WebhookDelivery.completed_at.desc())
                .limit(limit)
            ).scalars())

    def delivery_counts(self) -> Dict[str, int]:
        with self.session_scope() as session:
            rows = session.execute(
                select(WebhookDelivery.status, func.count()).group_by(WebhookDelivery.status)
            ).all()
        counts = {status.value: 0 for status in DeliveryStatus}
        counts.update({status: count for status, count in rows})
        return counts
