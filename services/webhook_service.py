"""
Webhook Service - Target resolution, payload construction and signing.

Resolution order for the delivery target:
    1. Explicit callback URL supplied with the originating request
    2. The configuration's selected organization webhook, then its legacy
       callback URL
    3. The organization's default webhook

The first non-empty, valid candidate wins. When nothing resolves the
notification is skipped.
"""

import hashlib
import hmac
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

import requests

from backend.models.job import JobStatus, TransformationJob
from backend.models.webhook import DeliveryStatus, WebhookDelivery
from services.errors import ConfigurationNotFoundError, WebhookDeliveryError, WebhookValidationError
from services.job_store import DeliveryStore, JobStore
from services.storage_service import StorageService
from tasks.queue import DELIVER_WEBHOOK_TASK, TaskQueue

logger = logging.getLogger(__name__)

EVENT_TRANSFORMATION_COMPLETED = 'transformation.completed'
EVENT_TRANSFORMATION_FAILED = 'transformation.failed'

SIGNATURE_HEADER = 'Mutate-Signature'
TIMESTAMP_HEADER = 'X-Mutate-Timestamp'
JOB_ID_HEADER = 'X-Mutate-Id'
DELIVERY_HEADER = 'X-Mutate-Delivery'
EVENT_HEADER = 'X-Webhook-Event'

SIGNATURE_TOLERANCE_SECONDS = 300

LOCAL_HOSTS = {'localhost', '127.0.0.1', '0.0.0.0', '::1'}


@dataclass
class DeliveryTarget:
    """Resolved webhook destination."""
    url: str
    source: str
    secret: Optional[str] = None
    organization_webhook_id: Optional[str] = None


@dataclass
class RetryPolicy:
    """
    Bounded exponential retry schedule.

    Attempt n (1-based) that fails is followed by a wait of base**n seconds,
    until max_attempts attempts have been made.
    """
    max_attempts: int = 5
    backoff_base: int = 2

    def should_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts

    def delay_for(self, attempts_made: int) -> int:
        return int(self.backoff_base ** attempts_made)


def validate_webhook_url(url: str, allow_localhost: bool = True) -> str:
    """
    Check a webhook URL.

    Raises:
        WebhookValidationError: If the URL is not http(s) or targets a
            local host while local targets are disallowed
    """
    parsed = urlparse(url.strip())
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise WebhookValidationError(f"Webhook URL must be an absolute http(s) URL: {url}")
    host = (parsed.hostname or '').lower()
    if not allow_localhost and (host in LOCAL_HOSTS or host.endswith('.localhost')):
        raise WebhookValidationError(f"Webhook URL may not target a local host: {url}")
    return url.strip()


def compute_idempotency_key(organization_id: str, configuration_id: Optional[str],
                            event_type: str, job_id: str, outcome: str) -> str:
    """SHA-256 over organization:configuration:event_type:job_id:outcome."""
    material = f"{organization_id}:{configuration_id or ''}:{event_type}:{job_id}:{outcome}"
    return hashlib.sha256(material.encode('utf-8')).hexdigest()


def delivery_id_for(idempotency_key: str) -> str:
    """Deterministic delivery id (UUID-formatted) derived from the key."""
    return str(uuid.UUID(hex=idempotency_key[:32]))


def serialize_payload(payload: Dict[str, Any]) -> str:
    """Canonical JSON body; the exact bytes that get signed and sent."""
    return json.dumps(payload, sort_keys=True, separators=(',', ':'), default=str)


def sign_payload(secret: str, timestamp: int, body: str) -> str:
    """Return `sha256=<hex>` of HMAC-SHA256 over "{timestamp}.{body}"."""
    message = f"{timestamp}.{body}".encode('utf-8')
    digest = hmac.new(secret.encode('utf-8'), message, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str, body: str, timestamp: str, signature: str,
                     tolerance_seconds: int = SIGNATURE_TOLERANCE_SECONDS,
                     now: Optional[float] = None) -> bool:
    """
    Verify a received webhook signature.

    Uses a constant-time comparison and rejects timestamps outside the
    tolerance window to limit replay.
    """
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False

    current = now if now is not None else time.time()
    if abs(current - ts) > tolerance_seconds:
        return False

    expected = sign_payload(secret, ts, body)
    return hmac.compare_digest(expected, signature or '')


def build_payload(job: TransformationJob, download_url: Optional[str] = None,
                  expires_at: Optional[datetime] = None) -> Dict[str, Any]:
    """Webhook body describing a job outcome."""
    payload: Dict[str, Any] = {
        'jobId': job.id,
        'status': job.status,
        'configurationId': job.configuration_id,
        'organizationId': job.organization_id,
        'completedAt': (job.completed_at or datetime.utcnow()).isoformat(),
    }
    if download_url:
        payload['downloadUrl'] = download_url
    if expires_at:
        payload['expiresAt'] = expires_at.isoformat()
    if job.status == JobStatus.COMPLETED.value:
        payload['executionLog'] = list(job.execution_log or [])
    if job.error_message:
        payload['error'] = job.error_message
    if job.file_size is not None:
        payload['fileSize'] = job.file_size
    if job.original_file_name:
        payload['originalFileName'] = job.original_file_name
    if job.uid:
        payload['uid'] = job.uid
    return payload


class DeliveryResolver:
    """Priority chain selecting the webhook target for a job."""

    def __init__(self, job_store: JobStore, allow_localhost: bool = True):
        self.job_store = job_store
        self.allow_localhost = allow_localhost

    def _accept(self, url: Optional[str], source: str) -> Optional[str]:
        if not url or not url.strip():
            return None
        try:
            return validate_webhook_url(url, self.allow_localhost)
        except WebhookValidationError as e:
            logger.warning(f"Ignoring {source} webhook candidate: {e}")
            return None

    def resolve(self, organization_id: str, configuration_id: Optional[str] = None,
                callback_url: Optional[str] = None) -> Optional[DeliveryTarget]:
        """
        Resolve the delivery target.

        Returns:
            DeliveryTarget, or None when no candidate is configured
        """
        url = self._accept(callback_url, 'request')
        if url:
            return DeliveryTarget(url=url, source='request')

        if configuration_id:
            try:
                configuration = self.job_store.get_configuration(configuration_id)
            except ConfigurationNotFoundError:
                configuration = None

            if configuration is not None:
                if configuration.webhook_id:
                    webhook = self.job_store.get_webhook(configuration.webhook_id)
                    if webhook is not None:
                        url = self._accept(webhook.url, 'configuration webhook')
                        if url:
                            return DeliveryTarget(url=url, source='configuration_webhook',
                                                  secret=webhook.secret,
                                                  organization_webhook_id=webhook.id)

                url = self._accept(configuration.callback_url, 'configuration')
                if url:
                    return DeliveryTarget(url=url, source='configuration')

        default = self.job_store.get_default_webhook(organization_id)
        if default is not None:
            url = self._accept(default.url, 'organization default')
            if url:
                return DeliveryTarget(url=url, source='organization_default',
                                      secret=default.secret,
                                      organization_webhook_id=default.id)

        return None


class WebhookSender:
    """One signed HTTP POST per call; raises WebhookDeliveryError on any failure."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: int = 30,
                 user_agent: str = 'Mutate-Webhook/1.0'):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.user_agent = user_agent

    def build_headers(self, delivery: WebhookDelivery, body: str, secret: Optional[str],
                      timestamp: int) -> Dict[str, str]:
        headers = {
            'Content-Type': 'application/json',
            'User-Agent': self.user_agent,
            EVENT_HEADER: delivery.event_type,
            TIMESTAMP_HEADER: str(timestamp),
            JOB_ID_HEADER: delivery.job_id or '',
            DELIVERY_HEADER: delivery.id,
        }
        if secret:
            headers[SIGNATURE_HEADER] = sign_payload(secret, timestamp, body)
        return headers

    def send(self, delivery: WebhookDelivery, secret: Optional[str] = None) -> Tuple[int, Dict[str, str]]:
        """
        POST the delivery payload.

        Returns:
            Tuple of (status_code, headers sent)

        Raises:
            WebhookDeliveryError: On timeout, network error or non-2xx status
        """
        body = serialize_payload(delivery.payload)
        timestamp = int(time.time())
        headers = self.build_headers(delivery, body, secret, timestamp)

        try:
            response = self.session.post(
                delivery.target_url,
                data=body.encode('utf-8'),
                headers=headers,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise WebhookDeliveryError(f"Webhook timed out after {self.timeout}s: {e}") from e
        except requests.RequestException as e:
            raise WebhookDeliveryError(f"Webhook request failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise WebhookDeliveryError(
                f"Webhook returned HTTP {response.status_code}",
                status_code=response.status_code,
                response_body=(response.text or '')[:1000],
            )

        return response.status_code, headers

    def close(self):
        self.session.close()


class WebhookService:
    """
    Creates delivery records for job outcomes and enqueues them.

    Duplicate requests for the same logical event resolve to the same record.
    The record is enqueued again only while it is pending with no attempts,
    always under its own id as the task id.
    """

    def __init__(self, job_store: JobStore, delivery_store: DeliveryStore,
                 resolver: DeliveryResolver, queue: TaskQueue, storage: Optional[StorageService] = None,
                 max_attempts: int = 5, file_ttl: int = 86400):
        self.job_store = job_store
        self.delivery_store = delivery_store
        self.resolver = resolver
        self.queue = queue
        self.storage = storage
        self.max_attempts = max_attempts
        self.file_ttl = file_ttl

    def notify_job_outcome(self, job_id: str) -> Optional[WebhookDelivery]:
        """
        Request delivery of a terminal job's outcome.

        Returns:
            The delivery record, or None if no target is configured
        """
        job = self.job_store.get_job(job_id)
        if not job.is_complete():
            logger.warning(f"Job {job_id} is {job.status}; not notifying")
            return None

        target = self.resolver.resolve(job.organization_id, job.configuration_id, job.callback_url)
        if target is None:
            logger.info(f"No webhook target for job {job_id}; notification skipped")
            return None

        download_url, expires_at = None, None
        if job.status == JobStatus.COMPLETED.value and job.output_file_key and self.storage:
            download_url, expires_at = self.storage.download_url(job.output_file_key, self.file_ttl)

        event_type = (EVENT_TRANSFORMATION_COMPLETED if job.status == JobStatus.COMPLETED.value
                      else EVENT_TRANSFORMATION_FAILED)
        payload = build_payload(job, download_url, expires_at)
        body = serialize_payload(payload)

        key = compute_idempotency_key(job.organization_id, job.configuration_id,
                                      event_type, job.id, job.status)
        delivery_id = delivery_id_for(key)

        delivery, created = self.delivery_store.create_delivery(
            id=delivery_id,
            idempotency_key=key,
            organization_id=job.organization_id,
            configuration_id=job.configuration_id,
            job_id=job.id,
            event_type=event_type,
            target_url=target.url,
            organization_webhook_id=target.organization_webhook_id,
            payload=payload,
            payload_hash=hashlib.sha256(body.encode('utf-8')).hexdigest(),
            max_attempts=self.max_attempts,
        )

        if created and target.organization_webhook_id:
            self.job_store.touch_webhook(target.organization_webhook_id)

        # A pending record with no attempts may have lost its task to a failed
        # enqueue; the task id is the delivery id, so enqueueing again is safe.
        if delivery.status == DeliveryStatus.PENDING.value and not delivery.attempts:
            self.queue.enqueue(DELIVER_WEBHOOK_TASK, {'delivery_id': delivery.id}, task_id=delivery.id)
            logger.info(f"Enqueued webhook delivery {delivery.id} for job {job_id} -> {target.url} ({target.source})")
        else:
            logger.info(f"Webhook delivery {delivery.id} for job {job_id} already {delivery.status}")

        return delivery
