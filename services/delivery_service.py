"""
Delivery Service - Executes webhook delivery attempts.

Each call to `WebhookDeliveryWorker.process` makes exactly one HTTP attempt
and persists its outcome before the next attempt is scheduled:

    pending --2xx--> success
    pending --failure, attempts < max--> pending (re-enqueued with backoff)
    pending --failure, attempts >= max--> dead (routed to the dead-letter queue)

The queue task always completes normally; retries are scheduled here and
never stacked on the queue's own retry mechanism.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from backend.models.webhook import DeliveryStatus, WebhookDelivery
from services.errors import WebhookDeliveryError
from services.job_store import DeliveryStore, JobStore
from services.webhook_service import SIGNATURE_HEADER, RetryPolicy, WebhookSender
from tasks.queue import DEAD_LETTER_TASK, DELIVER_WEBHOOK_TASK, TaskQueue

logger = logging.getLogger(__name__)


@dataclass
class DeliveryOutcome:
    """Result of one processing call."""
    delivery_id: str
    status: str
    attempts: int
    response_status: Optional[int] = None
    error: Optional[str] = None
    next_attempt_in: Optional[int] = None
    skipped: bool = False


class WebhookDeliveryWorker:
    """Runs delivery attempts, schedules retries and routes exhausted deliveries."""

    def __init__(self, delivery_store: DeliveryStore, job_store: JobStore,
                 sender: WebhookSender, queue: TaskQueue,
                 retry_policy: Optional[RetryPolicy] = None):
        self.delivery_store = delivery_store
        self.job_store = job_store
        self.sender = sender
        self.queue = queue
        self.retry_policy = retry_policy or RetryPolicy()

    def _secret_for(self, delivery: WebhookDelivery) -> Optional[str]:
        if not delivery.organization_webhook_id:
            return None
        webhook = self.job_store.get_webhook(delivery.organization_webhook_id)
        return webhook.secret if webhook is not None else None

    def _track_job(self, delivery: WebhookDelivery, attempts: int, delivered: bool):
        if delivery.job_id:
            self.job_store.update_webhook_tracking(delivery.job_id, attempts, delivered)

    def process(self, delivery_id: str) -> DeliveryOutcome:
        """
        Make one delivery attempt.

        Redelivered tasks for a delivery that is no longer pending are
        acknowledged without sending anything.
        """
        delivery = self.delivery_store.get_delivery(delivery_id)
        if delivery is None:
            logger.warning(f"Delivery {delivery_id} not found; skipping")
            return DeliveryOutcome(delivery_id, 'missing', 0, skipped=True)

        if delivery.status != DeliveryStatus.PENDING.value:
            logger.info(f"Delivery {delivery_id} already {delivery.status}; skipping")
            return DeliveryOutcome(delivery_id, delivery.status, delivery.attempts, skipped=True)

        max_attempts = delivery.max_attempts or self.retry_policy.max_attempts
        attempt = (delivery.attempts or 0) + 1
        logger.info(f"Delivering {delivery_id} to {delivery.target_url} (attempt {attempt}/{max_attempts})")

        try:
            status_code, headers = self.sender.send(delivery, self._secret_for(delivery))
        except WebhookDeliveryError as e:
            return self._handle_failure(delivery, attempt, max_attempts, e)

        self.delivery_store.record_signature(delivery_id, headers.get(SIGNATURE_HEADER), datetime.utcnow())
        self.delivery_store.mark_success(delivery_id, attempt, status_code)
        self._track_job(delivery, attempt, delivered=True)
        logger.info(f"Delivery {delivery_id} succeeded with HTTP {status_code} after {attempt} attempt(s)")
        return DeliveryOutcome(delivery_id, DeliveryStatus.SUCCESS.value, attempt, response_status=status_code)

    def _handle_failure(self, delivery: WebhookDelivery, attempt: int, max_attempts: int,
                        error: WebhookDeliveryError) -> DeliveryOutcome:
        policy = RetryPolicy(max_attempts=max_attempts, backoff_base=self.retry_policy.backoff_base)

        if policy.should_retry(attempt):
            delay = policy.delay_for(attempt)
            self.delivery_store.record_failure(
                delivery.id, attempt, error.message, error.status_code,
                datetime.utcnow() + timedelta(seconds=delay),
            )
            self._track_job(delivery, attempt, delivered=False)
            self.queue.enqueue(DELIVER_WEBHOOK_TASK, {'delivery_id': delivery.id},
                               task_id=delivery.id, countdown=delay)
            logger.warning(f"Delivery {delivery.id} attempt {attempt} failed: {error.message}; "
                           f"retrying in {delay}s")
            return DeliveryOutcome(delivery.id, DeliveryStatus.PENDING.value, attempt,
                                   response_status=error.status_code, error=error.message,
                                   next_attempt_in=delay)

        transitioned = self.delivery_store.mark_dead(delivery.id, attempt, error.message, error.status_code)
        self._track_job(delivery, attempt, delivered=False)
        if transitioned:
            self.queue.enqueue(DEAD_LETTER_TASK, {'delivery_id': delivery.id})
            logger.error(f"Delivery {delivery.id} exhausted {attempt} attempts; moved to dead-letter queue")
        return DeliveryOutcome(delivery.id, DeliveryStatus.DEAD.value, attempt,
                               response_status=error.status_code, error=error.message)

    def handle_dead_letter(self, delivery_id: str) -> Optional[WebhookDelivery]:
        """Consume one dead-letter entry: log it for alerting."""
        delivery = self.delivery_store.get_delivery(delivery_id)
        if delivery is None:
            logger.warning(f"Dead-letter entry {delivery_id} has no delivery record")
            return None
        logger.error(
            f"DEAD LETTER: delivery {delivery.id} job={delivery.job_id} "
            f"org={delivery.organization_id} url={delivery.target_url} "
            f"attempts={delivery.attempts} last_status={delivery.response_status} "
            f"error={delivery.error}"
        )
        return delivery

    def reprocess(self, delivery_id: str) -> Optional[str]:
        """
        Reset a dead delivery and enqueue it under a fresh task id.

        Returns:
            The new task id, or None if the delivery was not dead
        """
        if not self.delivery_store.reset_for_reprocess(delivery_id):
            logger.warning(f"Delivery {delivery_id} is not dead; not reprocessing")
            return None
        task_id = self.queue.enqueue(DELIVER_WEBHOOK_TASK, {'delivery_id': delivery_id},
                                     task_id=str(uuid.uuid4()))
        logger.info(f"Reprocessing delivery {delivery_id} as task {task_id}")
        return task_id

    def reprocess_all_dead(self, limit: int = 100) -> List[str]:
        """Reprocess up to `limit` dead deliveries; returns the delivery ids re-enqueued."""
        requeued = []
        for delivery in self.delivery_store.list_dead(limit):
            if self.reprocess(delivery.id):
                requeued.append(delivery.id)
        return requeued
