"""
Webhook delivery background tasks.

Each task invocation performs one delivery attempt. Retries are scheduled
by the delivery worker as new messages with a countdown, so these tasks
always complete normally.
"""

import logging
from dataclasses import asdict
from typing import Any, Dict

from tasks.celery_app import celery_app, get_container
from tasks.queue import DEAD_LETTER_TASK, DELIVER_WEBHOOK_TASK, REPROCESS_DEAD_LETTERS_TASK

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name=DELIVER_WEBHOOK_TASK)
def deliver_webhook(self, delivery_id: str) -> Dict[str, Any]:
    """
    Make one delivery attempt for a webhook delivery.

    Args:
        delivery_id: WebhookDelivery id

    Returns:
        Outcome dictionary (status, attempts, next_attempt_in, ...)
    """
    logger.info(f"Webhook task {self.request.id} processing delivery {delivery_id}")
    outcome = get_container().delivery_worker.process(delivery_id)
    return asdict(outcome)


@celery_app.task(name=DEAD_LETTER_TASK)
def handle_dead_letter(delivery_id: str) -> Dict[str, Any]:
    """Drain one dead-letter entry for logging and alerting."""
    delivery = get_container().delivery_worker.handle_dead_letter(delivery_id)
    if delivery is None:
        return {'delivery_id': delivery_id, 'found': False}
    return {
        'delivery_id': delivery.id,
        'found': True,
        'job_id': delivery.job_id,
        'attempts': delivery.attempts,
        'error': delivery.error,
    }


@celery_app.task(name=REPROCESS_DEAD_LETTERS_TASK)
def reprocess_dead_letters(limit: int = 100) -> Dict[str, Any]:
    """Reset and re-enqueue dead deliveries."""
    requeued = get_container().delivery_worker.reprocess_all_dead(limit)
    logger.info(f"Re-enqueued {len(requeued)} dead deliveries")
    return {'requeued': requeued, 'count': len(requeued)}
