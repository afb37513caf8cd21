"""
Durable queue interface used by the services.

Services depend on `TaskQueue` only; the Celery-backed implementation sends
tasks by name so service code never imports task modules.
"""

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Task names
PROCESS_TRANSFORMATION_TASK = 'tasks.transformation_tasks.process_transformation'
CLEANUP_JOBS_TASK = 'tasks.transformation_tasks.cleanup_old_jobs'
DELIVER_WEBHOOK_TASK = 'tasks.webhook_tasks.deliver_webhook'
DEAD_LETTER_TASK = 'tasks.webhook_tasks.handle_dead_letter'
REPROCESS_DEAD_LETTERS_TASK = 'tasks.webhook_tasks.reprocess_dead_letters'

# Queue names
TRANSFORMATION_QUEUE = 'transformation'
WEBHOOK_QUEUE = 'webhooks'
DEAD_LETTER_QUEUE = 'webhook-dead-letter'

QUEUE_NAMES = (TRANSFORMATION_QUEUE, WEBHOOK_QUEUE, DEAD_LETTER_QUEUE)


class TaskQueue:
    """Minimal durable queue contract."""

    def enqueue(self, task_name: str, payload: Dict[str, Any], task_id: Optional[str] = None,
                attempts: Optional[int] = None, countdown: Optional[int] = None) -> str:
        """
        Submit a task.

        Args:
            task_name: Registered task name
            payload: JSON-serializable keyword arguments
            task_id: Stable id; the worker skips a record that has left pending
            attempts: Attempt budget carried in the message headers
            countdown: Delay in seconds before the task becomes visible

        Returns:
            The task id
        """
        raise NotImplementedError

    def get_job_counts(self) -> Dict[str, Dict[str, int]]:
        raise NotImplementedError


class CeleryTaskQueue(TaskQueue):
    """TaskQueue over a Celery app with a Redis broker."""

    def __init__(self, app, redis_client=None):
        self.app = app
        self.redis_client = redis_client

    def enqueue(self, task_name: str, payload: Dict[str, Any], task_id: Optional[str] = None,
                attempts: Optional[int] = None, countdown: Optional[int] = None) -> str:
        headers = {'max_attempts': attempts} if attempts else None
        result = self.app.send_task(
            task_name,
            kwargs=payload,
            task_id=task_id,
            countdown=countdown,
            headers=headers,
        )
        logger.debug(f"Enqueued {task_name} as {result.id}"
                     + (f" (countdown {countdown}s)" if countdown else ''))
        return result.id

    def get_job_counts(self) -> Dict[str, Dict[str, int]]:
        """
        Waiting counts per queue from the broker, plus active and scheduled
        counts reported by running workers.
        """
        counts = {name: {'waiting': 0, 'active': 0, 'scheduled': 0} for name in QUEUE_NAMES}

        if self.redis_client is not None:
            for name in QUEUE_NAMES:
                counts[name]['waiting'] = int(self.redis_client.llen(name) or 0)

        inspect = self.app.control.inspect(timeout=1.0)
        for field, report in (('active', inspect.active()), ('scheduled', inspect.scheduled())):
            for tasks in (report or {}).values():
                for task in tasks:
                    info = task.get('request', task)
                    queue = (info.get('delivery_info') or {}).get('routing_key')
                    if queue in counts:
                        counts[queue][field] += 1

        return counts
