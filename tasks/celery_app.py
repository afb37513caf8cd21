"""
Celery application configuration.

This module sets up Celery for background task processing with Redis
as the message broker and result backend, and owns the per-process
service container used by the tasks.
"""

import logging

import redis
from celery import Celery
from celery.signals import worker_process_init, worker_process_shutdown
from kombu import Exchange, Queue

from api.config import settings
from services.container import ServiceContainer, build_container
from tasks.queue import (
    CLEANUP_JOBS_TASK, DEAD_LETTER_QUEUE, DEAD_LETTER_TASK, DELIVER_WEBHOOK_TASK,
    PROCESS_TRANSFORMATION_TASK, REPROCESS_DEAD_LETTERS_TASK, TRANSFORMATION_QUEUE,
    WEBHOOK_QUEUE, CeleryTaskQueue,
)

logger = logging.getLogger(__name__)

# Create Celery application
celery_app = Celery(
    'mutate',
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=['tasks.transformation_tasks', 'tasks.webhook_tasks']
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer='json',
    result_serializer='json',
    accept_content=['json'],

    # Timezone
    timezone='UTC',
    enable_utc=True,

    # Task execution
    task_track_started=True,
    task_time_limit=1800,  # 30 minutes hard timeout
    task_soft_time_limit=1500,  # 25 minutes soft timeout
    worker_prefetch_multiplier=1,  # One task at a time per worker

    # Results
    result_expires=settings.RESULT_EXPIRES,
    result_extended=True,

    # Task routing
    task_default_queue=TRANSFORMATION_QUEUE,
    task_default_exchange=TRANSFORMATION_QUEUE,
    task_default_routing_key=TRANSFORMATION_QUEUE,

    # Worker configuration
    worker_max_tasks_per_child=100,  # Restart worker after 100 tasks (prevent memory leaks)

    # Task acknowledgement
    task_acks_late=True,  # Acknowledge task after completion
    task_reject_on_worker_lost=True,

    # Unacked tasks are redelivered after this window (stalled-task detection)
    broker_transport_options={'visibility_timeout': settings.STALLED_VISIBILITY_TIMEOUT},

    # Monitoring
    worker_send_task_events=True,
    task_send_sent_event=True,
)

# Define task queues
celery_app.conf.task_queues = (
    Queue(TRANSFORMATION_QUEUE, Exchange(TRANSFORMATION_QUEUE), routing_key=TRANSFORMATION_QUEUE),
    Queue(WEBHOOK_QUEUE, Exchange(WEBHOOK_QUEUE), routing_key=WEBHOOK_QUEUE),
    Queue(DEAD_LETTER_QUEUE, Exchange(DEAD_LETTER_QUEUE), routing_key=DEAD_LETTER_QUEUE),
)

# Task routes
celery_app.conf.task_routes = {
    PROCESS_TRANSFORMATION_TASK: {'queue': TRANSFORMATION_QUEUE, 'routing_key': TRANSFORMATION_QUEUE},
    CLEANUP_JOBS_TASK: {'queue': TRANSFORMATION_QUEUE, 'routing_key': TRANSFORMATION_QUEUE},
    DELIVER_WEBHOOK_TASK: {'queue': WEBHOOK_QUEUE, 'routing_key': WEBHOOK_QUEUE},
    REPROCESS_DEAD_LETTERS_TASK: {'queue': WEBHOOK_QUEUE, 'routing_key': WEBHOOK_QUEUE},
    DEAD_LETTER_TASK: {'queue': DEAD_LETTER_QUEUE, 'routing_key': DEAD_LETTER_QUEUE},
}

# Beat schedule
celery_app.conf.beat_schedule = {
    'cleanup-old-jobs': {
        'task': CLEANUP_JOBS_TASK,
        'schedule': 86400.0,  # Daily
        'kwargs': {'days_to_keep': settings.JOB_RETENTION_DAYS},
    },
}

# Create Redis client
redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)

_container = None


def get_container() -> ServiceContainer:
    """Service container for this process, built on first use."""
    global _container
    if _container is None:
        _container = build_container(settings, CeleryTaskQueue(celery_app, redis_client), redis_client)
    return _container


@worker_process_init.connect
def init_worker_process(**kwargs):
    """Build services once per worker process."""
    get_container()
    logger.info("Worker process services initialized")


@worker_process_shutdown.connect
def shutdown_worker_process(**kwargs):
    """Dispose the database engine and close the webhook HTTP session."""
    global _container
    if _container is not None:
        _container.close()
        _container = None


if __name__ == '__main__':
    celery_app.start()
