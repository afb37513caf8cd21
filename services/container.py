"""
Service wiring shared by the Celery worker, the API and the CLI.

Workers build one container per process at `worker_process_init` and close
it at `worker_process_shutdown`.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from services.delivery_service import WebhookDeliveryWorker
from services.job_store import DeliveryStore, JobStore
from services.rule_engine import RuleEngine
from services.storage_service import StorageService
from services.transformation_service import ProgressCallback, TransformationService
from services.webhook_service import DeliveryResolver, RetryPolicy, WebhookSender, WebhookService
from tasks.queue import TaskQueue

logger = logging.getLogger(__name__)


def make_session_factory(engine: Engine) -> sessionmaker:
    """Session factory whose objects stay readable after their session closes."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def create_db_engine(settings) -> Engine:
    options = {'pool_pre_ping': settings.DB_POOL_PRE_PING}
    if not settings.DATABASE_URL.startswith('sqlite'):
        options.update(pool_size=settings.DB_POOL_SIZE, max_overflow=settings.DB_MAX_OVERFLOW)
    return create_engine(settings.DATABASE_URL, **options)


@dataclass
class ServiceContainer:
    """Constructed service objects for one process."""
    settings: object
    engine: Engine
    session_factory: sessionmaker
    queue: TaskQueue
    job_store: JobStore
    delivery_store: DeliveryStore
    storage: StorageService
    webhook_service: WebhookService
    delivery_worker: WebhookDeliveryWorker
    sender: WebhookSender
    redis_client: Optional[object] = None

    def transformation_service(self, progress_callback: Optional[ProgressCallback] = None) -> TransformationService:
        return TransformationService(
            job_store=self.job_store,
            storage=self.storage,
            notifier=self.webhook_service,
            engine=RuleEngine(),
            stage_input_files=self.settings.STAGE_INPUT_FILES,
            progress_callback=progress_callback,
        )

    def close(self):
        """Dispose the database engine and close the HTTP session."""
        self.sender.close()
        self.engine.dispose()
        logger.info("Service container closed")


def build_container(settings, queue: TaskQueue, redis_client=None,
                    engine: Optional[Engine] = None, sender: Optional[WebhookSender] = None) -> ServiceContainer:
    """
    Construct every service from settings.

    Args:
        settings: Settings instance
        queue: Queue used to enqueue follow-up tasks
        redis_client: Optional Redis client (progress cache, queue stats)
        engine: Existing SQLAlchemy engine, created from settings if omitted
        sender: Existing webhook sender, created from settings if omitted
    """
    engine = engine or create_db_engine(settings)
    session_factory = make_session_factory(engine)

    job_store = JobStore(session_factory)
    delivery_store = DeliveryStore(session_factory)
    storage = StorageService(
        storage_dir=settings.STORAGE_DIR,
        base_url=settings.STORAGE_BASE_URL,
        signing_key=settings.STORAGE_SIGNING_KEY,
    )
    sender = sender or WebhookSender(timeout=settings.WEBHOOK_TIMEOUT_SECONDS,
                                     user_agent=settings.WEBHOOK_USER_AGENT)
    retry_policy = RetryPolicy(max_attempts=settings.WEBHOOK_MAX_RETRIES,
                               backoff_base=settings.WEBHOOK_BACKOFF_BASE)

    resolver = DeliveryResolver(job_store, allow_localhost=not settings.is_production)
    webhook_service = WebhookService(
        job_store=job_store,
        delivery_store=delivery_store,
        resolver=resolver,
        queue=queue,
        storage=storage,
        max_attempts=retry_policy.max_attempts,
        file_ttl=settings.FILE_TTL,
    )
    delivery_worker = WebhookDeliveryWorker(
        delivery_store=delivery_store,
        job_store=job_store,
        sender=sender,
        queue=queue,
        retry_policy=retry_policy,
    )

    return ServiceContainer(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        queue=queue,
        job_store=job_store,
        delivery_store=delivery_store,
        storage=storage,
        webhook_service=webhook_service,
        delivery_worker=delivery_worker,
        sender=sender,
        redis_client=redis_client,
    )
