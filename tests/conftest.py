"""
Pytest configuration and fixtures for the transformation pipeline tests.
"""

import io
import uuid
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import openpyxl
import pytest
import requests
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from api.config import Settings
from backend.models.schema import Base
from services.container import build_container, make_session_factory
from services.job_store import DeliveryStore, JobStore
from services.storage_service import StorageService
from services.webhook_service import WebhookSender
from tasks.queue import TaskQueue


class InMemoryTaskQueue(TaskQueue):
    """Queue double that records every enqueue."""

    def __init__(self):
        self.enqueued: List[Dict[str, Any]] = []

    def enqueue(self, task_name: str, payload: Dict[str, Any], task_id: Optional[str] = None,
                attempts: Optional[int] = None, countdown: Optional[int] = None) -> str:
        task_id = task_id or str(uuid.uuid4())
        self.enqueued.append({
            'task_name': task_name,
            'payload': payload,
            'task_id': task_id,
            'attempts': attempts,
            'countdown': countdown,
        })
        return task_id

    def get_job_counts(self) -> Dict[str, Dict[str, int]]:
        return {'transformation': {'waiting': len(self.enqueued), 'active': 0, 'scheduled': 0}}

    def named(self, task_name: str) -> List[Dict[str, Any]]:
        return [entry for entry in self.enqueued if entry['task_name'] == task_name]


def make_response(status_code: int, text: str = '') -> MagicMock:
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.text = text
    return response


def scripted_session(*outcomes) -> MagicMock:
    """
    requests.Session double whose post() walks through outcomes.

    Each outcome is an HTTP status code or an exception instance to raise.
    """
    session = MagicMock(spec=requests.Session)
    effects = []
    for outcome in outcomes:
        effects.append(outcome if isinstance(outcome, BaseException) else make_response(outcome))
    session.post.side_effect = effects
    return session


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across connections."""
    eng = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def job_store(session_factory):
    return JobStore(session_factory)


@pytest.fixture
def delivery_store(session_factory):
    return DeliveryStore(session_factory)


@pytest.fixture
def storage(tmp_path):
    return StorageService(
        storage_dir=str(tmp_path / 'storage'),
        base_url='http://testserver/files',
        signing_key='test-signing-key',
    )


@pytest.fixture
def queue():
    return InMemoryTaskQueue()


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        DATABASE_URL='sqlite://',
        STORAGE_DIR=str(tmp_path / 'storage'),
        STORAGE_BASE_URL='http://testserver/files',
        STORAGE_SIGNING_KEY='test-signing-key',
        ENVIRONMENT='test',
        WEBHOOK_MAX_RETRIES=5,
        WEBHOOK_BACKOFF_BASE=2,
    )


@pytest.fixture
def http_session():
    """Session double answering 200 to every webhook POST."""
    session = MagicMock(spec=requests.Session)
    session.post.return_value = make_response(200, 'ok')
    return session


@pytest.fixture
def services(test_settings, queue, engine, http_session):
    """Fully wired service container over SQLite and the in-memory queue."""
    container = build_container(
        test_settings,
        queue,
        engine=engine,
        sender=WebhookSender(session=http_session, timeout=5),
    )
    yield container
    container.sender.close()


@pytest.fixture
def people_csv() -> bytes:
    return b"Name,Age,City\nJohn,30,NY\nJane,25,Chicago\n"


@pytest.fixture
def sales_xlsx() -> bytes:
    """
    Two-sheet workbook: a cover sheet and a data sheet whose last row
    holds formulas without cached values.
    """
    wb = openpyxl.Workbook()
    cover = wb.active
    cover.title = 'Cover'
    cover['A1'] = 'Quarterly sales'

    data = wb.create_sheet('Sales 2024')
    data.append(['Region', 'Units', 'Revenue', 'Notes'])
    data.append(['East', 10, 100, 'ok'])
    data.append([None, 20, 300, None])
    data.append(['West', 30, 200, 'late'])
    data['A5'] = 'Total'
    data['B5'] = '=SUM(B2:B4)'
    data['C5'] = '=SUM(C2:C4)'
    data['D5'] = '=C5/B5'

    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def make_session():
    """Factory for scripted requests.Session doubles."""
    return scripted_session
