"""
Tests for the durable store: configurations, job state transitions,
progress checkpoints and webhook delivery records.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select, update

from backend.models.job import JobStatus, TransformationJob
from backend.models.schema import ConfigurationVersion
from backend.models.webhook import DeliveryStatus
from services.errors import ConfigurationNotFoundError, JobNotFoundError, RuleApplicationError


RULES = [
    {'id': 'r1', 'type': 'DELETE_COLUMNS', 'params': {'columns': ['Age']}},
]


def delivery_fields(key='k' * 64, delivery_id='d-1', job_id='job-1'):
    return {
        'id': delivery_id,
        'idempotency_key': key,
        'organization_id': 'org_1',
        'configuration_id': None,
        'job_id': job_id,
        'event_type': 'transformation.completed',
        'target_url': 'https://hooks.example.com/in',
        'payload': {'jobId': job_id},
        'payload_hash': 'h' * 64,
        'max_attempts': 5,
    }


@pytest.fixture
def configuration(job_store):
    return job_store.create_configuration('org_1', 'People cleanup', RULES, {'delimiter': ';'})


@pytest.fixture
def job(job_store, configuration):
    return job_store.create_job('org_1', configuration.id, 'people.csv', 42)


class TestConfigurations:
    """Versioned configuration storage."""

    def test_create(self, job_store, configuration):
        stored = job_store.get_configuration(configuration.id)
        assert stored.version == 1
        assert stored.rules == [{'id': 'r1', 'type': 'DELETE_COLUMNS', 'params': {'columns': ['Age']}}]
        assert stored.output_format['delimiter'] == ';'
        assert stored.output_format['includeHeaders'] is True

    def test_invalid_rules_rejected(self, job_store):
        with pytest.raises(RuleApplicationError):
            job_store.create_configuration('org_1', 'Broken', [{'type': 'DELETE_ROWS', 'params': {}}])

    def test_update_bumps_version(self, job_store, session_factory, configuration):
        updated = job_store.update_configuration(configuration.id, name='Renamed', rules=[])
        assert updated.version == 2
        assert updated.name == 'Renamed'
        assert updated.rules == []

        with session_factory() as session:
            versions = session.execute(
                select(ConfigurationVersion.version)
                .where(ConfigurationVersion.configuration_id == configuration.id)
                .order_by(ConfigurationVersion.version)
            ).scalars().all()
        assert versions == [1, 2]

    def test_snapshot(self, configuration):
        snapshot = configuration.snapshot()
        assert snapshot['version'] == 1
        assert snapshot['name'] == 'People cleanup'
        assert snapshot['rules'][0]['type'] == 'DELETE_COLUMNS'

    def test_missing(self, job_store):
        with pytest.raises(ConfigurationNotFoundError):
            job_store.get_configuration('nope')
        with pytest.raises(ConfigurationNotFoundError):
            job_store.update_configuration('nope', name='x')

    def test_default_webhook(self, job_store):
        job_store.create_webhook('org_1', 'secondary', 'https://a.example.com')
        default = job_store.create_webhook('org_1', 'primary', 'https://b.example.com', is_default=True)
        job_store.create_webhook('org_2', 'other', 'https://c.example.com', is_default=True)
        assert job_store.get_default_webhook('org_1').id == default.id
        assert job_store.get_default_webhook('org_3') is None


class TestJobTransitions:
    """Job status only moves forward."""

    def test_create_pending(self, job_store, job):
        stored = job_store.get_job(job.id)
        assert stored.status == JobStatus.PENDING.value
        assert stored.attempts == 0
        assert stored.execution_log == []

    def test_missing_job(self, job_store):
        with pytest.raises(JobNotFoundError):
            job_store.get_job('nope')

    def test_happy_path(self, job_store, job):
        assert job_store.start_job(job.id)
        assert job_store.get_job(job.id).attempts == 1

        assert job_store.complete_job(job.id, 'http://x/out.csv', 'org_1/j/out.csv', ['done'], {'output_rows': 2})
        stored = job_store.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED.value
        assert stored.execution_log == ['done']
        assert stored.completed_at is not None
        assert stored.is_complete()

    def test_processing_restart(self, job_store, job):
        """A redelivered job in processing can be started again."""
        assert job_store.start_job(job.id)
        assert job_store.start_job(job.id)
        assert job_store.get_job(job.id).attempts == 2

    def test_terminal_is_final(self, job_store, job):
        job_store.start_job(job.id)
        job_store.fail_job(job.id, 'boom', ['log'])

        assert not job_store.start_job(job.id)
        assert not job_store.complete_job(job.id, 'u', 'k', [])
        assert not job_store.fail_job(job.id, 'again', [])
        stored = job_store.get_job(job.id)
        assert stored.status == JobStatus.FAILED.value
        assert stored.error_message == 'boom'

    def test_complete_requires_processing(self, job_store, job):
        assert not job_store.complete_job(job.id, 'u', 'k', [])
        assert job_store.get_job(job.id).status == JobStatus.PENDING.value

    def test_fail_from_pending(self, job_store, job):
        assert job_store.fail_job(job.id, 'too many attempts', [])
        assert job_store.get_job(job.id).status == JobStatus.FAILED.value

    def test_webhook_tracking_leaves_status(self, job_store, job):
        job_store.start_job(job.id)
        job_store.complete_job(job.id, 'u', 'k', [])
        job_store.update_webhook_tracking(job.id, attempts=3, delivered=False)
        stored = job_store.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED.value
        assert stored.webhook_attempts == 3
        assert stored.webhook_delivered is False

    def test_job_counts(self, job_store, configuration):
        first = job_store.create_job('org_1', configuration.id, 'a.csv', 1)
        job_store.create_job('org_1', configuration.id, 'b.csv', 1)
        job_store.fail_job(first.id, 'x', [])
        counts = job_store.job_counts()
        assert counts == {'pending': 1, 'processing': 0, 'completed': 0, 'failed': 1}


class TestProgress:
    """Progress checkpoints."""

    def test_latest(self, job_store, job):
        assert job_store.latest_progress(job.id) is None
        job_store.record_progress(job.id, 'started', 10, 'Job started')
        job_store.record_progress(job.id, 'input', 20, 'Input received')
        latest = job_store.latest_progress(job.id)
        assert latest.stage == 'input'
        assert latest.to_dict()['percent'] == 20.0


class TestCleanup:
    """Retention cleanup of terminal jobs."""

    def test_removes_old_terminal_jobs(self, job_store, session_factory, configuration):
        old = job_store.create_job('org_1', configuration.id, 'old.csv', 1)
        recent = job_store.create_job('org_1', configuration.id, 'recent.csv', 1)
        pending = job_store.create_job('org_1', configuration.id, 'pending.csv', 1)
        for job in (old, recent):
            job_store.fail_job(job.id, 'x', [])
        job_store.record_progress(old.id, 'failed', 100, 'x')

        with session_factory() as session:
            session.execute(
                update(TransformationJob)
                .where(TransformationJob.id == old.id)
                .values(completed_at=datetime.utcnow() - timedelta(days=40))
            )
            session.commit()

        deleted_jobs, deleted_progress, expired = job_store.cleanup_terminal_jobs(30)
        assert (deleted_jobs, deleted_progress) == (1, 1)
        assert expired == [('org_1', old.id)]
        job_store.get_job(recent.id)
        job_store.get_job(pending.id)
        with pytest.raises(JobNotFoundError):
            job_store.get_job(old.id)


class TestDeliveryStore:
    """Delivery record transitions."""

    def test_idempotent_create(self, delivery_store):
        first, created = delivery_store.create_delivery(**delivery_fields())
        second, created_again = delivery_store.create_delivery(**delivery_fields())
        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert delivery_store.delivery_counts()['pending'] == 1

    def test_success(self, delivery_store):
        delivery_store.create_delivery(**delivery_fields())
        assert delivery_store.mark_success('d-1', attempts=2, response_status=204)
        stored = delivery_store.get_delivery('d-1')
        assert stored.status == DeliveryStatus.SUCCESS.value
        assert stored.attempts == 2
        assert not delivery_store.record_failure('d-1', 3, 'late', 500, datetime.utcnow())

    def test_dead_transition_happens_once(self, delivery_store):
        delivery_store.create_delivery(**delivery_fields())
        assert delivery_store.mark_dead('d-1', 5, 'HTTP 500', 500)
        assert not delivery_store.mark_dead('d-1', 5, 'HTTP 500', 500)
        assert [d.id for d in delivery_store.list_dead()] == ['d-1']

    def test_reset_only_from_dead(self, delivery_store):
        delivery_store.create_delivery(**delivery_fields())
        assert not delivery_store.reset_for_reprocess('d-1')

        delivery_store.mark_dead('d-1', 5, 'HTTP 500', 500)
        assert delivery_store.reset_for_reprocess('d-1')
        stored = delivery_store.get_delivery('d-1')
        assert stored.status == DeliveryStatus.PENDING.value
        assert stored.attempts == 0
        assert stored.error is None
