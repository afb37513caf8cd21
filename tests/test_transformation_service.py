"""
Tests for the job state machine run by the transformation worker.
"""

import pytest

from backend.models.job import JobStatus
from services.transformation_service import (
    TransformationService,
    decode_file_payload,
    encode_file_payload,
    output_file_name,
)
from tasks.queue import DELIVER_WEBHOOK_TASK


DELETE_AGE = [{'id': 'r1', 'type': 'DELETE_COLUMNS', 'params': {'columns': ['Age']}}]


@pytest.fixture
def stages():
    return []


@pytest.fixture
def service(services, stages):
    return services.transformation_service(lambda stage, percent, message: stages.append((stage, percent)))


def submit(services, rules, file_name='people.csv', callback_url=None, max_attempts=3):
    configuration = services.job_store.create_configuration('org_1', 'Test config', rules)
    return services.job_store.create_job('org_1', configuration.id, file_name, 100,
                                         callback_url=callback_url, max_attempts=max_attempts)


class TestPayloadHelpers:
    """Queue payload encoding and output naming."""

    def test_round_trip(self):
        assert decode_file_payload(encode_file_payload(b'a,b\n')) == b'a,b\n'

    def test_invalid_base64(self):
        with pytest.raises(ValueError):
            decode_file_payload('not base64!!')

    def test_output_name(self):
        assert output_file_name('Report Q1.xlsx') == 'Report Q1_transformed.csv'
        assert output_file_name(None) == 'output_transformed.csv'


class TestProcess:
    """End-to-end job execution."""

    def test_completed(self, services, service, stages, people_csv):
        job = submit(services, DELETE_AGE)
        result = service.process(job.id, encode_file_payload(people_csv))

        assert result['status'] == 'completed'
        assert result['output_file_key'] == f'org_1/{job.id}/people_transformed.csv'
        assert services.storage.get(result['output_file_key']) == b'Name,City\nJohn,NY\nJane,Chicago'

        stored = services.job_store.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED.value
        assert stored.attempts == 1
        assert stored.configuration_snapshot['version'] == 1
        assert stored.result_metadata['output_columns'] == 2
        assert any('Deleted 1 columns' in line for line in stored.execution_log)

        assert [stage for stage, _ in stages] == [
            'started', 'input', 'configuration', 'transformed', 'uploaded', 'completed',
        ]
        assert [percent for _, percent in stages] == [10, 20, 30, 70, 90, 100]

    def test_progress_checkpoints_not_required(self, services, people_csv):
        service = TransformationService(services.job_store, services.storage)
        job = submit(services, DELETE_AGE)
        assert service.process(job.id, encode_file_payload(people_csv))['status'] == 'completed'

    def test_rule_failure(self, services, service, stages, queue, people_csv):
        job = submit(services, [{'type': 'VALIDATE_COLUMNS', 'params': {'numOfColumns': 5}}],
                     callback_url='https://hooks.example.com/in')
        result = service.process(job.id, encode_file_payload(people_csv))

        assert result['status'] == 'failed'
        stored = services.job_store.get_job(job.id)
        assert stored.status == JobStatus.FAILED.value
        assert 'Column count mismatch. Expected 5, found 3' in stored.error_message
        assert stored.output_file_key is None
        assert stages[-1] == ('failed', 100)

        deliveries = queue.named(DELIVER_WEBHOOK_TASK)
        assert len(deliveries) == 1
        delivery = services.delivery_store.get_delivery(deliveries[0]['task_id'])
        assert delivery.event_type == 'transformation.failed'
        assert delivery.payload['status'] == 'failed'

    def test_completed_notifies(self, services, service, queue, people_csv):
        job = submit(services, DELETE_AGE, callback_url='https://hooks.example.com/in')
        service.process(job.id, encode_file_payload(people_csv))

        delivery = services.delivery_store.get_delivery(queue.named(DELIVER_WEBHOOK_TASK)[0]['task_id'])
        assert delivery.event_type == 'transformation.completed'
        assert delivery.payload['jobId'] == job.id
        assert 'downloadUrl' in delivery.payload
        assert delivery.payload['executionLog']

    def test_no_target_no_delivery(self, services, service, queue, people_csv):
        job = submit(services, DELETE_AGE)
        service.process(job.id, encode_file_payload(people_csv))
        assert queue.named(DELIVER_WEBHOOK_TASK) == []

    def test_bad_payload_fails_job(self, services, service):
        job = submit(services, DELETE_AGE)
        result = service.process(job.id, '%%%')
        assert result['status'] == 'failed'
        assert 'Invalid file payload encoding' in services.job_store.get_job(job.id).error_message

    def test_unreadable_file_fails_job(self, services, service):
        job = submit(services, DELETE_AGE, file_name='broken.xlsx')
        result = service.process(job.id, encode_file_payload(b'not a zip archive'))
        assert result['status'] == 'failed'
        assert 'broken.xlsx' in result['error']

    def test_max_attempts_exceeded(self, services, service, people_csv):
        job = submit(services, DELETE_AGE, max_attempts=2)
        services.job_store.start_job(job.id)
        services.job_store.start_job(job.id)

        result = service.process(job.id, encode_file_payload(people_csv))
        assert result == {'job_id': job.id, 'status': 'failed',
                          'error': 'Job exceeded maximum attempts (2)'}
        assert services.job_store.get_job(job.id).status == JobStatus.FAILED.value

    def test_terminal_redelivery_requests_missing_webhook(self, services, service, queue, people_csv):
        """A worker lost between completion and notify; the redelivered message sends the webhook."""
        job = submit(services, DELETE_AGE, callback_url='https://hooks.example.com/in')
        silent = TransformationService(services.job_store, services.storage, notifier=None)
        silent.process(job.id, encode_file_payload(people_csv))
        assert queue.named(DELIVER_WEBHOOK_TASK) == []

        result = service.process(job.id, encode_file_payload(people_csv))
        assert result['skipped'] is True
        assert result['status'] == 'completed'
        assert services.job_store.get_job(job.id).attempts == 1

        deliveries = queue.named(DELIVER_WEBHOOK_TASK)
        assert len(deliveries) == 1
        delivery = services.delivery_store.get_delivery(deliveries[0]['task_id'])
        assert delivery.event_type == 'transformation.completed'
        assert delivery.job_id == job.id

    def test_broker_outage_during_notify(self, services, service, queue, monkeypatch, people_csv):
        job = submit(services, DELETE_AGE, callback_url='https://hooks.example.com/in')
        enqueue = queue.enqueue

        def unavailable(task_name, payload, **kwargs):
            raise ConnectionError('broker unavailable')

        monkeypatch.setattr(queue, 'enqueue', unavailable)
        assert service.process(job.id, encode_file_payload(people_csv))['status'] == 'completed'
        assert services.delivery_store.delivery_counts()['pending'] == 1

        monkeypatch.setattr(queue, 'enqueue', enqueue)
        service.process(job.id, encode_file_payload(people_csv))
        assert len(queue.named(DELIVER_WEBHOOK_TASK)) == 1

    def test_terminal_redelivery_keeps_one_record(self, services, service, people_csv):
        job = submit(services, DELETE_AGE, callback_url='https://hooks.example.com/in')
        service.process(job.id, encode_file_payload(people_csv))
        service.process(job.id, encode_file_payload(people_csv))

        assert services.delivery_store.delivery_counts()['pending'] == 1
        assert services.job_store.get_job(job.id).attempts == 1

    def test_missing_job_skipped(self, service):
        assert service.process('missing', 'eA==') == {'job_id': 'missing', 'status': None, 'skipped': True}

    def test_snapshot_pins_configuration(self, services, service, people_csv):
        """A retried job keeps the configuration version it first loaded."""
        job = submit(services, DELETE_AGE)
        services.job_store.start_job(job.id)
        services.job_store.save_snapshot(job.id, services.job_store.get_configuration(job.configuration_id).snapshot())
        services.job_store.update_configuration(job.configuration_id, rules=[])

        result = service.process(job.id, encode_file_payload(people_csv))
        assert result['status'] == 'completed'
        assert services.storage.get(result['output_file_key']) == b'Name,City\nJohn,NY\nJane,Chicago'
        assert services.job_store.get_job(job.id).configuration_snapshot['version'] == 1
