"""
Tests for webhook target resolution, signing, payloads and idempotent
delivery requests.
"""

import time
from datetime import datetime
from types import SimpleNamespace

import pytest
import requests

from services.errors import WebhookDeliveryError, WebhookValidationError
from services.webhook_service import (
    DELIVERY_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    SIGNATURE_TOLERANCE_SECONDS,
    TIMESTAMP_HEADER,
    DeliveryResolver,
    RetryPolicy,
    WebhookSender,
    build_payload,
    compute_idempotency_key,
    delivery_id_for,
    serialize_payload,
    sign_payload,
    validate_webhook_url,
    verify_signature,
)
from tasks.queue import DELIVER_WEBHOOK_TASK


def finished_job(services, status='completed', callback_url=None, configuration_id=None):
    if configuration_id is None:
        configuration_id = services.job_store.create_configuration('org_1', 'Config', []).id
    job = services.job_store.create_job('org_1', configuration_id, 'people.csv', 10,
                                        callback_url=callback_url, uid='user-7')
    services.job_store.start_job(job.id)
    if status == 'completed':
        services.job_store.complete_job(job.id, 'http://testserver/files/x', f'org_1/{job.id}/out.csv',
                                        ['Transformation completed'])
    else:
        services.job_store.fail_job(job.id, 'Rule 1 (DELETE_ROWS) failed: boom', ['Job failed'])
    return services.job_store.get_job(job.id)


class TestValidateWebhookUrl:
    """Acceptable webhook targets."""

    def test_valid(self):
        assert validate_webhook_url(' https://hooks.example.com/in ') == 'https://hooks.example.com/in'

    @pytest.mark.parametrize('url', ['ftp://example.com', 'hooks.example.com', 'https://'])
    def test_invalid(self, url):
        with pytest.raises(WebhookValidationError):
            validate_webhook_url(url)

    def test_localhost(self):
        assert validate_webhook_url('http://localhost:8080/hook')
        with pytest.raises(WebhookValidationError):
            validate_webhook_url('http://127.0.0.1/hook', allow_localhost=False)
        with pytest.raises(WebhookValidationError):
            validate_webhook_url('http://api.localhost/hook', allow_localhost=False)


class TestSigning:
    """HMAC signatures over timestamp and body."""

    def test_sign_format(self):
        signature = sign_payload('secret', 1700000000, '{}')
        assert signature.startswith('sha256=')
        assert len(signature) == len('sha256=') + 64

    def test_verify(self):
        now = time.time()
        body = serialize_payload({'jobId': 'j1'})
        signature = sign_payload('secret', int(now), body)
        assert verify_signature('secret', body, str(int(now)), signature, now=now)
        assert not verify_signature('other', body, str(int(now)), signature, now=now)
        assert not verify_signature('secret', body + ' ', str(int(now)), signature, now=now)

    def test_tolerance(self):
        body = '{}'
        signature = sign_payload('secret', 1000, body)
        assert verify_signature('secret', body, '1000', signature, now=1200)
        assert not verify_signature('secret', body, '1000', signature, now=1400)
        assert not verify_signature('secret', body, 'not-a-number', signature, now=1000)

    def test_default_window(self):
        body = '{}'
        signature = sign_payload('secret', 1000, body)
        assert SIGNATURE_TOLERANCE_SECONDS == 300
        assert verify_signature('secret', body, '1000', signature, now=1000 + SIGNATURE_TOLERANCE_SECONDS)
        assert not verify_signature('secret', body, '1000', signature,
                                    now=1000 + SIGNATURE_TOLERANCE_SECONDS + 1)

    def test_canonical_body(self):
        assert serialize_payload({'b': 1, 'a': [1, 2]}) == '{"a":[1,2],"b":1}'


class TestIdempotencyKey:
    """Keys identify one logical event."""

    def test_stable(self):
        first = compute_idempotency_key('org', 'cfg', 'transformation.completed', 'job', 'completed')
        second = compute_idempotency_key('org', 'cfg', 'transformation.completed', 'job', 'completed')
        assert first == second
        assert len(first) == 64
        assert delivery_id_for(first) == delivery_id_for(second)

    def test_outcome_changes_key(self):
        completed = compute_idempotency_key('org', 'cfg', 'transformation.completed', 'job', 'completed')
        failed = compute_idempotency_key('org', 'cfg', 'transformation.failed', 'job', 'failed')
        assert completed != failed


class TestRetryPolicy:
    """Exponential schedule."""

    def test_delays(self):
        policy = RetryPolicy(max_attempts=5, backoff_base=2)
        assert [policy.delay_for(n) for n in range(1, 5)] == [2, 4, 8, 16]
        assert policy.should_retry(4)
        assert not policy.should_retry(5)


class TestBuildPayload:
    """Outcome payload fields."""

    def test_completed(self, services):
        job = finished_job(services)
        payload = build_payload(job, 'http://testserver/files/x?sig=1')
        assert payload['jobId'] == job.id
        assert payload['status'] == 'completed'
        assert payload['downloadUrl'] == 'http://testserver/files/x?sig=1'
        assert payload['executionLog'] == ['Transformation completed']
        assert payload['uid'] == 'user-7'
        assert payload['originalFileName'] == 'people.csv'
        assert 'error' not in payload

    def test_failed(self, services):
        job = finished_job(services, status='failed')
        payload = build_payload(job)
        assert payload['status'] == 'failed'
        assert payload['error'] == 'Rule 1 (DELETE_ROWS) failed: boom'
        assert 'executionLog' not in payload
        assert 'downloadUrl' not in payload


class TestDeliveryResolver:
    """Target priority chain."""

    @pytest.fixture
    def resolver(self, job_store):
        return DeliveryResolver(job_store)

    def test_request_url_wins(self, job_store, resolver):
        webhook = job_store.create_webhook('org_1', 'hook', 'https://org.example.com', is_default=True)
        configuration = job_store.create_configuration('org_1', 'c', [], webhook_id=webhook.id,
                                                       callback_url='https://legacy.example.com')
        target = resolver.resolve('org_1', configuration.id, 'https://request.example.com')
        assert target.url == 'https://request.example.com'
        assert target.source == 'request'
        assert target.secret is None

    def test_configuration_webhook(self, job_store, resolver):
        webhook = job_store.create_webhook('org_1', 'hook', 'https://cfg-hook.example.com', secret='s3cret')
        configuration = job_store.create_configuration('org_1', 'c', [], webhook_id=webhook.id,
                                                       callback_url='https://legacy.example.com')
        target = resolver.resolve('org_1', configuration.id)
        assert target.source == 'configuration_webhook'
        assert target.secret == 's3cret'
        assert target.organization_webhook_id == webhook.id

    def test_configuration_callback(self, job_store, resolver):
        job_store.create_webhook('org_1', 'default', 'https://default.example.com', is_default=True)
        configuration = job_store.create_configuration('org_1', 'c', [],
                                                       callback_url='https://legacy.example.com')
        target = resolver.resolve('org_1', configuration.id, '  ')
        assert target.url == 'https://legacy.example.com'
        assert target.source == 'configuration'

    def test_organization_default(self, job_store, resolver):
        job_store.create_webhook('org_1', 'default', 'https://default.example.com', is_default=True)
        configuration = job_store.create_configuration('org_1', 'c', [])
        target = resolver.resolve('org_1', configuration.id)
        assert target.url == 'https://default.example.com'
        assert target.source == 'organization_default'

    def test_invalid_candidate_skipped(self, job_store, resolver):
        job_store.create_webhook('org_1', 'default', 'https://default.example.com', is_default=True)
        target = resolver.resolve('org_1', None, 'not a url')
        assert target.source == 'organization_default'

    def test_nothing_configured(self, job_store, resolver):
        configuration = job_store.create_configuration('org_1', 'c', [])
        assert resolver.resolve('org_1', configuration.id) is None
        assert resolver.resolve('org_1', 'missing-config') is None


class TestWebhookSender:
    """Single HTTP attempts."""

    @pytest.fixture
    def delivery(self):
        return SimpleNamespace(id='d-1', job_id='job-1', event_type='transformation.completed',
                               target_url='https://hooks.example.com/in', payload={'jobId': 'job-1'})

    def test_success_headers(self, delivery, make_session):
        session = make_session(200)
        status, headers = WebhookSender(session=session, timeout=5).send(delivery, secret='s3cret')
        assert status == 200
        assert headers[EVENT_HEADER] == 'transformation.completed'
        assert headers[DELIVERY_HEADER] == 'd-1'

        kwargs = session.post.call_args.kwargs
        assert kwargs['timeout'] == 5
        body = kwargs['data'].decode('utf-8')
        assert verify_signature('s3cret', body, headers[TIMESTAMP_HEADER], headers[SIGNATURE_HEADER])

    def test_unsigned_without_secret(self, delivery, make_session):
        _, headers = WebhookSender(session=make_session(204)).send(delivery)
        assert SIGNATURE_HEADER not in headers

    def test_http_error(self, delivery, make_session):
        with pytest.raises(WebhookDeliveryError) as exc_info:
            WebhookSender(session=make_session(500)).send(delivery)
        assert exc_info.value.status_code == 500

    @pytest.mark.parametrize('error', [requests.Timeout('slow'), requests.ConnectionError('refused')])
    def test_network_errors(self, delivery, error, make_session):
        with pytest.raises(WebhookDeliveryError) as exc_info:
            WebhookSender(session=make_session(error)).send(delivery)
        assert exc_info.value.status_code is None


class TestNotifyJobOutcome:
    """Delivery records and enqueues."""

    def test_creates_and_enqueues(self, services, queue):
        job = finished_job(services, callback_url='https://hooks.example.com/in')
        delivery = services.webhook_service.notify_job_outcome(job.id)

        assert delivery.status == 'pending'
        assert delivery.target_url == 'https://hooks.example.com/in'
        assert delivery.payload['downloadUrl'].startswith(f'http://testserver/files/org_1/{job.id}/out.csv?')
        assert 'expiresAt' in delivery.payload

        entries = queue.named(DELIVER_WEBHOOK_TASK)
        assert entries == [{
            'task_name': DELIVER_WEBHOOK_TASK,
            'payload': {'delivery_id': delivery.id},
            'task_id': delivery.id,
            'attempts': None,
            'countdown': None,
        }]

    def test_duplicate_requests_collapse(self, services, queue):
        job = finished_job(services, callback_url='https://hooks.example.com/in')
        first = services.webhook_service.notify_job_outcome(job.id)
        second = services.webhook_service.notify_job_outcome(job.id)

        assert first.id == second.id
        assert {entry['task_id'] for entry in queue.named(DELIVER_WEBHOOK_TASK)} == {first.id}
        assert services.delivery_store.delivery_counts()['pending'] == 1

    def test_failed_enqueue_recovered_by_next_request(self, services, queue, monkeypatch):
        job = finished_job(services, callback_url='https://hooks.example.com/in')
        enqueue = queue.enqueue
        failures = []

        def enqueue_after_outage(task_name, payload, **kwargs):
            if not failures:
                failures.append(task_name)
                raise ConnectionError('broker unavailable')
            return enqueue(task_name, payload, **kwargs)

        monkeypatch.setattr(queue, 'enqueue', enqueue_after_outage)

        with pytest.raises(ConnectionError):
            services.webhook_service.notify_job_outcome(job.id)
        assert queue.named(DELIVER_WEBHOOK_TASK) == []
        assert services.delivery_store.delivery_counts()['pending'] == 1

        delivery = services.webhook_service.notify_job_outcome(job.id)
        entries = queue.named(DELIVER_WEBHOOK_TASK)
        assert len(entries) == 1
        assert entries[0]['task_id'] == delivery.id
        assert entries[0]['payload'] == {'delivery_id': delivery.id}

    def test_no_enqueue_once_attempted(self, services, queue):
        job = finished_job(services, callback_url='https://hooks.example.com/in')
        delivery = services.webhook_service.notify_job_outcome(job.id)
        services.delivery_store.record_failure(delivery.id, 1, 'Webhook returned HTTP 500', 500,
                                               datetime.utcnow())
        services.webhook_service.notify_job_outcome(job.id)

        services.delivery_store.mark_success(delivery.id, 2, 200)
        services.webhook_service.notify_job_outcome(job.id)

        assert len(queue.named(DELIVER_WEBHOOK_TASK)) == 1

    def test_no_target(self, services, queue):
        job = finished_job(services)
        assert services.webhook_service.notify_job_outcome(job.id) is None
        assert queue.enqueued == []

    def test_non_terminal_job(self, services, queue):
        configuration = services.job_store.create_configuration('org_1', 'Config', [])
        job = services.job_store.create_job('org_1', configuration.id, 'a.csv', 1,
                                            callback_url='https://hooks.example.com/in')
        assert services.webhook_service.notify_job_outcome(job.id) is None
        assert queue.enqueued == []

    def test_organization_webhook_touched(self, services):
        webhook = services.job_store.create_webhook('org_1', 'default', 'https://default.example.com',
                                                    secret='s3cret', is_default=True)
        job = finished_job(services, status='failed')
        delivery = services.webhook_service.notify_job_outcome(job.id)

        assert delivery.organization_webhook_id == webhook.id
        assert delivery.event_type == 'transformation.failed'
        assert services.job_store.get_webhook(webhook.id).last_used_at is not None
