"""
Unit tests for webhook API views.
"""
import json
import time
from unittest.mock import patch

import pytest

from calls.models import Office, Request, WebhookEvent
from calls.tests.fakes import sign


@pytest.mark.django_db
class TestCallWebhookView:
    """Tests for CallWebhookView."""

    @patch('calls.views.enrich_request')
    def test_successful_call_submission(self, mock_enrich, post_webhook, office, call_payload):
        """Test a signed webhook returns 200 OK and enqueues enrichment."""
        response = post_webhook(call_payload)

        assert response.status_code == 200
        assert response.data['status'] == 'accepted'
        assert response.data['duplicate'] is False
        assert 'correlation_id' in response.data

        call_request = Request.objects.get(request_id=response.data['request_id'])
        assert call_request.tenant_id == 'T1'
        assert call_request.office_id == office.pk
        assert call_request.status == Request.Status.RECEIVED
        assert call_request.raw_payload == call_payload
        assert call_request.normalized_payload['customer_phone_number'] == '+15555550100'
        assert call_request.normalized_payload['first_name'] == 'Jane'
        assert call_request.normalized_payload['answered'] is True

        event = WebhookEvent.objects.get(correlation_id=response.data['correlation_id'])
        assert event.request_id == call_request.pk
        assert event.processing_status == WebhookEvent.ProcessingStatus.RECEIVED
        assert event.source_headers['content-type'] == 'application/json'

        mock_enrich.delay.assert_called_once_with('T1', call_request.request_id)

    @patch('calls.views.enrich_request')
    def test_redelivery_is_duplicate(self, mock_enrich, post_webhook, office, call_payload):
        first = post_webhook(call_payload)
        second = post_webhook(call_payload)

        assert second.status_code == 200
        assert second.data['duplicate'] is True
        assert second.data['request_id'] == first.data['request_id']
        assert second.data['correlation_id'] != first.data['correlation_id']
        assert Request.objects.count() == 1
        assert Request.objects.get().delivery_count == 2
        assert WebhookEvent.objects.count() == 2
        # Still received, so the redelivery re-enqueues
        assert mock_enrich.delay.call_count == 2

    @patch('calls.views.enrich_request')
    def test_redelivery_of_processed_call_not_reenqueued(self, mock_enrich, post_webhook, office, call_payload):
        first = post_webhook(call_payload)
        Request.objects.filter(request_id=first.data['request_id']).update(status=Request.Status.ANALYZED)

        second = post_webhook(call_payload)

        assert second.data['duplicate'] is True
        assert mock_enrich.delay.call_count == 1
        event = WebhookEvent.objects.get(correlation_id=second.data['correlation_id'])
        assert event.processing_status == WebhookEvent.ProcessingStatus.COMPLETED

    @patch('calls.views.enrich_request')
    def test_enqueue_failure_still_accepts(self, mock_enrich, post_webhook, office, call_payload):
        mock_enrich.delay.side_effect = ConnectionError("broker down")

        response = post_webhook(call_payload)

        assert response.status_code == 200
        assert Request.objects.get().status == Request.Status.RECEIVED


@pytest.mark.django_db
class TestWebhookRejections:
    """Tests for webhooks rejected before anything is stored."""

    @pytest.fixture(autouse=True)
    def no_enqueue(self):
        with patch('calls.views.enrich_request') as mock_enrich:
            yield mock_enrich

    def _assert_nothing_stored(self, no_enqueue):
        assert Request.objects.count() == 0
        assert WebhookEvent.objects.count() == 0
        no_enqueue.delay.assert_not_called()

    def test_malformed_json_returns_400(self, client, office, no_enqueue):
        response = client.post('/webhooks/calls/', data=b'{not json', content_type='application/json')

        assert response.status_code == 400
        assert response.json()['error'] == 'Malformed JSON'
        assert 'correlation_id' in response.json()
        self._assert_nothing_stored(no_enqueue)

    def test_empty_payload_returns_400(self, post_webhook, office, no_enqueue):
        response = post_webhook({})

        assert response.status_code == 400
        assert response.data['error'] == 'Empty payload'
        self._assert_nothing_stored(no_enqueue)

    def test_missing_tenant_returns_400(self, post_webhook, office, call_payload, no_enqueue):
        del call_payload['tenant_id']

        response = post_webhook(call_payload)

        assert response.status_code == 400
        self._assert_nothing_stored(no_enqueue)

    @pytest.mark.parametrize('field', ['call_id', 'callrail_company_id', 'caller_id', 'duration'])
    def test_missing_required_field_returns_400(self, post_webhook, office, call_payload, no_enqueue, field):
        del call_payload[field]

        response = post_webhook(call_payload)

        assert response.status_code == 400
        assert response.data['error'] == 'Invalid payload'
        assert response.data['reason'] == 'MISSING_REQUIRED_FIELD'
        self._assert_nothing_stored(no_enqueue)

    def test_negative_duration_returns_400(self, post_webhook, office, call_payload, no_enqueue):
        call_payload['duration'] = -5

        response = post_webhook(call_payload)

        assert response.status_code == 400
        assert response.data['reason'] == 'INVALID_FIELD_VALUE'
        self._assert_nothing_stored(no_enqueue)

    def test_invalid_signature_returns_401(self, post_webhook, office, call_payload, no_enqueue):
        response = post_webhook(call_payload, signature='sha256=' + '0' * 64)

        assert response.status_code == 401
        assert response.data['error'] == 'Unauthorized'
        self._assert_nothing_stored(no_enqueue)

    def test_missing_signature_returns_401(self, post_webhook, office, call_payload, no_enqueue):
        response = post_webhook(call_payload, signature='')

        assert response.status_code == 401
        self._assert_nothing_stored(no_enqueue)

    def test_signature_from_other_tenant_secret_returns_401(self, post_webhook, office, other_tenant,
                                                             call_payload, no_enqueue):
        response = post_webhook(call_payload, secret='other-secret')

        assert response.status_code == 401
        self._assert_nothing_stored(no_enqueue)

    def test_unknown_tenant_returns_401(self, post_webhook, office, call_payload, no_enqueue):
        call_payload['tenant_id'] = 'T404'

        response = post_webhook(call_payload)

        assert response.status_code == 401
        self._assert_nothing_stored(no_enqueue)

    def test_stale_timestamp_returns_401(self, post_webhook, office, call_payload, no_enqueue):
        stale = str(int(time.time()) - 3600)

        response = post_webhook(call_payload, headers={'HTTP_X_WEBHOOK_TIMESTAMP': stale})

        assert response.status_code == 401
        self._assert_nothing_stored(no_enqueue)

    def test_fresh_timestamp_accepted(self, post_webhook, office, call_payload, no_enqueue):
        response = post_webhook(call_payload, headers={'HTTP_X_WEBHOOK_TIMESTAMP': str(int(time.time()))})

        assert response.status_code == 200

    def test_timestamp_not_covered_by_signature_returns_401(self, post_webhook, office, call_payload, no_enqueue):
        body = json.dumps(call_payload).encode('utf-8')
        fresh = str(int(time.time()))

        # Body-only signature replayed under a new timestamp header
        response = post_webhook(call_payload, signature=sign(body), headers={'HTTP_X_WEBHOOK_TIMESTAMP': fresh})

        assert response.status_code == 401
        self._assert_nothing_stored(no_enqueue)

    def test_unmapped_company_returns_403(self, post_webhook, office, call_payload, no_enqueue):
        call_payload['callrail_company_id'] = 'C999'

        response = post_webhook(call_payload)

        assert response.status_code == 403
        assert response.data['error'] == 'Forbidden'
        self._assert_nothing_stored(no_enqueue)

    def test_company_of_other_tenant_returns_403(self, post_webhook, office, other_tenant, call_payload, no_enqueue):
        call_payload['callrail_company_id'] = 'C2'

        response = post_webhook(call_payload)

        assert response.status_code == 403
        self._assert_nothing_stored(no_enqueue)

    def test_inactive_office_returns_403(self, post_webhook, office, call_payload, no_enqueue):
        Office.objects.filter(pk=office.pk).update(status=Office.Status.INACTIVE)

        response = post_webhook(call_payload)

        assert response.status_code == 403
        self._assert_nothing_stored(no_enqueue)

    def test_unexpected_error_returns_500(self, post_webhook, office, call_payload, no_enqueue):
        with patch('calls.views.resolve_office', side_effect=RuntimeError("database gone")):
            response = post_webhook(call_payload)

        assert response.status_code == 500
        assert response.data['error'] == 'Internal server error'
        self._assert_nothing_stored(no_enqueue)

    def test_get_not_allowed(self, client, office):
        response = client.get('/webhooks/calls/')
        assert response.status_code == 405
