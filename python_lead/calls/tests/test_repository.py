"""
Unit tests for tenant-scoped persistence.
"""
from datetime import timedelta

import pytest
from django.utils import timezone

from calls.models import (
    AIProcessingLog,
    AppendOnlyError,
    CallRecording,
    CRMIntegration,
    Request,
    WebhookEvent,
)
from calls.repository import (
    OFFICE_INACTIVE,
    OFFICE_NOT_FOUND,
    OFFICE_TENANT_MISMATCH,
    TenantRepository,
    classify_office_miss,
    get_active_office,
    get_active_tenant,
)


@pytest.fixture
def repo(office):
    return TenantRepository('T1')


@pytest.fixture
def call_request(repo, office):
    row, _ = repo.upsert_request('CAL1', {'call_id': 'CAL1'}, {'call_id': 'CAL1', 'recording_url': ''}, office=office)
    return row


@pytest.mark.django_db
class TestLookups:

    def test_active_tenant(self, tenant):
        assert get_active_tenant('T1') == tenant
        assert get_active_tenant('T404') is None
        assert get_active_tenant('') is None

    def test_active_office(self, office):
        assert get_active_office('T1', 'C1') == office
        assert get_active_office('T1', '') is None

    def test_classify_office_miss(self, office, other_tenant):
        assert classify_office_miss('T1', 'C404') == OFFICE_NOT_FOUND
        assert classify_office_miss('T1', 'C2') == OFFICE_TENANT_MISMATCH
        office.status = 'inactive'
        office.save()
        assert classify_office_miss('T1', 'C1') == OFFICE_INACTIVE

    def test_repository_requires_tenant(self):
        with pytest.raises(ValueError):
            TenantRepository('')


@pytest.mark.django_db
class TestUpsertRequest:

    def test_creates_request(self, repo, office):
        row, created = repo.upsert_request('CAL1', {'call_id': 'CAL1'}, {'call_id': 'CAL1'}, office=office)

        assert created is True
        assert row.request_id.startswith('req_')
        assert row.status == Request.Status.RECEIVED
        assert row.delivery_count == 1
        assert row.office == office

    def test_redelivery_is_idempotent(self, repo, office):
        first, _ = repo.upsert_request('CAL1', {'v': 1}, {'call_id': 'CAL1'}, office=office)
        second, created = repo.upsert_request('CAL1', {'v': 2}, {'call_id': 'CAL1'}, office=office)

        assert created is False
        assert second.request_id == first.request_id
        assert second.delivery_count == 2
        assert second.raw_payload == {'v': 2}
        assert Request.objects.filter(tenant_id='T1', call_id='CAL1').count() == 1

    def test_redelivery_keeps_status(self, repo, call_request, office):
        repo.advance_status(call_request.request_id, Request.Status.ENRICHING)
        row, _ = repo.upsert_request('CAL1', {'v': 2}, {'call_id': 'CAL1'}, office=office)
        assert row.status == Request.Status.ENRICHING

    def test_same_call_id_in_two_tenants(self, repo, office, other_tenant):
        mine, _ = repo.upsert_request('CAL1', {}, {'call_id': 'CAL1'}, office=office)
        theirs, created = TenantRepository('T2').upsert_request('CAL1', {}, {'call_id': 'CAL1'})

        assert created is True
        assert mine.request_id != theirs.request_id

    def test_recording_url_from_payload(self, repo, office):
        row, _ = repo.upsert_request('CAL9', {}, {'call_id': 'CAL9', 'recording_url': 'https://x/rec.mp3'}, office=office)
        assert row.recording_url == 'https://x/rec.mp3'


@pytest.mark.django_db
class TestTenantIsolation:

    def test_other_tenant_cannot_read(self, call_request, other_tenant):
        other = TenantRepository('T2')
        with pytest.raises(Request.DoesNotExist):
            other.get_request(call_request.request_id)
        assert other.get_request_by_call('CAL1') is None
        assert other.list_requests() == []

    def test_other_tenant_cannot_write(self, call_request, other_tenant):
        other = TenantRepository('T2')
        assert other.advance_status(call_request.request_id, Request.Status.ENRICHING) is False
        assert other.update_request_fields(call_request.request_id, lead_score=99) is False
        assert other.mark_failed(call_request.request_id, 'enrichment', 'nope') is False

        call_request.refresh_from_db()
        assert call_request.status == Request.Status.RECEIVED
        assert call_request.lead_score is None


@pytest.mark.django_db
class TestStatusTransitions:

    def test_forward_path(self, repo, call_request):
        request_id = call_request.request_id
        assert repo.advance_status(request_id, Request.Status.ENRICHING) is True
        assert repo.advance_status(request_id, Request.Status.ANALYZED, lead_score=87) is True
        assert repo.advance_status(request_id, Request.Status.SYNCED) is True

        row = repo.get_request(request_id)
        assert row.status == Request.Status.SYNCED
        assert row.lead_score == 87

    def test_cannot_skip_a_status(self, repo, call_request):
        assert repo.advance_status(call_request.request_id, Request.Status.ANALYZED) is False
        assert repo.get_request(call_request.request_id).status == Request.Status.RECEIVED

    def test_cannot_move_backwards(self, repo, call_request):
        repo.advance_status(call_request.request_id, Request.Status.ENRICHING)
        repo.advance_status(call_request.request_id, Request.Status.ANALYZED)
        assert repo.advance_status(call_request.request_id, Request.Status.ENRICHING) is False

    def test_second_claim_loses(self, repo, call_request):
        assert repo.advance_status(call_request.request_id, Request.Status.ENRICHING) is True
        assert repo.advance_status(call_request.request_id, Request.Status.ENRICHING) is False

    def test_received_is_not_a_target(self, repo, call_request):
        with pytest.raises(ValueError):
            repo.advance_status(call_request.request_id, Request.Status.RECEIVED)

    def test_synced_is_terminal(self, repo, call_request):
        for status in (Request.Status.ENRICHING, Request.Status.ANALYZED, Request.Status.SYNCED):
            repo.advance_status(call_request.request_id, status)
        assert repo.mark_failed(call_request.request_id, 'crm_sync', 'late failure') is False

    def test_mark_failed(self, repo, call_request):
        repo.record_webhook_event('CAL1', 'corr-1', 'hash', request=call_request)

        assert repo.mark_failed(call_request.request_id, 'enrichment', 'x' * 5000) is True

        row = repo.get_request(call_request.request_id)
        assert row.status == Request.Status.FAILED
        assert row.failure_stage == 'enrichment'
        assert len(row.failure_reason) == 2000
        assert row.needs_manual_review is True
        assert WebhookEvent.objects.get(correlation_id='corr-1').processing_status == WebhookEvent.ProcessingStatus.FAILED

    def test_failed_is_terminal_for_pipeline(self, repo, call_request):
        repo.mark_failed(call_request.request_id, 'enrichment', 'boom')
        assert repo.advance_status(call_request.request_id, Request.Status.ENRICHING) is False

    def test_reopen_failed(self, repo, call_request):
        repo.mark_failed(call_request.request_id, 'enrichment', 'boom')

        assert repo.reopen_failed(call_request.request_id) is True

        row = repo.get_request(call_request.request_id)
        assert row.status == Request.Status.RECEIVED
        assert row.processing_round == 2
        assert row.failure_reason is None
        assert row.needs_manual_review is False

    def test_reopen_only_failed(self, repo, call_request):
        assert repo.reopen_failed(call_request.request_id) is False

    def test_update_fields_rejects_status(self, repo, call_request):
        with pytest.raises(ValueError):
            repo.update_request_fields(call_request.request_id, status=Request.Status.SYNCED)

    def test_fail_stale_requests(self, repo, call_request, office):
        fresh, _ = repo.upsert_request('CAL2', {}, {'call_id': 'CAL2'}, office=office)
        Request.objects.filter(pk=call_request.pk).update(updated_at=timezone.now() - timedelta(hours=7))

        expired = repo.fail_stale_requests(timezone.now() - timedelta(hours=6), 'processing exceeded 21600s')

        assert expired == [call_request.request_id]
        row = repo.get_request(call_request.request_id)
        assert row.status == Request.Status.FAILED
        assert row.failure_stage == Request.Status.RECEIVED
        assert repo.get_request(fresh.request_id).status == Request.Status.RECEIVED


@pytest.mark.django_db
class TestWebhookEvents:

    def test_one_event_per_delivery(self, repo, call_request):
        repo.record_webhook_event('CAL1', 'corr-1', 'hash-1', request=call_request)
        repo.record_webhook_event('CAL1', 'corr-2', 'hash-1', request=call_request)
        assert WebhookEvent.objects.filter(tenant_id='T1', call_id='CAL1').count() == 2

    def test_events_only_move_forward(self, repo, call_request):
        repo.record_webhook_event('CAL1', 'corr-1', 'hash', request=call_request)
        assert repo.advance_webhook_events(call_request.request_id, WebhookEvent.ProcessingStatus.COMPLETED) == 1
        assert repo.advance_webhook_events(call_request.request_id, WebhookEvent.ProcessingStatus.PROCESSING) == 0
        assert repo.advance_webhook_events(call_request.request_id, WebhookEvent.ProcessingStatus.FAILED) == 0


@pytest.mark.django_db
class TestRecordingsAndLogs:

    def test_upsert_call_recording(self, repo, call_request):
        repo.upsert_call_recording(call_request, storage_url='T1/calls/CAL1.mp3', size_bytes=10)
        recording = repo.upsert_call_recording(call_request, storage_url='T1/calls/CAL1.mp3', size_bytes=20)

        assert recording.size_bytes == 20
        assert recording.recording_id.startswith('rec_')
        assert CallRecording.objects.filter(tenant_id='T1', call_id='CAL1').count() == 1

    def test_update_recording_status(self, repo, call_request):
        repo.upsert_call_recording(call_request, storage_url='T1/calls/CAL1.mp3', size_bytes=10)
        assert repo.update_recording_status('CAL1', CallRecording.TranscriptionStatus.COMPLETED) is True
        assert repo.get_call_recording('CAL1').transcription_status == CallRecording.TranscriptionStatus.COMPLETED

    def test_ai_logs_are_append_only(self, repo, call_request):
        log = repo.log_ai_processing(
            call_request,
            AIProcessingLog.AnalysisType.CONTENT,
            AIProcessingLog.Status.SUCCESS,
            processing_data={'result': {'lead_score': 87}},
        )
        assert log.log_id.startswith('proc_')

        log.status = AIProcessingLog.Status.FAILED
        with pytest.raises(AppendOnlyError):
            log.save()


@pytest.mark.django_db
class TestCRMIntegrationHealth:

    @pytest.fixture
    def integration(self, tenant):
        return CRMIntegration.objects.create(tenant=tenant, crm_type='hubspot', config={'api_key': 'k'})

    def test_degrades_after_threshold(self, repo, integration):
        results = [repo.record_crm_sync_failure(integration.integration_id, 'HTTP 500', degraded_threshold=3)
                   for _ in range(3)]

        assert results == [False, False, True]
        integration.refresh_from_db()
        assert integration.status == CRMIntegration.Status.DEGRADED
        assert integration.consecutive_failures == 3
        assert integration.attempt_count == 3
        assert integration.sync_status == CRMIntegration.SyncStatus.ERROR
        assert integration.last_error == 'HTTP 500'

    def test_success_restores_degraded(self, repo, integration):
        for _ in range(3):
            repo.record_crm_sync_failure(integration.integration_id, 'HTTP 500', degraded_threshold=3)

        repo.record_crm_sync_success(integration.integration_id)

        integration.refresh_from_db()
        assert integration.status == CRMIntegration.Status.ACTIVE
        assert integration.consecutive_failures == 0
        assert integration.sync_status == CRMIntegration.SyncStatus.SUCCESS
        assert integration.last_success_at is not None

    def test_disabled_integrations_hidden(self, repo, integration, tenant):
        CRMIntegration.objects.create(tenant=tenant, crm_type='salesforce', status=CRMIntegration.Status.DISABLED)
        assert [i.crm_type for i in repo.list_crm_integrations()] == ['hubspot']
        assert len(repo.list_crm_integrations(include_disabled=True)) == 2

    def test_record_crm_sync_result(self, repo, call_request):
        repo.record_crm_sync_result(call_request.request_id, 'hubspot', 'hs-1', processing_round=1)
        repo.record_crm_sync_result(call_request.request_id, 'webhook', 'wh-1', processing_round=1)

        crm_sync = repo.get_request(call_request.request_id).crm_sync
        assert crm_sync['hubspot']['external_id'] == 'hs-1'
        assert crm_sync['webhook']['round'] == 1
