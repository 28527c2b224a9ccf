"""
Tenant-scoped persistence for the call pipeline.

Every query issued here filters on ``tenant_id``. Status changes are narrow
conditional updates (``UPDATE ... WHERE status IN (...)``) so concurrent
workers can never move a row backwards.
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from calls.models import (
    AIProcessingLog,
    CallRecording,
    CRMIntegration,
    Office,
    Request,
    STATUS_PREDECESSORS,
    Tenant,
    WEBHOOK_EVENT_PREDECESSORS,
    WebhookEvent,
)

logger = logging.getLogger(__name__)

FAILURE_REASON_MAX_LENGTH = 2000

OFFICE_NOT_FOUND = 'not_found'
OFFICE_INACTIVE = 'office_inactive'
OFFICE_TENANT_MISMATCH = 'tenant_mismatch'


def get_active_tenant(tenant_id: str) -> Optional[Tenant]:
    """Return the tenant if it exists and is active."""
    if not tenant_id:
        return None
    return Tenant.objects.filter(tenant_id=tenant_id, status=Tenant.Status.ACTIVE).first()


def get_active_office(tenant_id: str, external_company_id: str) -> Optional[Office]:
    """
    Authorization gate for tenant resolution: the unique active office of an
    active tenant linked to the external company id.
    """
    if not tenant_id or not external_company_id:
        return None
    return (
        Office.objects.select_related('tenant')
        .filter(
            tenant_id=tenant_id,
            external_company_id=external_company_id,
            status=Office.Status.ACTIVE,
            tenant__status=Tenant.Status.ACTIVE,
        )
        .first()
    )


def classify_office_miss(tenant_id: str, external_company_id: str) -> str:
    """
    Explain why ``get_active_office`` found nothing. Only existence is
    checked; no row from another tenant is returned.
    """
    if Office.objects.filter(tenant_id=tenant_id, external_company_id=external_company_id).exists():
        return OFFICE_INACTIVE
    if (
        Office.objects.filter(external_company_id=external_company_id, status=Office.Status.ACTIVE)
        .exclude(tenant_id=tenant_id)
        .exists()
    ):
        return OFFICE_TENANT_MISMATCH
    return OFFICE_NOT_FOUND


class TenantRepository:
    """All reads and writes for one tenant."""

    def __init__(self, tenant_id: str):
        if not tenant_id:
            raise ValueError("tenant_id is required")
        self.tenant_id = tenant_id

    def _requests(self):
        return Request.objects.filter(tenant_id=self.tenant_id)

    # Requests

    def upsert_request(
        self,
        call_id: str,
        raw_payload: dict,
        normalized_payload: Optional[dict] = None,
        office: Optional[Office] = None,
        source: str = 'callrail',
    ) -> Tuple[Request, bool]:
        """
        Create the request for ``call_id`` or record a redelivery of it.

        Returns:
            Tuple of (request, created). On redelivery the stored payloads are
            replaced by the latest delivery and ``delivery_count`` is incremented.
        """
        defaults = {
            'office': office,
            'source': source,
            'raw_payload': raw_payload,
            'normalized_payload': normalized_payload,
            'recording_url': (normalized_payload or {}).get('recording_url') or None,
        }
        try:
            with transaction.atomic():
                request, created = Request.objects.get_or_create(
                    tenant_id=self.tenant_id,
                    call_id=call_id,
                    defaults=defaults,
                )
        except IntegrityError:
            # Concurrent delivery won the insert
            request, created = self._requests().get(call_id=call_id), False

        if created:
            logger.info(f"Request {request.request_id} created for tenant={self.tenant_id} call={call_id}")
            return request, True

        updates = {
            'delivery_count': F('delivery_count') + 1,
            'raw_payload': raw_payload,
            'updated_at': timezone.now(),
        }
        if normalized_payload is not None:
            updates['normalized_payload'] = normalized_payload
            if normalized_payload.get('recording_url'):
                updates['recording_url'] = normalized_payload['recording_url']
        self._requests().filter(pk=request.pk).update(**updates)
        request.refresh_from_db()
        logger.info(
            f"Request {request.request_id} redelivered for tenant={self.tenant_id} call={call_id} "
            f"(delivery {request.delivery_count}, status {request.status})"
        )
        return request, False

    def get_request(self, request_id: str) -> Request:
        return self._requests().select_related('office').get(request_id=request_id)

    def get_request_by_call(self, call_id: str) -> Optional[Request]:
        return self._requests().filter(call_id=call_id).first()

    def list_requests(self, status: Optional[str] = None, limit: Optional[int] = 100) -> List[Request]:
        queryset = self._requests()
        if status:
            queryset = queryset.filter(status=status)
        return list(queryset[:limit])

    def advance_status(self, request_id: str, target: str, **fields) -> bool:
        """
        Move a request forward to ``target`` and write ``fields`` in the same
        statement. Returns False if the request was not in an allowed
        predecessor status.
        """
        predecessors = STATUS_PREDECESSORS.get(target)
        if predecessors is None:
            raise ValueError(f"{target!r} is not a forward request status")
        updated = self._requests().filter(
            request_id=request_id,
            status__in=predecessors,
        ).update(status=target, updated_at=timezone.now(), **fields)
        if updated:
            logger.debug(f"Request {request_id} (tenant={self.tenant_id}) -> {target}")
        else:
            logger.debug(f"Request {request_id} (tenant={self.tenant_id}) not moved to {target}")
        return bool(updated)

    def mark_failed(self, request_id: str, stage: str, reason: str, manual_review: bool = True) -> bool:
        failed = self.advance_status(
            request_id,
            Request.Status.FAILED,
            failure_stage=stage,
            failure_reason=str(reason)[:FAILURE_REASON_MAX_LENGTH],
            needs_manual_review=manual_review,
        )
        if failed:
            self.advance_webhook_events(request_id, WebhookEvent.ProcessingStatus.FAILED)
            logger.error(f"Request {request_id} (tenant={self.tenant_id}) FAILED at {stage}: {reason}")
        return failed

    def reopen_failed(self, request_id: str) -> bool:
        """
        Return a failed request to ``received`` for another processing round.
        Operator-only; the pipeline itself never calls this.
        """
        updated = self._requests().filter(
            request_id=request_id,
            status=Request.Status.FAILED,
        ).update(
            status=Request.Status.RECEIVED,
            processing_round=F('processing_round') + 1,
            failure_stage=None,
            failure_reason=None,
            needs_manual_review=False,
            updated_at=timezone.now(),
        )
        if updated:
            logger.info(f"Request {request_id} (tenant={self.tenant_id}) reopened for reprocessing")
        return bool(updated)

    def update_request_fields(self, request_id: str, **fields) -> bool:
        """Write result columns without touching status."""
        if 'status' in fields:
            raise ValueError("use advance_status to change request status")
        updated = self._requests().filter(request_id=request_id).update(updated_at=timezone.now(), **fields)
        return bool(updated)

    def fail_stale_requests(self, cutoff: datetime, reason: str) -> List[str]:
        """Fail requests stuck in received/enriching since before ``cutoff``."""
        stale_ids = list(
            self._requests().filter(
                status__in=(Request.Status.RECEIVED, Request.Status.ENRICHING),
                updated_at__lt=cutoff,
            ).values_list('request_id', flat=True)
        )
        expired = []
        for request_id in stale_ids:
            current = self._requests().filter(request_id=request_id).values_list('status', flat=True).first()
            if self.mark_failed(request_id, stage=current or 'unknown', reason=reason):
                expired.append(request_id)
        return expired

    # Webhook events

    def record_webhook_event(
        self,
        call_id: str,
        correlation_id: str,
        payload_hash: str,
        request: Optional[Request] = None,
        source_headers: Optional[dict] = None,
        webhook_source: str = 'callrail',
        processing_status: str = WebhookEvent.ProcessingStatus.RECEIVED,
    ) -> WebhookEvent:
        return WebhookEvent.objects.create(
            tenant_id=self.tenant_id,
            request=request,
            call_id=call_id,
            correlation_id=correlation_id,
            payload_hash=payload_hash,
            source_headers=source_headers,
            webhook_source=webhook_source,
            processing_status=processing_status,
        )

    def advance_webhook_events(self, request_id: str, target: str) -> int:
        """Move every event of a request forward to ``target``."""
        predecessors = WEBHOOK_EVENT_PREDECESSORS[target]
        return WebhookEvent.objects.filter(
            tenant_id=self.tenant_id,
            request__request_id=request_id,
            processing_status__in=predecessors,
        ).update(processing_status=target, updated_at=timezone.now())

    # Recordings

    def upsert_call_recording(self, request: Request, storage_url: str, size_bytes: int) -> CallRecording:
        defaults = {
            'request': request,
            'storage_url': storage_url,
            'size_bytes': size_bytes,
            'transcription_status': CallRecording.TranscriptionStatus.PENDING,
        }
        try:
            with transaction.atomic():
                recording, _ = CallRecording.objects.update_or_create(
                    tenant_id=self.tenant_id,
                    call_id=request.call_id,
                    defaults=defaults,
                )
        except IntegrityError:
            recording = CallRecording.objects.get(tenant_id=self.tenant_id, call_id=request.call_id)
            CallRecording.objects.filter(pk=recording.pk).update(updated_at=timezone.now(), **defaults)
            recording.refresh_from_db()
        return recording

    def update_recording_status(self, call_id: str, transcription_status: str) -> bool:
        updated = CallRecording.objects.filter(
            tenant_id=self.tenant_id,
            call_id=call_id,
        ).update(transcription_status=transcription_status, updated_at=timezone.now())
        return bool(updated)

    def get_call_recording(self, call_id: str) -> Optional[CallRecording]:
        return CallRecording.objects.filter(tenant_id=self.tenant_id, call_id=call_id).first()

    # AI processing logs

    def log_ai_processing(
        self,
        request: Request,
        analysis_type: str,
        status: str,
        processing_data: Optional[dict] = None,
        attempt_no: int = 1,
    ) -> AIProcessingLog:
        return AIProcessingLog.objects.create(
            tenant_id=self.tenant_id,
            request=request,
            analysis_type=analysis_type,
            status=status,
            attempt_no=attempt_no,
            processing_data=processing_data or {},
        )

    def list_ai_logs(self, request_id: str) -> List[AIProcessingLog]:
        return list(AIProcessingLog.objects.filter(
            tenant_id=self.tenant_id,
            request__request_id=request_id,
        ).order_by('created_at', 'id'))

    # CRM integrations

    def list_crm_integrations(self, include_disabled: bool = False) -> List[CRMIntegration]:
        queryset = CRMIntegration.objects.filter(tenant_id=self.tenant_id)
        if not include_disabled:
            queryset = queryset.exclude(status=CRMIntegration.Status.DISABLED)
        return list(queryset)

    def record_crm_sync_success(self, integration_id: str) -> None:
        now = timezone.now()
        integrations = CRMIntegration.objects.filter(tenant_id=self.tenant_id, integration_id=integration_id)
        integrations.update(
            attempt_count=F('attempt_count') + 1,
            consecutive_failures=0,
            sync_status=CRMIntegration.SyncStatus.SUCCESS,
            last_error=None,
            last_attempt_at=now,
            last_success_at=now,
            updated_at=now,
        )
        restored = integrations.filter(status=CRMIntegration.Status.DEGRADED).update(
            status=CRMIntegration.Status.ACTIVE,
        )
        if restored:
            logger.info(f"CRM integration {integration_id} (tenant={self.tenant_id}) restored to active")

    def record_crm_sync_failure(self, integration_id: str, error: str, degraded_threshold: int) -> bool:
        """
        Count a failed sync attempt. Returns True if this failure moved the
        integration to degraded.
        """
        now = timezone.now()
        integrations = CRMIntegration.objects.filter(tenant_id=self.tenant_id, integration_id=integration_id)
        integrations.update(
            attempt_count=F('attempt_count') + 1,
            consecutive_failures=F('consecutive_failures') + 1,
            sync_status=CRMIntegration.SyncStatus.ERROR,
            last_error=str(error)[:FAILURE_REASON_MAX_LENGTH],
            last_attempt_at=now,
            updated_at=now,
        )
        degraded = integrations.filter(
            status=CRMIntegration.Status.ACTIVE,
            consecutive_failures__gte=degraded_threshold,
        ).update(status=CRMIntegration.Status.DEGRADED)
        if degraded:
            logger.warning(
                f"CRM integration {integration_id} (tenant={self.tenant_id}) marked degraded "
                f"after {degraded_threshold} consecutive failures"
            )
        return bool(degraded)

    def record_crm_sync_result(self, request_id: str, crm_type: str, external_id: Optional[str],
                               processing_round: int) -> None:
        with transaction.atomic():
            request = self._requests().select_for_update().get(request_id=request_id)
            crm_sync = dict(request.crm_sync or {})
            crm_sync[crm_type] = {
                'external_id': external_id,
                'synced_at': timezone.now().isoformat(),
                'round': processing_round,
            }
            self._requests().filter(pk=request.pk).update(crm_sync=crm_sync, updated_at=timezone.now())
