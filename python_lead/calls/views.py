"""
API views for Call Gateway Service.
"""
import hashlib
import json
import logging
import uuid

from django.conf import settings
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from calls.models import Request, WebhookEvent
from calls.repository import TenantRepository, get_active_tenant
from calls.services.normalization import normalize
from calls.services.secrets import SecretNotConfigured, resolve_secret
from calls.services.signature import is_timestamp_fresh, verify_signature
from calls.services.tenants import TenantResolutionError, resolve_office
from calls.services.validation import validate_webhook
from calls.tasks import enrich_request

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger('calls.audit')

# Initial status of a delivery's event, given the request it landed on
EVENT_STATUS_FOR_REQUEST = {
    Request.Status.RECEIVED: WebhookEvent.ProcessingStatus.RECEIVED,
    Request.Status.ENRICHING: WebhookEvent.ProcessingStatus.PROCESSING,
    Request.Status.ANALYZED: WebhookEvent.ProcessingStatus.COMPLETED,
    Request.Status.SYNCED: WebhookEvent.ProcessingStatus.COMPLETED,
    Request.Status.FAILED: WebhookEvent.ProcessingStatus.FAILED,
}


def _header(request, name: str) -> str:
    return request.META.get('HTTP_' + name.upper().replace('-', '_'), '')


def _remote_addr(request) -> str:
    forwarded = request.META.get('HTTP_X_FORWARDED_FOR', '')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR', '')


def _error(message: str, correlation_id: str, http_status: int) -> Response:
    return Response({'error': message, 'correlation_id': correlation_id}, status=http_status)


@method_decorator(csrf_exempt, name='dispatch')
class CallWebhookView(APIView):
    """
    Webhook endpoint for completed calls from the call provider.

    POST /webhooks/calls/
    - Verifies the HMAC signature against the tenant's secret
    - Resolves the tenant office for the call's company
    - Creates (or records a redelivery of) the request for the call
    - Enqueues enrichment
    - Returns 200 OK with request_id and correlation_id
    """

    authentication_classes = []
    permission_classes = []

    def post(self, request):
        """
        Handle an incoming call webhook.

        Returns:
            200 OK: Call accepted (or recognised as a redelivery)
            400 Bad Request: Malformed JSON or missing required fields
            401 Unauthorized: Bad signature, stale timestamp or unknown tenant
            403 Forbidden: Company not mapped to an active office of the tenant
            500 Internal Server Error: Unexpected error
        """
        correlation_id = str(uuid.uuid4())

        try:
            return self._handle(request, correlation_id)
        except Exception as e:
            logger.error(
                f"Error processing call webhook: {e}, "
                f"correlation_id={correlation_id}",
                exc_info=True
            )
            return _error('Internal server error', correlation_id, status.HTTP_500_INTERNAL_SERVER_ERROR)

    def _handle(self, request, correlation_id: str) -> Response:
        # The signature covers the exact bytes received, so parse them ourselves
        body = request.body
        remote_addr = _remote_addr(request)

        try:
            payload = json.loads(body)
        except ValueError as e:
            logger.warning(f"Malformed JSON payload: {e}, correlation_id={correlation_id}")
            return _error('Malformed JSON', correlation_id, status.HTTP_400_BAD_REQUEST)

        if not isinstance(payload, dict) or not payload:
            logger.warning(f"Empty payload received, correlation_id={correlation_id}")
            return _error('Empty payload', correlation_id, status.HTTP_400_BAD_REQUEST)

        tenant_id = str(payload.get('tenant_id') or '')
        call_id = str(payload.get('call_id') or '')
        if not tenant_id:
            logger.warning(f"Webhook without tenant_id, correlation_id={correlation_id}")
            return _error('Invalid payload', correlation_id, status.HTTP_400_BAD_REQUEST)

        tenant = get_active_tenant(tenant_id)
        if tenant is None:
            audit_logger.warning(
                f"Rejected webhook: unknown or inactive tenant={tenant_id} call={call_id} "
                f"remote_addr={remote_addr} correlation_id={correlation_id}"
            )
            return _error('Unauthorized', correlation_id, status.HTTP_401_UNAUTHORIZED)

        try:
            secret = resolve_secret(tenant.webhook_secret)
        except SecretNotConfigured as e:
            logger.error(f"Webhook secret for tenant={tenant_id} unavailable: {e}, correlation_id={correlation_id}")
            return _error('Internal server error', correlation_id, status.HTTP_500_INTERNAL_SERVER_ERROR)

        timestamp = _header(request, settings.WEBHOOK_TIMESTAMP_HEADER)
        if not is_timestamp_fresh(timestamp, settings.WEBHOOK_REPLAY_WINDOW_SECONDS):
            audit_logger.warning(
                f"Rejected webhook: stale timestamp {timestamp!r} tenant={tenant_id} call={call_id} "
                f"remote_addr={remote_addr} correlation_id={correlation_id}"
            )
            return _error('Unauthorized', correlation_id, status.HTTP_401_UNAUTHORIZED)

        signature = _header(request, settings.WEBHOOK_SIGNATURE_HEADER)
        if not verify_signature(body, signature, secret, timestamp=timestamp):
            audit_logger.warning(
                f"Rejected webhook: invalid signature tenant={tenant_id} call={call_id} "
                f"remote_addr={remote_addr} correlation_id={correlation_id}"
            )
            return _error('Unauthorized', correlation_id, status.HTTP_401_UNAUTHORIZED)

        is_valid, rejection_reason = validate_webhook(payload)
        if not is_valid:
            logger.warning(
                f"Webhook rejected ({rejection_reason}) tenant={tenant_id} call={call_id}, "
                f"correlation_id={correlation_id}"
            )
            return Response(
                {
                    'error': 'Invalid payload',
                    'reason': rejection_reason,
                    'correlation_id': correlation_id
                },
                status=status.HTTP_400_BAD_REQUEST
            )

        normalized = normalize(payload)
        try:
            office = resolve_office(tenant_id, normalized['company_id'])
        except TenantResolutionError as e:
            audit_logger.warning(
                f"Rejected webhook: {e.reason} tenant={tenant_id} company={normalized['company_id']} "
                f"call={call_id} remote_addr={remote_addr} correlation_id={correlation_id}"
            )
            return _error('Forbidden', correlation_id, status.HTTP_403_FORBIDDEN)

        # Extract headers for audit trail
        source_headers = {
            'content-type': request.META.get('CONTENT_TYPE', ''),
            'user-agent': request.META.get('HTTP_USER_AGENT', ''),
            'x-forwarded-for': request.META.get('HTTP_X_FORWARDED_FOR', ''),
            'remote-addr': request.META.get('REMOTE_ADDR', ''),
            'timestamp': timestamp,
        }

        repo = TenantRepository(tenant_id)
        call_request, created = repo.upsert_request(
            call_id=normalized['call_id'],
            raw_payload=payload,
            normalized_payload=normalized,
            office=office,
            source=settings.WEBHOOK_SOURCE,
        )
        repo.record_webhook_event(
            call_id=normalized['call_id'],
            correlation_id=correlation_id,
            payload_hash=hashlib.sha256(body).hexdigest(),
            request=call_request,
            source_headers=source_headers,
            webhook_source=settings.WEBHOOK_SOURCE,
            processing_status=EVENT_STATUS_FOR_REQUEST[call_request.status],
        )

        logger.info(
            f"Call {call_id} for tenant={tenant_id} stored as request {call_request.request_id} "
            f"(created={created}, status={call_request.status}), correlation_id={correlation_id}"
        )

        if created or call_request.status == Request.Status.RECEIVED:
            try:
                enrich_request.delay(tenant_id, call_request.request_id)
                logger.info(
                    f"Request {call_request.request_id} enqueued for enrichment, "
                    f"correlation_id={correlation_id}"
                )
            except Exception as e:
                # Still received; a redelivery or reprocess picks it up
                logger.error(
                    f"Failed to enqueue request {call_request.request_id}: {e}, "
                    f"correlation_id={correlation_id}",
                    exc_info=True
                )

        return Response(
            {
                'status': 'accepted',
                'request_id': call_request.request_id,
                'correlation_id': correlation_id,
                'duplicate': not created
            },
            status=status.HTTP_200_OK
        )
