"""
Data models for Call Gateway Service.

Every row that belongs to a tenant references ``Tenant.tenant_id`` directly,
so ``tenant_id`` is available as a plain column filter on every table.
"""
import uuid

from django.db import models
from django.db.models import Q


def _prefixed_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4()}"


def new_request_id() -> str:
    return _prefixed_id('req')


def new_recording_id() -> str:
    return _prefixed_id('rec')


def new_event_id() -> str:
    return _prefixed_id('evt')


def new_log_id() -> str:
    return _prefixed_id('proc')


def new_integration_id() -> str:
    return _prefixed_id('integ')


def new_office_id() -> str:
    return _prefixed_id('office')


class Tenant(models.Model):
    """
    An isolated customer account. Tenants are never deleted; they are
    deactivated by moving ``status`` to INACTIVE.
    """

    class Status(models.TextChoices):
        ACTIVE = 'active', 'Active'
        INACTIVE = 'inactive', 'Inactive'

    tenant_id = models.CharField(max_length=64, unique=True)
    name = models.CharField(max_length=255)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.ACTIVE,
        db_index=True
    )
    # Either the literal secret or an ``env:NAME`` reference
    webhook_secret = models.CharField(max_length=255)
    config = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['tenant_id']

    def __str__(self):
        return f"Tenant {self.tenant_id} - {self.status}"


class Office(models.Model):
    """
    A tenant's business location, linked to one call-provider account.
    Holds the workflow configuration consumed by the enrichment pipeline.
    """

    class Status(models.TextChoices):
        ACTIVE = 'active', 'Active'
        INACTIVE = 'inactive', 'Inactive'

    office_id = models.CharField(max_length=64, unique=True, default=new_office_id)
    tenant = models.ForeignKey(
        Tenant,
        to_field='tenant_id',
        db_column='tenant_id',
        on_delete=models.PROTECT,
        related_name='offices'
    )
    name = models.CharField(max_length=255, blank=True, default='')
    external_company_id = models.CharField(max_length=64, db_index=True)
    call_provider_account_id = models.CharField(max_length=64)
    call_provider_api_key_ref = models.CharField(max_length=255)
    workflow_config = models.JSONField(default=dict, blank=True)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.ACTIVE,
        db_index=True
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['tenant_id', 'office_id']
        constraints = [
            models.UniqueConstraint(
                fields=['external_company_id', 'tenant'],
                condition=Q(status='active'),
                name='unique_active_office_per_company',
            ),
        ]

    def __str__(self):
        return f"Office {self.office_id} ({self.external_company_id}) - {self.status}"


class Request(models.Model):
    """
    The unit of work for one call, from webhook receipt to CRM sync.

    Status only moves forward: received -> enriching -> analyzed -> synced,
    with failed reachable from any non-terminal status.
    """

    class Status(models.TextChoices):
        RECEIVED = 'received', 'Received'
        ENRICHING = 'enriching', 'Enriching'
        ANALYZED = 'analyzed', 'Analyzed'
        SYNCED = 'synced', 'Synced'
        FAILED = 'failed', 'Failed'

    request_id = models.CharField(max_length=64, unique=True, default=new_request_id)
    tenant = models.ForeignKey(
        Tenant,
        to_field='tenant_id',
        db_column='tenant_id',
        on_delete=models.PROTECT,
        related_name='requests'
    )
    office = models.ForeignKey(
        Office,
        on_delete=models.PROTECT,
        related_name='requests',
        null=True,
        blank=True
    )
    call_id = models.CharField(max_length=128)
    source = models.CharField(max_length=32, default='callrail')
    request_type = models.CharField(max_length=32, default='call')
    communication_mode = models.CharField(max_length=32, default='phone')
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.RECEIVED,
        db_index=True
    )
    raw_payload = models.JSONField()
    normalized_payload = models.JSONField(null=True, blank=True)
    call_details = models.JSONField(null=True, blank=True)
    recording_url = models.TextField(null=True, blank=True)
    transcription_data = models.JSONField(null=True, blank=True)
    ai_analysis = models.JSONField(null=True, blank=True)
    lead_score = models.PositiveSmallIntegerField(null=True, blank=True)
    spam_likelihood = models.FloatField(null=True, blank=True)
    is_spam = models.BooleanField(default=False)
    crm_sync = models.JSONField(default=dict, blank=True)
    delivery_count = models.PositiveIntegerField(default=1)
    processing_round = models.PositiveIntegerField(default=1)
    failure_stage = models.CharField(max_length=32, null=True, blank=True)
    failure_reason = models.TextField(null=True, blank=True)
    needs_manual_review = models.BooleanField(default=False, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(fields=['tenant', 'call_id'], name='unique_request_per_tenant_call'),
        ]
        indexes = [
            models.Index(fields=['tenant', 'status', 'created_at'], name='calls_reque_tenant__a3c1f0_idx'),
        ]

    def __str__(self):
        return f"Request {self.request_id} ({self.tenant_id}/{self.call_id}) - {self.status}"


# Allowed predecessors for every target status. Reopening a failed request is
# handled separately by the repository and is not part of this table.
STATUS_PREDECESSORS = {
    Request.Status.ENRICHING: (Request.Status.RECEIVED,),
    Request.Status.ANALYZED: (Request.Status.ENRICHING,),
    Request.Status.SYNCED: (Request.Status.ANALYZED,),
    Request.Status.FAILED: (
        Request.Status.RECEIVED,
        Request.Status.ENRICHING,
        Request.Status.ANALYZED,
    ),
}


class CallRecording(models.Model):
    """Tenant-scoped pointer to the durable copy of a call's audio."""

    class TranscriptionStatus(models.TextChoices):
        PENDING = 'pending', 'Pending'
        PROCESSING = 'processing', 'Processing'
        COMPLETED = 'completed', 'Completed'
        FAILED = 'failed', 'Failed'

    recording_id = models.CharField(max_length=64, unique=True, default=new_recording_id)
    tenant = models.ForeignKey(
        Tenant,
        to_field='tenant_id',
        db_column='tenant_id',
        on_delete=models.PROTECT,
        related_name='recordings'
    )
    request = models.ForeignKey(
        Request,
        on_delete=models.CASCADE,
        related_name='recordings'
    )
    call_id = models.CharField(max_length=128)
    storage_url = models.TextField()
    size_bytes = models.PositiveIntegerField(default=0)
    transcription_status = models.CharField(
        max_length=20,
        choices=TranscriptionStatus.choices,
        default=TranscriptionStatus.PENDING
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(fields=['tenant', 'call_id'], name='unique_recording_per_tenant_call'),
        ]

    def __str__(self):
        return f"Recording {self.recording_id} ({self.call_id}) - {self.transcription_status}"


class WebhookEvent(models.Model):
    """
    Immutable record of one inbound webhook delivery. Only
    ``processing_status`` changes, and only forward.
    """

    class ProcessingStatus(models.TextChoices):
        RECEIVED = 'received', 'Received'
        PROCESSING = 'processing', 'Processing'
        COMPLETED = 'completed', 'Completed'
        FAILED = 'failed', 'Failed'

    event_id = models.CharField(max_length=64, unique=True, default=new_event_id)
    tenant = models.ForeignKey(
        Tenant,
        to_field='tenant_id',
        db_column='tenant_id',
        on_delete=models.PROTECT,
        related_name='webhook_events'
    )
    request = models.ForeignKey(
        Request,
        on_delete=models.SET_NULL,
        related_name='webhook_events',
        null=True,
        blank=True
    )
    webhook_source = models.CharField(max_length=32)
    call_id = models.CharField(max_length=128, db_index=True)
    correlation_id = models.CharField(max_length=64, db_index=True)
    payload_hash = models.CharField(max_length=64)
    source_headers = models.JSONField(null=True, blank=True)
    processing_status = models.CharField(
        max_length=20,
        choices=ProcessingStatus.choices,
        default=ProcessingStatus.RECEIVED,
        db_index=True
    )
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"WebhookEvent {self.event_id} ({self.call_id}) - {self.processing_status}"


WEBHOOK_EVENT_PREDECESSORS = {
    WebhookEvent.ProcessingStatus.PROCESSING: (WebhookEvent.ProcessingStatus.RECEIVED,),
    WebhookEvent.ProcessingStatus.COMPLETED: (
        WebhookEvent.ProcessingStatus.RECEIVED,
        WebhookEvent.ProcessingStatus.PROCESSING,
    ),
    WebhookEvent.ProcessingStatus.FAILED: (
        WebhookEvent.ProcessingStatus.RECEIVED,
        WebhookEvent.ProcessingStatus.PROCESSING,
    ),
}


class AppendOnlyError(Exception):
    """Raised when an append-only row is saved a second time."""
    pass


class AIProcessingLog(models.Model):
    """
    Append-only audit row for one transcription or analysis invocation.
    """

    class AnalysisType(models.TextChoices):
        TRANSCRIPTION = 'transcription', 'Transcription'
        CONTENT = 'content', 'Content Analysis'
        SPAM = 'spam', 'Spam Detection'

    class Status(models.TextChoices):
        SUCCESS = 'success', 'Success'
        FAILED = 'failed', 'Failed'
        PARSE_ERROR = 'parse_error', 'Parse Error'

    log_id = models.CharField(max_length=64, unique=True, default=new_log_id)
    tenant = models.ForeignKey(
        Tenant,
        to_field='tenant_id',
        db_column='tenant_id',
        on_delete=models.PROTECT,
        related_name='ai_logs'
    )
    request = models.ForeignKey(
        Request,
        on_delete=models.CASCADE,
        related_name='ai_logs'
    )
    analysis_type = models.CharField(max_length=20, choices=AnalysisType.choices)
    status = models.CharField(max_length=20, choices=Status.choices)
    attempt_no = models.PositiveIntegerField(default=1)
    processing_data = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['request', 'created_at']

    def save(self, *args, **kwargs):
        if self.pk is not None:
            raise AppendOnlyError(f"AIProcessingLog {self.log_id} is append-only")
        super().save(*args, **kwargs)

    def __str__(self):
        return f"AIProcessingLog {self.log_id} {self.analysis_type} - {self.status}"


class CRMIntegration(models.Model):
    """
    Tenant-scoped connector configuration and sync health for one CRM.
    """

    class Status(models.TextChoices):
        ACTIVE = 'active', 'Active'
        DEGRADED = 'degraded', 'Degraded'
        DISABLED = 'disabled', 'Disabled'

    class SyncStatus(models.TextChoices):
        NEVER = 'never', 'Never Synced'
        SUCCESS = 'success', 'Success'
        ERROR = 'error', 'Error'

    integration_id = models.CharField(max_length=64, unique=True, default=new_integration_id)
    tenant = models.ForeignKey(
        Tenant,
        to_field='tenant_id',
        db_column='tenant_id',
        on_delete=models.PROTECT,
        related_name='crm_integrations'
    )
    crm_type = models.CharField(max_length=32)
    config = models.JSONField(default=dict, blank=True)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.ACTIVE,
        db_index=True
    )
    sync_status = models.CharField(
        max_length=20,
        choices=SyncStatus.choices,
        default=SyncStatus.NEVER
    )
    attempt_count = models.PositiveIntegerField(default=0)
    consecutive_failures = models.PositiveIntegerField(default=0)
    last_error = models.TextField(null=True, blank=True)
    last_attempt_at = models.DateTimeField(null=True, blank=True)
    last_success_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['tenant_id', 'crm_type']
        constraints = [
            models.UniqueConstraint(fields=['tenant', 'crm_type'], name='unique_crm_integration_per_tenant'),
        ]

    def __str__(self):
        return f"CRMIntegration {self.crm_type} ({self.tenant_id}) - {self.status}"
