"""
Django admin configuration for calls app.
"""
from django.contrib import admin, messages

from calls.models import (
    AIProcessingLog,
    CallRecording,
    CRMIntegration,
    Office,
    Request,
    Tenant,
    WebhookEvent,
)
from calls.tasks import reprocess_request


class OfficeInline(admin.TabularInline):
    """Inline display of a tenant's offices."""
    model = Office
    extra = 0
    fields = ('office_id', 'name', 'external_company_id', 'call_provider_account_id', 'status')
    readonly_fields = ('office_id',)


class WebhookEventInline(admin.TabularInline):
    """Inline display of webhook deliveries for a request."""
    model = WebhookEvent
    extra = 0
    fields = ('event_id', 'correlation_id', 'processing_status', 'payload_hash', 'created_at')
    readonly_fields = fields
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


class AIProcessingLogInline(admin.TabularInline):
    """Inline display of AI processing attempts for a request."""
    model = AIProcessingLog
    extra = 0
    fields = ('analysis_type', 'status', 'attempt_no', 'created_at')
    readonly_fields = fields
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Tenant)
class TenantAdmin(admin.ModelAdmin):
    list_display = ('tenant_id', 'name', 'status', 'created_at')
    list_filter = ('status',)
    search_fields = ('tenant_id', 'name')
    readonly_fields = ('created_at', 'updated_at')
    inlines = [OfficeInline]


@admin.register(Office)
class OfficeAdmin(admin.ModelAdmin):
    list_display = ('office_id', 'tenant', 'name', 'external_company_id', 'status')
    list_filter = ('status',)
    search_fields = ('office_id', 'external_company_id', 'tenant__tenant_id')
    readonly_fields = ('office_id', 'created_at', 'updated_at')


@admin.register(Request)
class RequestAdmin(admin.ModelAdmin):
    """Admin interface for Request model."""

    list_display = ('request_id', 'tenant', 'call_id', 'status', 'lead_score', 'is_spam',
                    'needs_manual_review', 'created_at')
    list_filter = ('status', 'is_spam', 'needs_manual_review', 'created_at')
    search_fields = ('request_id', 'call_id', 'tenant__tenant_id')
    readonly_fields = ('request_id', 'tenant', 'office', 'call_id', 'source', 'status', 'raw_payload',
                       'normalized_payload', 'call_details', 'recording_url', 'transcription_data',
                       'ai_analysis', 'lead_score', 'spam_likelihood', 'is_spam', 'crm_sync',
                       'delivery_count', 'processing_round', 'failure_stage', 'failure_reason',
                       'created_at', 'updated_at')

    fieldsets = (
        ('Status', {
            'fields': ('request_id', 'tenant', 'office', 'call_id', 'source', 'status',
                       'needs_manual_review', 'failure_stage', 'failure_reason')
        }),
        ('Results', {
            'fields': ('lead_score', 'spam_likelihood', 'is_spam', 'crm_sync', 'recording_url')
        }),
        ('Timestamps', {
            'fields': ('delivery_count', 'processing_round', 'created_at', 'updated_at')
        }),
        ('Payloads', {
            'fields': ('raw_payload', 'normalized_payload', 'call_details', 'transcription_data', 'ai_analysis'),
            'classes': ('collapse',)
        }),
    )

    inlines = [WebhookEventInline, AIProcessingLogInline]
    actions = ['reprocess_failed']

    @admin.action(description='Reprocess failed requests')
    def reprocess_failed(self, request, queryset):
        reopened = 0
        for call_request in queryset.filter(status=Request.Status.FAILED):
            if reprocess_request(call_request.tenant_id, call_request.request_id):
                reopened += 1
        self.message_user(request, f"Re-queued {reopened} failed request(s)", messages.SUCCESS)

    def has_add_permission(self, request):
        """Disable manual request creation through admin."""
        return False

    def has_delete_permission(self, request, obj=None):
        """Disable request deletion through admin."""
        return False


@admin.register(CallRecording)
class CallRecordingAdmin(admin.ModelAdmin):
    list_display = ('recording_id', 'tenant', 'call_id', 'transcription_status', 'size_bytes', 'created_at')
    list_filter = ('transcription_status',)
    search_fields = ('recording_id', 'call_id')
    readonly_fields = ('recording_id', 'tenant', 'request', 'call_id', 'storage_url', 'size_bytes',
                       'transcription_status', 'created_at', 'updated_at')

    def has_add_permission(self, request):
        return False


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    """Admin interface for WebhookEvent model."""

    list_display = ('event_id', 'tenant', 'call_id', 'processing_status', 'correlation_id', 'created_at')
    list_filter = ('processing_status', 'webhook_source', 'created_at')
    search_fields = ('event_id', 'call_id', 'correlation_id')
    readonly_fields = ('event_id', 'tenant', 'request', 'webhook_source', 'call_id', 'correlation_id',
                       'payload_hash', 'source_headers', 'processing_status', 'created_at', 'updated_at')

    def has_add_permission(self, request):
        """Disable manual event creation through admin."""
        return False

    def has_delete_permission(self, request, obj=None):
        """Disable event deletion through admin."""
        return False


@admin.register(AIProcessingLog)
class AIProcessingLogAdmin(admin.ModelAdmin):
    """Admin interface for AIProcessingLog model."""

    list_display = ('log_id', 'tenant', 'request', 'analysis_type', 'status', 'attempt_no', 'created_at')
    list_filter = ('analysis_type', 'status', 'created_at')
    search_fields = ('log_id', 'request__request_id')
    readonly_fields = ('log_id', 'tenant', 'request', 'analysis_type', 'status', 'attempt_no',
                       'processing_data', 'created_at')

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(CRMIntegration)
class CRMIntegrationAdmin(admin.ModelAdmin):
    list_display = ('integration_id', 'tenant', 'crm_type', 'status', 'sync_status',
                    'consecutive_failures', 'last_success_at')
    list_filter = ('crm_type', 'status', 'sync_status')
    search_fields = ('integration_id', 'tenant__tenant_id')
    readonly_fields = ('integration_id', 'sync_status', 'attempt_count', 'consecutive_failures',
                       'last_error', 'last_attempt_at', 'last_success_at', 'created_at', 'updated_at')
