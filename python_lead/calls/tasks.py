"""
Celery tasks for async call processing.

Each task re-reads the request's status and only acts when the request is in
the status its stage expects, so any task can be retried or re-enqueued
without repeating work.
"""
import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.utils import timezone

from calls.models import Request, Tenant, WebhookEvent
from calls.pipeline import get_pipeline
from calls.repository import TenantRepository
from calls.services.analysis import call_metadata
from calls.services.errors import (
    NotYetAvailableError,
    OperationCancelled,
    PipelineError,
    RateLimitTimeout,
    StageError,
)
from calls.services.rate_limiter import SHUTDOWN_EVENT, CancelToken
from calls.services.secrets import SecretNotConfigured
from calls.services.workflow import load_workflow_config

logger = logging.getLogger(__name__)

STAGE_ENRICHMENT = 'enrichment'
STAGE_ANALYSIS = 'analysis'
STAGE_CRM_SYNC = 'crm_sync'

SHUTDOWN_RETRY_COUNTDOWN = 30


class CRMSyncIncomplete(Exception):
    """At least one CRM integration did not accept the lead."""
    pass


def _stage_cancel() -> CancelToken:
    return CancelToken(deadline_seconds=settings.STAGE_DEADLINE_SECONDS)


def _requeue_if_shutting_down(task, request_id: str, exc: Exception) -> None:
    if SHUTDOWN_EVENT.is_set():
        logger.warning(f"Worker shutting down, re-queueing request {request_id}")
        raise task.retry(exc=exc, countdown=SHUTDOWN_RETRY_COUNTDOWN)


def _backlog_countdown(request_id: str, exc: RateLimitTimeout) -> int:
    logger.warning(
        f"Request {request_id} waited too long for a {exc.dependency} token, "
        f"re-queueing in {settings.RATE_LIMIT_RETRY_COUNTDOWN_SECONDS}s"
    )
    return settings.RATE_LIMIT_RETRY_COUNTDOWN_SECONDS


def _load(repo: TenantRepository, request_id: str):
    try:
        return repo.get_request(request_id)
    except Request.DoesNotExist:
        logger.error(f"Request {request_id} not found for tenant={repo.tenant_id}")
        return None


@shared_task(bind=True, max_retries=None)
def enrich_request(self, tenant_id: str, request_id: str):
    """
    Fetch, store and transcribe the call recording.

    Workflow:
    1. Claim the request (received -> enriching)
    2. Run audio enrichment
    3. Store call details, recording locator and transcript
    4. Enqueue analysis

    A recording that is not available yet re-queues the task on the coarse
    not-ready schedule, and a rate-limit backlog re-queues it after
    ``RATE_LIMIT_RETRY_COUNTDOWN_SECONDS``. Any other failure marks the
    request failed.
    """
    repo = TenantRepository(tenant_id)
    request = _load(repo, request_id)
    if request is None:
        return

    if request.status == Request.Status.RECEIVED:
        if not repo.advance_status(request_id, Request.Status.ENRICHING):
            logger.info(f"Request {request_id} claimed by another worker, skipping enrichment")
            return
        repo.advance_webhook_events(request_id, WebhookEvent.ProcessingStatus.PROCESSING)
    elif request.status != Request.Status.ENRICHING:
        logger.info(f"Request {request_id} is {request.status}, skipping enrichment")
        return

    office = request.office
    if office is None:
        repo.mark_failed(request_id, STAGE_ENRICHMENT, "request has no resolved office")
        return

    logger.info(f"Enriching request {request_id} tenant={tenant_id} call={request.call_id} (attempt {self.request.retries + 1})")
    workflow = load_workflow_config(office.workflow_config)

    try:
        result = get_pipeline().audio.enrich(repo, request, office, workflow, cancel=_stage_cancel())
    except NotYetAvailableError as e:
        if self.request.retries >= settings.RECORDING_NOT_READY_MAX_RETRIES:
            repo.mark_failed(
                request_id, STAGE_ENRICHMENT,
                f"recording not available after {self.request.retries + 1} checks: {e}",
            )
            return
        logger.info(
            f"Recording for call={request.call_id} tenant={tenant_id} not available yet, "
            f"retrying in {settings.RECORDING_NOT_READY_COUNTDOWN_SECONDS}s"
        )
        raise self.retry(exc=e, countdown=settings.RECORDING_NOT_READY_COUNTDOWN_SECONDS)
    except RateLimitTimeout as e:
        raise self.retry(exc=e, countdown=_backlog_countdown(request_id, e))
    except OperationCancelled as e:
        _requeue_if_shutting_down(self, request_id, e)
        repo.mark_failed(request_id, STAGE_ENRICHMENT, str(StageError(STAGE_ENRICHMENT, tenant_id, request.call_id, e)))
        return
    except (PipelineError, SecretNotConfigured) as e:
        error = StageError(STAGE_ENRICHMENT, tenant_id, request.call_id, e)
        repo.mark_failed(request_id, STAGE_ENRICHMENT, str(error))
        return
    except Exception as e:
        error = StageError(STAGE_ENRICHMENT, tenant_id, request.call_id, e)
        repo.mark_failed(request_id, STAGE_ENRICHMENT, f"Unexpected error: {error}")
        logger.error(f"Unexpected error enriching request {request_id}: {e}", exc_info=True)
        raise

    repo.update_request_fields(
        request_id,
        call_details=result.call_details,
        recording_url=result.recording_locator,
        transcription_data=result.transcription,
    )
    logger.info(f"Request {request_id} enriched, enqueueing analysis")
    analyze_request.delay(tenant_id, request_id)


@shared_task(bind=True, max_retries=None)
def analyze_request(self, tenant_id: str, request_id: str):
    """
    Run content analysis and spam assessment, then hand off to CRM sync.

    Spam calls (likelihood at or above the office's threshold) stop at
    ``analyzed`` and are never pushed to a CRM.
    """
    repo = TenantRepository(tenant_id)
    request = _load(repo, request_id)
    if request is None:
        return
    if request.status != Request.Status.ENRICHING:
        logger.info(f"Request {request_id} is {request.status}, skipping analysis")
        return

    workflow = load_workflow_config(request.office.workflow_config if request.office else None)
    transcript = (request.transcription_data or {}).get('transcript') or ''
    metadata = call_metadata(request, request.call_details)

    try:
        result = get_pipeline().analysis.analyze(repo, request, transcript, metadata, workflow, cancel=_stage_cancel())
    except RateLimitTimeout as e:
        raise self.retry(exc=e, countdown=_backlog_countdown(request_id, e))
    except OperationCancelled as e:
        _requeue_if_shutting_down(self, request_id, e)
        repo.mark_failed(request_id, STAGE_ANALYSIS, str(StageError(STAGE_ANALYSIS, tenant_id, request.call_id, e)))
        return
    except PipelineError as e:
        error = StageError(STAGE_ANALYSIS, tenant_id, request.call_id, e)
        repo.mark_failed(request_id, STAGE_ANALYSIS, str(error))
        return
    except Exception as e:
        error = StageError(STAGE_ANALYSIS, tenant_id, request.call_id, e)
        repo.mark_failed(request_id, STAGE_ANALYSIS, f"Unexpected error: {error}")
        logger.error(f"Unexpected error analyzing request {request_id}: {e}", exc_info=True)
        raise

    is_spam = result.spam_likelihood is not None and workflow.is_spam(result.spam_likelihood)
    analysis = dict(result.analysis)
    if result.spam_assessment:
        analysis['spam_assessment'] = result.spam_assessment

    moved = repo.advance_status(
        request_id,
        Request.Status.ANALYZED,
        ai_analysis=analysis,
        lead_score=result.lead_score,
        spam_likelihood=result.spam_likelihood,
        is_spam=is_spam,
    )
    if not moved:
        logger.warning(f"Request {request_id} left enriching before analysis finished; result discarded")
        return

    repo.advance_webhook_events(request_id, WebhookEvent.ProcessingStatus.COMPLETED)
    logger.info(
        f"Request {request_id} ANALYZED: lead_score={result.lead_score} "
        f"spam_likelihood={result.spam_likelihood} is_spam={is_spam}"
    )

    if is_spam:
        logger.info(f"Request {request_id} flagged as spam, not syncing to CRM")
        return
    if workflow.crm.enabled and workflow.crm.push_immediately:
        sync_request_to_crm.delay(tenant_id, request_id)


@shared_task(
    bind=True,
    autoretry_for=(CRMSyncIncomplete,),
    retry_backoff=30,  # Exponential backoff starting at 30s
    retry_backoff_max=480,  # Max backoff of 480s (8 minutes)
    max_retries=5,
    retry_jitter=False
)
def sync_request_to_crm(self, tenant_id: str, request_id: str):
    """
    Push an analyzed request to every enabled CRM integration.

    Moves the request to ``synced`` once every integration accepted it.
    Integrations that already succeeded in this processing round are not
    pushed again on retry.
    """
    repo = TenantRepository(tenant_id)
    request = _load(repo, request_id)
    if request is None:
        return
    if request.status != Request.Status.ANALYZED:
        logger.info(f"Request {request_id} is {request.status}, skipping CRM sync")
        return
    if request.is_spam:
        logger.info(f"Request {request_id} is spam, skipping CRM sync")
        return

    workflow = load_workflow_config(request.office.workflow_config if request.office else None)
    try:
        outcome = get_pipeline().crm.dispatch(repo, request, workflow, cancel=_stage_cancel())
    except Exception as e:
        error = StageError(STAGE_CRM_SYNC, tenant_id, request.call_id, e)
        repo.mark_failed(request_id, STAGE_CRM_SYNC, f"Unexpected error: {error}")
        logger.error(f"Unexpected error syncing request {request_id} to CRM: {e}", exc_info=True)
        raise

    if not outcome.attempted:
        logger.info(f"Request {request_id} has no CRM integrations to sync; staying analyzed")
        return

    if outcome.complete:
        repo.advance_status(request_id, Request.Status.SYNCED)
        logger.info(f"Request {request_id} SYNCED to {outcome.synced + outcome.skipped}")
        return

    if self.request.retries >= self.max_retries:
        repo.mark_failed(
            request_id, STAGE_CRM_SYNC,
            f"Max retries exhausted: {outcome.failed}",
        )
        return

    logger.warning(
        f"Request {request_id} CRM sync incomplete ({outcome.failed}), "
        f"will retry (attempt {self.request.retries + 1}/{self.max_retries + 1})"
    )
    raise CRMSyncIncomplete(f"CRM sync failed for {sorted(outcome.failed)}")


@shared_task
def expire_stale_requests():
    """
    Fail requests that have sat in received/enriching longer than
    ``REQUEST_MAX_PROCESSING_SECONDS`` and flag them for manual review.
    """
    cutoff = timezone.now() - timedelta(seconds=settings.REQUEST_MAX_PROCESSING_SECONDS)
    reason = f"processing exceeded {settings.REQUEST_MAX_PROCESSING_SECONDS}s"
    expired = 0
    for tenant_id in Tenant.objects.values_list('tenant_id', flat=True):
        expired_ids = TenantRepository(tenant_id).fail_stale_requests(cutoff, reason)
        if expired_ids:
            logger.warning(f"Expired {len(expired_ids)} stale requests for tenant={tenant_id}: {expired_ids}")
        expired += len(expired_ids)
    return expired


def reprocess_request(tenant_id: str, request_id: str) -> bool:
    """Reopen a failed request and enqueue it from the start of the pipeline."""
    if not TenantRepository(tenant_id).reopen_failed(request_id):
        return False
    enrich_request.delay(tenant_id, request_id)
    return True
