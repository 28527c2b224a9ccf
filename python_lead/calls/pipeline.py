"""
Wiring of the enrichment pipeline's outbound collaborators.

Each external dependency gets its own token bucket and ``RetryingClient``;
the buckets are owned by the ``Pipeline`` object and shared by every task
running in the worker process.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional

import httpx
from django.conf import settings
from django.core.files.storage import Storage

from calls.services.analysis import AnalysisClient, ContentAnalysisOrchestrator
from calls.services.audio import AudioEnrichmentOrchestrator
from calls.services.audio_storage import AudioStorage
from calls.services.call_provider import CallProviderClient
from calls.services.crm.dispatcher import CRMDispatcher
from calls.services.crm.hubspot import HubSpotConnector
from calls.services.crm.pipedrive import PipedriveConnector
from calls.services.crm.salesforce import SalesforceConnector
from calls.services.crm.webhook import WebhookConnector
from calls.services.rate_limiter import RetryingClient, TokenBucket
from calls.services.transcription import TranscriptionClient

logger = logging.getLogger(__name__)

BUCKET_WINDOW_SECONDS = 60.0


@dataclass
class Pipeline:
    audio: AudioEnrichmentOrchestrator
    analysis: ContentAnalysisOrchestrator
    crm: CRMDispatcher
    buckets: List[TokenBucket] = field(default_factory=list)

    def start(self) -> None:
        for bucket in self.buckets:
            bucket.start()

    def stop(self) -> None:
        for bucket in self.buckets:
            bucket.stop()


def _retrying_client(name: str, bucket: TokenBucket, http: httpx.Client) -> RetryingClient:
    return RetryingClient(
        name=name,
        bucket=bucket,
        http=http,
        max_attempts=settings.OUTBOUND_MAX_ATTEMPTS,
        backoff_base=settings.OUTBOUND_BACKOFF_SECONDS,
        backoff_max=settings.OUTBOUND_BACKOFF_MAX_SECONDS,
        max_concurrency=settings.OUTBOUND_MAX_CONCURRENCY,
        token_timeout=settings.OUTBOUND_TOKEN_WAIT_SECONDS,
    )


def build_pipeline(transport: Optional[httpx.BaseTransport] = None,
                   storage: Optional[Storage] = None) -> Pipeline:
    """
    Build a pipeline from settings.

    Args:
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
        storage: Optional storage backend replacing the ``audio`` alias
    """
    http = httpx.Client(transport=transport) if transport is not None else httpx.Client()

    call_provider_bucket = TokenBucket(settings.CALL_PROVIDER_REQUESTS_PER_MINUTE, BUCKET_WINDOW_SECONDS, 'call_provider')
    transcription_bucket = TokenBucket(settings.TRANSCRIPTION_REQUESTS_PER_MINUTE, BUCKET_WINDOW_SECONDS, 'transcription')
    analysis_bucket = TokenBucket(settings.ANALYSIS_REQUESTS_PER_MINUTE, BUCKET_WINDOW_SECONDS, 'analysis')
    crm_bucket = TokenBucket(settings.CRM_REQUESTS_PER_MINUTE, BUCKET_WINDOW_SECONDS, 'crm')

    call_provider = CallProviderClient(
        _retrying_client('call_provider', call_provider_bucket, http),
        base_url=settings.CALL_PROVIDER_API_BASE_URL,
        timeout=settings.CALL_PROVIDER_TIMEOUT_SECONDS,
    )
    transcriber = TranscriptionClient(
        _retrying_client('transcription', transcription_bucket, http),
        url=settings.TRANSCRIPTION_API_URL,
        api_key=settings.TRANSCRIPTION_API_KEY,
        model=settings.TRANSCRIPTION_MODEL,
        language_code=settings.SPEECH_LANGUAGE,
        sample_rate_hertz=settings.TRANSCRIPTION_SAMPLE_RATE_HERTZ,
        encoding=settings.TRANSCRIPTION_ENCODING,
        timeout=settings.TRANSCRIPTION_TIMEOUT_SECONDS,
    )
    analysis_client = AnalysisClient(
        _retrying_client('analysis', analysis_bucket, http),
        url=settings.ANALYSIS_API_URL,
        api_key=settings.ANALYSIS_API_KEY,
        model=settings.ANALYSIS_MODEL,
        temperature=settings.ANALYSIS_TEMPERATURE,
        max_tokens=settings.ANALYSIS_MAX_TOKENS,
        top_p=settings.ANALYSIS_TOP_P,
        top_k=settings.ANALYSIS_TOP_K,
        timeout=settings.ANALYSIS_TIMEOUT_SECONDS,
    )

    crm_client = _retrying_client('crm', crm_bucket, http)
    connectors = {
        connector.name: connector
        for connector in (
            HubSpotConnector(crm_client, timeout=settings.CRM_TIMEOUT_SECONDS),
            SalesforceConnector(crm_client, timeout=settings.CRM_TIMEOUT_SECONDS),
            PipedriveConnector(crm_client, timeout=settings.CRM_TIMEOUT_SECONDS),
            WebhookConnector(crm_client, timeout=settings.CRM_TIMEOUT_SECONDS),
        )
    }

    return Pipeline(
        audio=AudioEnrichmentOrchestrator(
            call_provider,
            AudioStorage(storage, uri_prefix=settings.AUDIO_STORAGE_URI_PREFIX),
            transcriber,
        ),
        analysis=ContentAnalysisOrchestrator(analysis_client, parse_max_attempts=settings.ANALYSIS_PARSE_MAX_ATTEMPTS),
        crm=CRMDispatcher(connectors, degraded_threshold=settings.CRM_DEGRADED_THRESHOLD),
        buckets=[call_provider_bucket, transcription_bucket, analysis_bucket, crm_bucket],
    )


_pipeline: Optional[Pipeline] = None
_pipeline_lock = threading.Lock()


def get_pipeline() -> Pipeline:
    """Process-wide pipeline, built and started on first use."""
    global _pipeline
    if _pipeline is None:
        with _pipeline_lock:
            if _pipeline is None:
                pipeline = build_pipeline()
                pipeline.start()
                _pipeline = pipeline
                logger.info("Enrichment pipeline initialised")
    return _pipeline
