"""
Audio enrichment: call details, recording download, storage and transcription.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from calls.models import AIProcessingLog, CallRecording, Office, Request
from calls.repository import TenantRepository
from calls.services.audio_storage import AudioStorage
from calls.services.call_provider import CallProviderClient
from calls.services.errors import DependencyError, NotYetAvailableError, PermanentDependencyError
from calls.services.rate_limiter import CancelToken
from calls.services.secrets import resolve_secret
from calls.services.transcription import TranscriptionClient, normalize_transcription
from calls.services.workflow import PhoneProcessing, WorkflowConfig

logger = logging.getLogger(__name__)


@dataclass
class EnrichmentResult:
    call_details: dict
    recording_locator: str
    transcription: Optional[dict]


class AudioEnrichmentOrchestrator:
    """
    Runs the audio half of the pipeline for one request.

    Collaborators are injected so tests can swap the HTTP transport and the
    storage backend.
    """

    def __init__(self, call_provider: CallProviderClient, storage: AudioStorage,
                 transcriber: TranscriptionClient):
        self.call_provider = call_provider
        self.storage = storage
        self.transcriber = transcriber

    def enrich(self, repo: TenantRepository, request: Request, office: Office,
               workflow: WorkflowConfig, cancel: Optional[CancelToken] = None) -> EnrichmentResult:
        """
        Fetch, store and transcribe the recording for ``request``.

        Raises:
            NotYetAvailableError: If the provider has no recording yet
            DependencyError: For any other outbound failure
        """
        cancel = cancel or CancelToken()
        call_id = request.call_id
        api_key = resolve_secret(office.call_provider_api_key_ref)
        account_id = office.call_provider_account_id

        details = self.call_provider.get_call_details(account_id, call_id, api_key, cancel=cancel)
        recording = self.call_provider.get_recording(account_id, call_id, api_key, cancel=cancel)
        recording_url = recording.get('recording_url') or recording.get('url')
        if not recording_url:
            raise NotYetAvailableError(f"no recording URL for call {call_id}", dependency='call_provider')

        audio = self.call_provider.download_recording(recording_url, api_key, cancel=cancel)
        stored = self.storage.save(repo.tenant_id, call_id, audio)
        repo.upsert_call_recording(request, storage_url=stored.locator, size_bytes=stored.size_bytes)

        phone = workflow.phone_processing
        if not phone.transcribe_audio:
            logger.info(f"Transcription disabled for office {office.office_id}; call={call_id}")
            return EnrichmentResult(call_details=details, recording_locator=stored.locator, transcription=None)

        repo.update_recording_status(call_id, CallRecording.TranscriptionStatus.PROCESSING)
        try:
            if self.storage.is_remote(stored.locator):
                raw = self.transcriber.transcribe(phone, uri=stored.locator, cancel=cancel)
            else:
                raw = self.transcriber.transcribe(phone, content=self.storage.read(stored.locator), cancel=cancel)
            transcription = self._normalize(raw, phone)
        except DependencyError as e:
            repo.update_recording_status(call_id, CallRecording.TranscriptionStatus.FAILED)
            repo.log_ai_processing(
                request,
                AIProcessingLog.AnalysisType.TRANSCRIPTION,
                AIProcessingLog.Status.FAILED,
                processing_data={'error': str(e), 'storage_url': stored.locator},
            )
            raise

        repo.update_recording_status(call_id, CallRecording.TranscriptionStatus.COMPLETED)
        repo.log_ai_processing(
            request,
            AIProcessingLog.AnalysisType.TRANSCRIPTION,
            AIProcessingLog.Status.SUCCESS,
            processing_data={
                'storage_url': stored.locator,
                'confidence': transcription['confidence'],
                'speaker_count': transcription['speaker_count'],
                'word_count': len(transcription['word_details']),
            },
        )
        logger.info(
            f"Transcribed call={call_id} tenant={repo.tenant_id}: "
            f"{len(transcription['word_details'])} words, {transcription['speaker_count']} speakers"
        )
        return EnrichmentResult(call_details=details, recording_locator=stored.locator, transcription=transcription)

    def _normalize(self, raw: dict, phone: PhoneProcessing) -> dict:
        try:
            return normalize_transcription(raw, diarization=phone.speaker_diarization)
        except (AttributeError, TypeError, ValueError) as e:
            raise PermanentDependencyError(
                f"transcription response has an unexpected shape: {e}",
                dependency=self.transcriber.retrying.name
            ) from e
