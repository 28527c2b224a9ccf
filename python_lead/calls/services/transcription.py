"""
Speech-to-text client and transcript normalization.
"""
import base64
import logging
from typing import Any, List, Optional

from calls.services.errors import PermanentDependencyError
from calls.services.rate_limiter import CancelToken, RetryingClient, json_object
from calls.services.workflow import PhoneProcessing

logger = logging.getLogger(__name__)


def parse_offset(value: Any) -> float:
    """Parse a word offset: ``"1.500s"``, a number, or ``{"seconds", "nanos"}``."""
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('s'):
            text = text[:-1]
        try:
            return float(text)
        except ValueError:
            logger.warning(f"Unparseable word offset {value!r}, using 0.0")
            return 0.0
    if isinstance(value, dict):
        return float(value.get('seconds', 0) or 0) + float(value.get('nanos', 0) or 0) / 1e9
    logger.warning(f"Unsupported word offset type {type(value).__name__}, using 0.0")
    return 0.0


def _field(data: dict, snake: str, camel: str, default=None):
    if snake in data:
        return data[snake]
    return data.get(camel, default)


def extract_words(raw: dict) -> List[dict]:
    """Flatten the top alternative's words across all results."""
    words = []
    for result in raw.get('results') or []:
        alternatives = result.get('alternatives') or []
        if not alternatives:
            continue
        for word in alternatives[0].get('words') or []:
            words.append({
                'word': word.get('word', ''),
                'start_time': parse_offset(_field(word, 'start_time', 'startTime')),
                'end_time': parse_offset(_field(word, 'end_time', 'endTime')),
                'confidence': float(word.get('confidence') or 0.0),
                'speaker_tag': int(_field(word, 'speaker_tag', 'speakerTag', 0) or 0),
            })
    return words


def segment_speakers(words: List[dict]) -> List[dict]:
    """
    Group consecutive words by speaker tag.

    A new segment starts at every change of ``speaker_tag`` between
    consecutive words.
    """
    segments = []
    current = None
    for word in words:
        if current is None or word['speaker_tag'] != current['speaker']:
            current = {
                'speaker': word['speaker_tag'],
                'start_time': word['start_time'],
                'end_time': word['end_time'],
                'words': [word['word']],
            }
            segments.append(current)
        else:
            current['words'].append(word['word'])
            current['end_time'] = word['end_time']

    return [
        {
            'speaker': segment['speaker'],
            'start_time': segment['start_time'],
            'end_time': segment['end_time'],
            'text': ' '.join(segment['words']),
        }
        for segment in segments
    ]


def normalize_transcription(raw: dict, diarization: bool = True) -> dict:
    """
    Convert a raw recognition response into the stored transcript shape.

    Returns:
        Dict with transcript, confidence (mean over results), speaker_segments,
        word_details, duration and speaker_count
    """
    transcripts = []
    confidences = []
    for result in raw.get('results') or []:
        alternatives = result.get('alternatives') or []
        if not alternatives:
            continue
        top = alternatives[0]
        text = (top.get('transcript') or '').strip()
        if text:
            transcripts.append(text)
        confidences.append(float(top.get('confidence') or 0.0))

    words = extract_words(raw)
    segments = segment_speakers(words) if diarization else []

    return {
        'transcript': ' '.join(transcripts),
        'confidence': sum(confidences) / len(confidences) if confidences else 0.0,
        'speaker_segments': segments,
        'word_details': words,
        'duration': max((word['end_time'] for word in words), default=0.0),
        'speaker_count': len({segment['speaker'] for segment in segments}),
    }


class TranscriptionClient:
    """Calls the speech recognition endpoint with diarization and word timing enabled."""

    def __init__(
        self,
        retrying: RetryingClient,
        url: str,
        api_key: str = '',
        model: str = '',
        language_code: str = 'en-US',
        sample_rate_hertz: int = 8000,
        encoding: str = 'MP3',
        timeout: float = 600.0,
    ):
        self.retrying = retrying
        self.url = url
        self.api_key = api_key
        self.model = model
        self.language_code = language_code
        self.sample_rate_hertz = sample_rate_hertz
        self.encoding = encoding
        self.timeout = timeout

    def build_request(self, phone: PhoneProcessing, uri: Optional[str] = None,
                      content: Optional[bytes] = None) -> dict:
        if uri:
            audio = {'uri': uri}
        elif content:
            audio = {'content': base64.b64encode(content).decode('ascii')}
        else:
            raise PermanentDependencyError("no audio to transcribe", dependency=self.retrying.name)

        config = {
            'encoding': self.encoding,
            'sampleRateHertz': self.sample_rate_hertz,
            'languageCode': phone.language_code or self.language_code,
            'enableWordTimeOffsets': True,
            'enableWordConfidence': True,
            'enableAutomaticPunctuation': True,
        }
        if self.model:
            config['model'] = self.model
        if phone.speaker_diarization:
            config['diarizationConfig'] = {
                'enableSpeakerDiarization': True,
                'minSpeakerCount': phone.min_speaker_count,
                'maxSpeakerCount': phone.max_speaker_count,
            }
        return {'config': config, 'audio': audio}

    def transcribe(self, phone: PhoneProcessing, uri: Optional[str] = None, content: Optional[bytes] = None,
                   cancel: Optional[CancelToken] = None) -> dict:
        """Return the raw recognition response."""
        body = self.build_request(phone, uri=uri, content=content)
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'

        response = self.retrying.request(
            'POST', self.url,
            description="transcription",
            cancel=cancel,
            timeout=self.timeout,
            json=body,
            headers=headers,
        )
        raw = json_object(response, self.retrying.name, "transcription")
        logger.debug(f"Transcription returned {len(raw.get('results') or [])} results")
        return raw
