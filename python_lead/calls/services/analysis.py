"""
Content analysis and spam assessment of transcribed calls.

Model responses are non-deterministic, so parsing is a fallible boundary with
its own retry budget, separate from the network retries of the
``RetryingClient``.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Optional

from calls.models import AIProcessingLog, Request
from calls.repository import TenantRepository
from calls.serializers import ContentAnalysisSerializer, SpamAssessmentSerializer
from calls.services.errors import AnalysisParseError, DependencyError
from calls.services.rate_limiter import CancelToken, RetryingClient
from calls.services.workflow import WorkflowConfig

logger = logging.getLogger(__name__)

CODE_FENCE = re.compile(r'^```(?:json)?\s*|\s*```$', re.IGNORECASE)

CONTENT_PROMPT = """
Analyze this phone call transcription for a home remodeling company:

TRANSCRIPT: {transcript}
{call_info}

Extract the following information in JSON format:
{{
  "intent": "quote_request|information_seeking|appointment_booking|complaint|follow_up|other",
  "project_type": "kitchen|bathroom|whole_home|addition|flooring|roofing|windows|doors|other",
  "timeline": "immediate|1-3_months|3-6_months|6+_months|unknown",
  "budget_indicator": "high|medium|low|unknown",
  "sentiment": "positive|neutral|negative",
  "lead_score": 1-100,
  "urgency": "high|medium|low",
  "appointment_requested": true|false,
  "follow_up_required": true|false,
  "key_details": ["detail1", "detail2", "detail3"]
}}

Consider these factors for lead scoring:
- Project type complexity (kitchen/bathroom = higher score)
- Customer engagement level
- Timeline urgency
- Budget indicators
- Quality of conversation

Respond with ONLY the JSON object, no additional text."""

SPAM_PROMPT = """
Analyze this phone call for spam likelihood:

TRANSCRIPT: {transcript}
{call_info}

Evaluate for spam indicators:
- Robotic or scripted speech patterns
- Generic sales pitches
- Suspicious caller behavior
- Short call duration with generic content
- Known spam phone patterns
- Telemarketing characteristics

Return ONLY a JSON object:
{{
  "spam_likelihood": 0-100,
  "confidence": 0.0-1.0,
  "indicators": ["list", "of", "spam", "indicators"],
  "reasoning": "brief explanation of spam assessment"
}}"""


def call_metadata(request: Request, call_details: Optional[dict] = None) -> dict:
    """Merge the webhook fields with call details fetched from the provider."""
    normalized = request.normalized_payload or {}
    details = call_details or {}

    def pick(key):
        return details.get(key) or normalized.get(key) or ''

    tags = details.get('tags') or normalized.get('tags') or []
    if isinstance(tags, str):
        tags = [tags]
    return {
        'customer_name': pick('customer_name'),
        'customer_phone_number': pick('customer_phone_number'),
        'customer_city': pick('customer_city'),
        'customer_state': pick('customer_state'),
        'duration': details.get('duration') or normalized.get('duration') or 0,
        'source': pick('source') or request.source,
        'tags': [str(tag) for tag in tags],
        'lead_status': pick('lead_status'),
    }


def build_content_prompt(transcript: str, metadata: dict) -> str:
    call_info = (
        "\nCALL METADATA:\n"
        f"- Customer Name: {metadata['customer_name']}\n"
        f"- Customer Phone: {metadata['customer_phone_number']}\n"
        f"- Customer Location: {metadata['customer_city']}, {metadata['customer_state']}\n"
        f"- Call Duration: {metadata['duration']} seconds\n"
        f"- Source: {metadata['source']}\n"
        f"- Tags: {', '.join(metadata['tags'])}\n"
        f"- Lead Status: {metadata['lead_status']}"
    )
    return CONTENT_PROMPT.format(transcript=transcript, call_info=call_info)


def build_spam_prompt(transcript: str, metadata: dict) -> str:
    call_info = (
        f"\nCALLER: {metadata['customer_name']}\n"
        f"PHONE: {metadata['customer_phone_number']}\n"
        f"DURATION: {metadata['duration']} seconds"
    )
    return SPAM_PROMPT.format(transcript=transcript, call_info=call_info)


def extract_json(text: str):
    """
    Decode the JSON value in a model response, tolerating markdown fences.

    Raises:
        AnalysisParseError: If no JSON value can be decoded
    """
    if not isinstance(text, str) or not text.strip():
        raise AnalysisParseError("empty analysis response", raw_response=text)
    cleaned = CODE_FENCE.sub('', text.strip()).strip()
    try:
        return json.loads(cleaned)
    except ValueError:
        pass
    start, end = cleaned.find('{'), cleaned.rfind('}')
    if start != -1 and end > start:
        try:
            return json.loads(cleaned[start:end + 1])
        except ValueError:
            pass
    raise AnalysisParseError("analysis response is not valid JSON", raw_response=text)


def parse_content_analysis(text: str) -> dict:
    """
    Parse and validate a content-analysis response.

    Raises:
        AnalysisParseError: If the response does not match the expected shape
    """
    data = extract_json(text)
    if not isinstance(data, dict):
        raise AnalysisParseError("content analysis response is not a JSON object", raw_response=text)
    serializer = ContentAnalysisSerializer(data=data)
    if not serializer.is_valid():
        raise AnalysisParseError(f"invalid content analysis: {dict(serializer.errors)}", raw_response=text)
    return dict(serializer.validated_data)


def parse_spam_assessment(text: str) -> dict:
    """
    Parse a spam response: an object with ``spam_likelihood`` or a bare number.

    Raises:
        AnalysisParseError: If the likelihood is missing, non-numeric or outside 0-100
    """
    data = extract_json(text)
    if not isinstance(data, dict):
        data = {'spam_likelihood': data}
    serializer = SpamAssessmentSerializer(data=data)
    if not serializer.is_valid():
        raise AnalysisParseError(f"invalid spam assessment: {dict(serializer.errors)}", raw_response=text)
    return dict(serializer.validated_data)


class AnalysisClient:
    """Calls the generative content-analysis endpoint and returns its text output."""

    def __init__(
        self,
        retrying: RetryingClient,
        url: str,
        api_key: str = '',
        model: str = '',
        temperature: float = 0.2,
        max_tokens: int = 1024,
        top_p: float = 0.8,
        top_k: int = 40,
        timeout: float = 120.0,
    ):
        self.retrying = retrying
        self.url = url
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.top_p = top_p
        self.top_k = top_k
        self.timeout = timeout

    def generate(self, prompt: str, cancel: Optional[CancelToken] = None) -> str:
        body = {
            'instances': [{'inputs': prompt}],
            'parameters': {
                'temperature': self.temperature,
                'maxOutputTokens': self.max_tokens,
                'topP': self.top_p,
                'topK': self.top_k,
            },
        }
        if self.model:
            body['model'] = self.model
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'

        response = self.retrying.request(
            'POST', self.url,
            description="content analysis",
            cancel=cancel,
            timeout=self.timeout,
            json=body,
            headers=headers,
        )
        try:
            prediction = response.json()['predictions'][0]
        except (ValueError, KeyError, IndexError, TypeError):
            raise AnalysisParseError("analysis endpoint returned no predictions", raw_response=response.text)
        if isinstance(prediction, dict):
            prediction = prediction.get('content')
        if not isinstance(prediction, str):
            raise AnalysisParseError("analysis prediction has no text content", raw_response=response.text)
        return prediction


@dataclass
class AnalysisResult:
    analysis: dict
    lead_score: int
    spam_likelihood: Optional[float] = None
    spam_assessment: dict = field(default_factory=dict)


class ContentAnalysisOrchestrator:
    """Runs content analysis and spam assessment for one request."""

    def __init__(self, client: AnalysisClient, parse_max_attempts: int = 3):
        self.client = client
        self.parse_max_attempts = max(1, parse_max_attempts)

    def analyze(self, repo: TenantRepository, request: Request, transcript: str, metadata: dict,
                workflow: WorkflowConfig, cancel: Optional[CancelToken] = None) -> AnalysisResult:
        """
        Raises:
            AnalysisParseError: When every parse attempt of either call failed
            DependencyError: When the analysis endpoint failed
        """
        cancel = cancel or CancelToken()
        analysis = self._run(
            repo, request, AIProcessingLog.AnalysisType.CONTENT,
            build_content_prompt(transcript, metadata), parse_content_analysis, cancel,
        )

        result = AnalysisResult(analysis=analysis, lead_score=analysis['lead_score'])
        if workflow.spam_detection.enabled:
            assessment = self._run(
                repo, request, AIProcessingLog.AnalysisType.SPAM,
                build_spam_prompt(transcript, metadata), parse_spam_assessment, cancel,
            )
            result.spam_assessment = assessment
            result.spam_likelihood = assessment['spam_likelihood']
        return result

    def _run(self, repo: TenantRepository, request: Request, analysis_type: str, prompt: str,
             parser: Callable[[str], dict], cancel: CancelToken) -> dict:
        last_error = None
        for attempt in range(1, self.parse_max_attempts + 1):
            try:
                text = self.client.generate(prompt, cancel=cancel)
                parsed = parser(text)
            except AnalysisParseError as e:
                last_error = e
                repo.log_ai_processing(
                    request, analysis_type, AIProcessingLog.Status.PARSE_ERROR,
                    processing_data={'error': str(e), 'raw_response': (e.raw_response or '')[:4000]},
                    attempt_no=attempt,
                )
                logger.warning(
                    f"{analysis_type} analysis parse error for request {request.request_id} "
                    f"(attempt {attempt}/{self.parse_max_attempts}): {e}"
                )
                continue
            except DependencyError as e:
                repo.log_ai_processing(
                    request, analysis_type, AIProcessingLog.Status.FAILED,
                    processing_data={'error': str(e)},
                    attempt_no=attempt,
                )
                raise

            repo.log_ai_processing(
                request, analysis_type, AIProcessingLog.Status.SUCCESS,
                processing_data={'result': parsed, 'model': self.client.model},
                attempt_no=attempt,
            )
            return parsed

        raise AnalysisParseError(
            f"{analysis_type} analysis unparseable after {self.parse_max_attempts} attempts: {last_error}",
            raw_response=last_error.raw_response if last_error else None,
        )
