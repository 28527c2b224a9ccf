"""
Per-office workflow configuration.

Offices store a free-form JSON blob; it is merged over the defaults below and
exposed as a typed ``WorkflowConfig``.
"""
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOW = {
    'communication_detection': {
        'phone_processing': {
            'transcribe_audio': True,
            'extract_details': True,
            'speaker_diarization': True,
            'min_speaker_count': 2,
            'max_speaker_count': 4,
            'language_code': '',
        },
    },
    'validation': {
        'spam_detection': {
            'enabled': True,
            'confidence_threshold': 75,
        },
    },
    'crm_integration': {
        'enabled': True,
        'providers': [],
        'field_mapping': {},
        'push_immediately': True,
    },
}


def deep_merge(base: dict, override: dict) -> dict:
    """Return ``base`` with ``override`` merged in, recursing into dicts."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass
class PhoneProcessing:
    transcribe_audio: bool = True
    extract_details: bool = True
    speaker_diarization: bool = True
    min_speaker_count: int = 2
    max_speaker_count: int = 4
    language_code: str = ''


@dataclass
class SpamDetection:
    enabled: bool = True
    confidence_threshold: float = 75


@dataclass
class CRMSettings:
    enabled: bool = True
    providers: List[str] = field(default_factory=list)
    field_mapping: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    push_immediately: bool = True


@dataclass
class WorkflowConfig:
    phone_processing: PhoneProcessing = field(default_factory=PhoneProcessing)
    spam_detection: SpamDetection = field(default_factory=SpamDetection)
    crm: CRMSettings = field(default_factory=CRMSettings)

    def is_spam(self, spam_likelihood: float) -> bool:
        return self.spam_detection.enabled and spam_likelihood >= self.spam_detection.confidence_threshold

    def provider_enabled(self, crm_type: str) -> bool:
        """An empty providers list enables every configured integration."""
        if not self.crm.enabled:
            return False
        return not self.crm.providers or crm_type in self.crm.providers


def _build(raw: dict) -> WorkflowConfig:
    phone = raw['communication_detection']['phone_processing']
    spam = raw['validation']['spam_detection']
    crm = raw['crm_integration']

    min_speakers = int(phone['min_speaker_count'])
    max_speakers = int(phone['max_speaker_count'])
    if min_speakers < 1 or max_speakers < min_speakers:
        raise ValueError(f"invalid speaker counts {min_speakers}..{max_speakers}")

    threshold = float(spam['confidence_threshold'])
    if not 0 <= threshold <= 100:
        raise ValueError(f"spam threshold {threshold} outside 0-100")

    if not isinstance(crm['providers'], list) or not isinstance(crm['field_mapping'], dict):
        raise ValueError("crm_integration.providers must be a list and field_mapping an object")

    return WorkflowConfig(
        phone_processing=PhoneProcessing(
            transcribe_audio=bool(phone['transcribe_audio']),
            extract_details=bool(phone['extract_details']),
            speaker_diarization=bool(phone['speaker_diarization']),
            min_speaker_count=min_speakers,
            max_speaker_count=max_speakers,
            language_code=str(phone.get('language_code') or ''),
        ),
        spam_detection=SpamDetection(enabled=bool(spam['enabled']), confidence_threshold=threshold),
        crm=CRMSettings(
            enabled=bool(crm['enabled']),
            providers=[str(provider) for provider in crm['providers']],
            field_mapping=crm['field_mapping'],
            push_immediately=bool(crm['push_immediately']),
        ),
    )


def load_workflow_config(raw: Any) -> WorkflowConfig:
    """
    Build the workflow configuration from an office's stored JSON.
    Malformed configuration falls back to the defaults.
    """
    if not raw:
        return _build(DEFAULT_WORKFLOW)
    if not isinstance(raw, dict):
        logger.warning(f"Workflow config is {type(raw).__name__}, not an object; using defaults")
        return _build(DEFAULT_WORKFLOW)
    try:
        return _build(deep_merge(DEFAULT_WORKFLOW, raw))
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Malformed workflow config ({e}); using defaults")
        return _build(DEFAULT_WORKFLOW)
