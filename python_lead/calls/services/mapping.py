"""
Mapping service for transforming analyzed calls into CRM records.

A field mapping is a table of ``crm_field -> source``. A source is either a
dot-separated path into the lead record or a rule object:

    {"source": "lead_score", "when": {"gte": 80}, "value": "hot", "else": "warm"}
    {"template": "{first_name} ({customer_city})"}
    {"source": "analysis.timeline", "default": "unknown"}
"""
import logging
from typing import Any, List, Optional, Tuple

from calls.models import Request

logger = logging.getLogger(__name__)


class MissingRequiredFieldError(Exception):
    """Raised when a lead lacks a field every CRM record needs."""
    pass


class _BlankDefault(dict):
    def __missing__(self, key):
        return ''


def get_nested_value(data: dict, path: str, default=None):
    """
    Get a value from a nested dictionary using dot notation.

    Args:
        data: The dictionary to search
        path: Dot-separated path (e.g., 'analysis.lead_score')
        default: Default value if path not found

    Returns:
        The value at the path or default
    """
    keys = path.split('.')
    value = data
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def set_nested_value(data: dict, path: str, value: Any) -> None:
    """
    Set a value in a nested dictionary using dot notation.
    Creates intermediate dictionaries as needed.

    Args:
        data: The dictionary to modify
        path: Dot-separated path (e.g., 'properties.lead_score')
        value: Value to set
    """
    keys = path.split('.')
    current = data
    for key in keys[:-1]:
        if key not in current:
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value


def is_numeric(value: Any) -> bool:
    # Exclude booleans (bool is subclass of int in Python)
    if isinstance(value, bool):
        return False
    return isinstance(value, (int, float))


def evaluate_condition(value: Any, condition: dict) -> bool:
    """
    Evaluate a ``when`` clause. Every operator present must hold.

    Supported operators: eq, ne, gt, gte, lt, lte, in.
    """
    for operator, expected in condition.items():
        if operator == 'eq':
            ok = value == expected
        elif operator == 'ne':
            ok = value != expected
        elif operator == 'in':
            ok = isinstance(expected, (list, tuple)) and value in expected
        elif operator in ('gt', 'gte', 'lt', 'lte'):
            if not (is_numeric(value) and is_numeric(expected)):
                return False
            ok = {
                'gt': value > expected,
                'gte': value >= expected,
                'lt': value < expected,
                'lte': value <= expected,
            }[operator]
        else:
            logger.warning(f"Unknown mapping operator: {operator}")
            return False
        if not ok:
            return False
    return True


def resolve_source(lead: dict, source: Any) -> Any:
    """Resolve one mapping entry against the lead record."""
    if isinstance(source, str):
        return get_nested_value(lead, source)

    if not isinstance(source, dict):
        logger.warning(f"Unsupported mapping entry: {source!r}")
        return None

    if 'template' in source:
        try:
            return str(source['template']).format_map(_BlankDefault(
                {key: value for key, value in lead.items() if not isinstance(value, dict)}
            ))
        except (AttributeError, IndexError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Invalid mapping template {source['template']!r}: {e}")
            return None

    value = get_nested_value(lead, source['source']) if source.get('source') else None

    if 'when' in source:
        condition = source['when']
        if not isinstance(condition, dict):
            logger.warning(f"Mapping 'when' must be an object, got {condition!r}")
            return None
        if evaluate_condition(value, condition):
            return source.get('value', value)
        return source.get('else')

    if value is None or value == '':
        return source.get('default')
    return value


def merge_field_mappings(*mappings: Optional[dict]) -> dict:
    """Merge mapping tables left to right; a ``None`` entry removes a field."""
    merged = {}
    for mapping in mappings:
        for target, source in (mapping or {}).items():
            if source is None:
                merged.pop(target, None)
            else:
                merged[target] = source
    return merged


def build_lead_record(request: Request) -> dict:
    """
    Flatten an analyzed request into the lead record field mappings read from.

    Raises:
        MissingRequiredFieldError: If the caller's phone number is missing
    """
    normalized = request.normalized_payload or {}
    details = request.call_details or {}
    analysis = request.ai_analysis or {}
    transcription = request.transcription_data or {}

    phone = normalized.get('customer_phone_number') or normalized.get('caller_id') or details.get('customer_phone_number')
    if not phone:
        raise MissingRequiredFieldError("Missing required field: phone")

    notes = []
    if analysis.get('project_type'):
        notes.append(f"Project Type: {analysis['project_type']}")
    if analysis.get('timeline'):
        notes.append(f"Timeline: {analysis['timeline']}")
    for detail in analysis.get('key_details') or []:
        notes.append(f"- {detail}")

    return {
        'tenant_id': request.tenant_id,
        'request_id': request.request_id,
        'call_id': request.call_id,
        'source': normalized.get('source') or request.source,
        'first_name': normalized.get('first_name') or '',
        'last_name': normalized.get('last_name') or '',
        'full_name': normalized.get('customer_name') or '',
        'phone': phone,
        'customer_city': normalized.get('customer_city') or details.get('customer_city') or '',
        'customer_state': normalized.get('customer_state') or details.get('customer_state') or '',
        'customer_country': normalized.get('customer_country') or details.get('customer_country') or '',
        'duration': normalized.get('duration') or 0,
        'tags': normalized.get('tags') or [],
        'recording_url': request.recording_url or '',
        'lead_score': request.lead_score,
        'spam_likelihood': request.spam_likelihood,
        'intent': analysis.get('intent'),
        'project_type': analysis.get('project_type'),
        'timeline': analysis.get('timeline'),
        'budget_indicator': analysis.get('budget_indicator'),
        'sentiment': analysis.get('sentiment'),
        'urgency': analysis.get('urgency'),
        'appointment_requested': analysis.get('appointment_requested'),
        'follow_up_required': analysis.get('follow_up_required'),
        'transcript': transcription.get('transcript') or '',
        'notes': '\n'.join(notes),
        'analysis': analysis,
    }


def apply_field_mapping(lead: dict, mapping: dict) -> Tuple[dict, List[str]]:
    """
    Build a CRM record from the lead using a mapping table.

    Returns:
        Tuple of (fields, omitted)
        - fields: CRM field values (dotted targets become nested objects)
        - omitted: Target fields whose source resolved to nothing
    """
    fields = {}
    omitted = []
    for target, source in mapping.items():
        value = resolve_source(lead, source)
        if value is None or value == '':
            omitted.append(target)
            continue
        set_nested_value(fields, target, value)

    if omitted:
        logger.debug(f"Omitted {len(omitted)} unmapped fields: {omitted}")
    logger.debug(f"Mapped lead {lead.get('request_id')} to {len(fields)} CRM fields")
    return fields, omitted
