"""
Normalization of call webhook payloads.
"""
import logging
import re
from typing import Any

from calls.services.validation import first_present, parse_duration

logger = logging.getLogger(__name__)

NON_DIGITS = re.compile(r'[^\d+]')


def normalize_value(value: Any) -> Any:
    """
    Normalize a single value.

    - Strings: trim whitespace
    - Boolean strings: convert to actual booleans
    """
    if isinstance(value, str):
        trimmed = value.strip()
        if trimmed.lower() == 'true':
            return True
        elif trimmed.lower() == 'false':
            return False
        return trimmed
    return value


def normalize_dict(data: dict) -> dict:
    """
    Recursively normalize all values in a dictionary.
    """
    result = {}
    for key, value in data.items():
        if isinstance(value, dict):
            result[key] = normalize_dict(value)
        elif isinstance(value, list):
            result[key] = [normalize_value(item) if not isinstance(item, dict)
                           else normalize_dict(item) for item in value]
        else:
            result[key] = normalize_value(value)
    return result


def normalize_phone(value: Any) -> str:
    """Strip formatting from a phone number, keeping a leading '+'."""
    if value is None:
        return ''
    digits = NON_DIGITS.sub('', str(value))
    if digits.startswith('+'):
        return '+' + digits[1:].replace('+', '')
    return digits.replace('+', '')


def split_name(full_name: str) -> tuple:
    """Split 'First Middle Last' into ('First Middle', 'Last')."""
    parts = full_name.split()
    if not parts:
        return '', ''
    if len(parts) == 1:
        return parts[0], ''
    return ' '.join(parts[:-1]), parts[-1]


def normalize_tags(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, str):
        return [tag.strip() for tag in value.split(',') if tag.strip()]
    return [str(tag).strip() for tag in value if str(tag).strip()]


def normalize(payload: dict) -> dict:
    """
    Normalizes a call webhook into the fields the pipeline works with.

    Operations:
    - Trim whitespace from all string fields (recursively)
    - Collapse company/caller aliases into ``company_id`` and ``caller_id``
    - Strip phone number formatting
    - Convert duration to whole seconds
    - Turn tags into a list and split the customer name

    Args:
        payload: Validated webhook payload

    Returns:
        Normalized payload
    """
    if not payload:
        return {}

    cleaned = normalize_dict(payload)

    customer_name = cleaned.get('customer_name') or ''
    if not isinstance(customer_name, str):
        customer_name = str(customer_name)
    first_name, last_name = split_name(customer_name)

    normalized = {
        'call_id': str(cleaned.get('call_id', '')),
        'tenant_id': str(cleaned.get('tenant_id', '')),
        'company_id': str(first_present(cleaned, 'callrail_company_id', 'company_id') or ''),
        'account_id': str(cleaned.get('account_id') or ''),
        'caller_id': normalize_phone(first_present(cleaned, 'caller_id', 'customer_phone_number')),
        'customer_phone_number': normalize_phone(
            first_present(cleaned, 'customer_phone_number', 'caller_id')
        ),
        'called_number': normalize_phone(cleaned.get('called_number')),
        'business_phone_number': normalize_phone(cleaned.get('business_phone_number')),
        'duration': parse_duration(cleaned.get('duration')) or 0,
        'direction': cleaned.get('direction') or '',
        'answered': cleaned.get('answered') is True,
        'first_call': cleaned.get('first_call') is True,
        'start_time': cleaned.get('start_time') or '',
        'recording_url': cleaned.get('recording_url') or '',
        'customer_name': customer_name,
        'first_name': first_name,
        'last_name': last_name,
        'customer_city': cleaned.get('customer_city') or '',
        'customer_state': cleaned.get('customer_state') or '',
        'customer_country': cleaned.get('customer_country') or '',
        'source': cleaned.get('source') or '',
        'lead_status': cleaned.get('lead_status') or '',
        'note': cleaned.get('note') or '',
        'tags': normalize_tags(cleaned.get('tags')),
    }

    logger.debug(f"Normalized call payload: {normalized}")
    return normalized
