"""
Validation of inbound call webhook payloads.
"""
import logging
from typing import Any, Optional, Tuple

from django.conf import settings

logger = logging.getLogger(__name__)

# Rejection codes (configurable in settings)
MISSING_REQUIRED_FIELD = getattr(settings, 'MISSING_REQUIRED_FIELD', 'MISSING_REQUIRED_FIELD')
INVALID_FIELD_VALUE = getattr(settings, 'INVALID_FIELD_VALUE', 'INVALID_FIELD_VALUE')

# Each required field may arrive under any of its aliases
REQUIRED_FIELDS = {
    'call_id': ('call_id',),
    'tenant_id': ('tenant_id',),
    'company_id': ('callrail_company_id', 'company_id'),
    'caller_id': ('caller_id', 'customer_phone_number'),
    'duration': ('duration',),
}


def first_present(payload: dict, *keys: str) -> Any:
    """Return the first non-empty value found under ``keys``."""
    for key in keys:
        value = payload.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def parse_duration(value: Any) -> Optional[int]:
    """
    Parse a call duration in seconds from an int, float or numeric string.

    Returns None for anything else, including booleans and negative values.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value
    elif isinstance(value, str):
        try:
            seconds = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if seconds != seconds or seconds < 0:
        return None
    return int(seconds)


def validate_webhook(payload: dict) -> Tuple[bool, Optional[str]]:
    """
    Validates a call webhook payload.

    Rules:
    1. call_id, tenant_id, company id (callrail_company_id or company_id),
       caller id (caller_id or customer_phone_number) and duration are present
    2. Identifiers are strings or integers
    3. duration is a non-negative number of seconds

    Args:
        payload: Parsed webhook body

    Returns:
        Tuple of (is_valid, rejection_reason)
    """
    if not isinstance(payload, dict) or not payload:
        logger.debug("Validation failed: empty or non-object payload")
        return False, MISSING_REQUIRED_FIELD

    for field, aliases in REQUIRED_FIELDS.items():
        value = first_present(payload, *aliases)
        if value is None:
            logger.debug(f"Validation failed: missing required field '{field}'")
            return False, MISSING_REQUIRED_FIELD
        if field != 'duration' and (isinstance(value, bool) or not isinstance(value, (str, int))):
            logger.debug(f"Validation failed: field '{field}' has type {type(value).__name__}")
            return False, INVALID_FIELD_VALUE

    if parse_duration(payload.get('duration')) is None:
        logger.debug(f"Validation failed: duration {payload.get('duration')!r} is not a non-negative number")
        return False, INVALID_FIELD_VALUE

    tags = payload.get('tags')
    if tags is not None and not isinstance(tags, (list, str)):
        logger.debug("Validation failed: tags is neither a list nor a string")
        return False, INVALID_FIELD_VALUE

    logger.debug("Validation passed")
    return True, None
