"""
Contract shared by every CRM connector.
"""
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from calls.services.errors import PermanentDependencyError, PipelineError
from calls.services.rate_limiter import CancelToken
from calls.services.secrets import SecretNotConfigured, resolve_secret


@dataclass
class CRMResult:
    external_id: str
    created: bool


class CRMConfigurationError(PipelineError):
    """The integration row is missing settings the connector needs."""
    pass


class CRMConnector(Protocol):
    name: str
    default_field_mapping: dict

    def validate_connection(self, config: dict, cancel: Optional[CancelToken] = None) -> None:
        ...

    def create_or_update_contact(self, fields: dict, config: dict, external_id: Optional[str] = None,
                                 cancel: Optional[CancelToken] = None) -> CRMResult:
        ...


def require(config: dict, key: str, crm_type: str) -> str:
    value = config.get(key)
    if not value:
        raise CRMConfigurationError(f"{crm_type} integration is missing '{key}'")
    return value


def api_key_from(config: dict, crm_type: str, key: str = 'api_key') -> str:
    """Resolve the integration's credential reference."""
    try:
        return resolve_secret(require(config, key, crm_type))
    except SecretNotConfigured as e:
        raise CRMConfigurationError(f"{crm_type} credential unavailable: {e}")


def extract_id(response: httpx.Response, crm_type: str, *path: str) -> str:
    """
    Read the created record id from a CRM response body.

    Raises:
        PermanentDependencyError: If the body has no id at ``path``
    """
    try:
        value = response.json()
        for key in path:
            value = value[key]
    except (ValueError, KeyError, IndexError, TypeError):
        raise PermanentDependencyError(
            f"{crm_type} response has no record id",
            dependency=crm_type,
            status_code=response.status_code
        )
    return str(value)
