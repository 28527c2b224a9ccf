"""
Generic JSON webhook connector for CRMs without a dedicated integration.
"""
import json
import logging
from typing import Optional

import httpx

from calls.services.crm.base import CRMResult, CRMConfigurationError, require
from calls.services.rate_limiter import CancelToken, RetryingClient
from calls.services.secrets import SecretNotConfigured, resolve_secret

logger = logging.getLogger(__name__)


def _format_response(response: httpx.Response) -> str:
    """Return a readable response string (pretty JSON if possible)."""
    try:
        data = response.json()
        return json.dumps(data, indent=2, ensure_ascii=False)
    except ValueError:
        return response.text


class WebhookConnector:
    """
    POSTs the mapped lead to a configured URL.

    Config keys: ``url`` (required), ``authorization`` (secret reference sent
    verbatim as the Authorization header), ``referer`` and ``health_url``
    (optional).
    """
    name = 'webhook'
    default_field_mapping = {
        'phone': 'phone',
        'first_name': 'first_name',
        'last_name': 'last_name',
        'city': 'customer_city',
        'state': 'customer_state',
        'lead_score': 'lead_score',
        'project_type': 'project_type',
        'timeline': 'timeline',
        'call_id': 'call_id',
        'notes': 'notes',
    }

    def __init__(self, retrying: RetryingClient, timeout: float = 30.0):
        self.retrying = retrying
        self.timeout = timeout

    def _headers(self, config: dict) -> dict:
        headers = {'Content-Type': 'application/json'}
        if config.get('authorization'):
            try:
                headers['Authorization'] = resolve_secret(config['authorization'])
            except SecretNotConfigured as e:
                raise CRMConfigurationError(f"webhook credential unavailable: {e}")
        if config.get('referer'):
            headers['Referer'] = config['referer']
        return headers

    def validate_connection(self, config: dict, cancel: Optional[CancelToken] = None) -> None:
        url = config.get('health_url') or require(config, 'url', self.name)
        method = 'GET' if config.get('health_url') else 'HEAD'
        self.retrying.request(
            method, url,
            description="webhook connection check",
            cancel=cancel,
            timeout=self.timeout,
            headers=self._headers(config),
        )

    def create_or_update_contact(self, fields: dict, config: dict, external_id: Optional[str] = None,
                                 cancel: Optional[CancelToken] = None) -> CRMResult:
        url = require(config, 'url', self.name)
        logger.info(f"Sending lead to CRM webhook: {url}")
        logger.debug(f"Payload: {fields}")

        response = self.retrying.request(
            'POST', url,
            description="crm webhook push",
            cancel=cancel,
            timeout=self.timeout,
            headers=self._headers(config),
            json={'external_id': external_id, 'fields': fields},
        )
        logger.info(f"CRM webhook response: {response.status_code}")
        logger.debug("CRM webhook response body:\n%s", _format_response(response))

        try:
            body = response.json()
        except ValueError:
            body = {}
        returned_id = body.get('id') or body.get('external_id') if isinstance(body, dict) else None
        record_id = str(returned_id or external_id or fields.get('call_id') or '')
        if not record_id:
            logger.warning(f"CRM webhook {url} returned no record id and no call_id is mapped")
        return CRMResult(external_id=record_id, created=external_id is None)
