"""
Pipedrive persons connector.
"""
import logging
from typing import Optional

from calls.services.crm.base import CRMResult, api_key_from, extract_id
from calls.services.rate_limiter import CancelToken, RetryingClient

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = 'https://api.pipedrive.com'


class PipedriveConnector:
    name = 'pipedrive'
    default_field_mapping = {
        'name': {'template': '{first_name} {last_name}'},
        'phone': 'phone',
    }

    def __init__(self, retrying: RetryingClient, timeout: float = 30.0):
        self.retrying = retrying
        self.timeout = timeout

    def _persons_url(self, config: dict) -> str:
        return f"{(config.get('base_url') or DEFAULT_BASE_URL).rstrip('/')}/v1/persons"

    def _params(self, config: dict) -> dict:
        return {'api_token': api_key_from(config, self.name)}

    def validate_connection(self, config: dict, cancel: Optional[CancelToken] = None) -> None:
        base = (config.get('base_url') or DEFAULT_BASE_URL).rstrip('/')
        self.retrying.request(
            'GET', f"{base}/v1/users/me",
            description="pipedrive connection check",
            cancel=cancel,
            timeout=self.timeout,
            params=self._params(config),
        )

    def create_or_update_contact(self, fields: dict, config: dict, external_id: Optional[str] = None,
                                 cancel: Optional[CancelToken] = None) -> CRMResult:
        payload = dict(fields)
        if not str(payload.get('name') or '').strip():
            payload['name'] = payload.get('phone') or 'Phone Lead'

        url = self._persons_url(config)
        if external_id:
            self.retrying.request(
                'PUT', f"{url}/{external_id}",
                description=f"pipedrive update person {external_id}",
                cancel=cancel,
                timeout=self.timeout,
                params=self._params(config),
                json=payload,
            )
            return CRMResult(external_id=external_id, created=False)

        response = self.retrying.request(
            'POST', url,
            description="pipedrive create person",
            cancel=cancel,
            timeout=self.timeout,
            params=self._params(config),
            json=payload,
        )
        person_id = extract_id(response, self.name, 'data', 'id')
        logger.info(f"Created Pipedrive person {person_id}")
        return CRMResult(external_id=person_id, created=True)
