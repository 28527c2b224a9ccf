"""
HubSpot contacts connector.
"""
import logging
from typing import Optional

from calls.services.crm.base import CRMResult, api_key_from, extract_id
from calls.services.rate_limiter import CancelToken, RetryingClient

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = 'https://api.hubapi.com'


class HubSpotConnector:
    name = 'hubspot'
    default_field_mapping = {
        'firstname': 'first_name',
        'lastname': 'last_name',
        'phone': 'phone',
        'city': 'customer_city',
        'state': 'customer_state',
        'notes': 'notes',
    }

    def __init__(self, retrying: RetryingClient, timeout: float = 30.0):
        self.retrying = retrying
        self.timeout = timeout

    def _headers(self, config: dict) -> dict:
        return {
            'Authorization': f"Bearer {api_key_from(config, self.name)}",
            'Content-Type': 'application/json',
        }

    def _contacts_url(self, config: dict) -> str:
        return f"{(config.get('base_url') or DEFAULT_BASE_URL).rstrip('/')}/crm/v3/objects/contacts"

    def validate_connection(self, config: dict, cancel: Optional[CancelToken] = None) -> None:
        self.retrying.request(
            'GET', self._contacts_url(config),
            description="hubspot connection check",
            cancel=cancel,
            timeout=self.timeout,
            headers=self._headers(config),
            params={'limit': 1},
        )

    def create_or_update_contact(self, fields: dict, config: dict, external_id: Optional[str] = None,
                                 cancel: Optional[CancelToken] = None) -> CRMResult:
        url = self._contacts_url(config)
        if external_id:
            self.retrying.request(
                'PATCH', f"{url}/{external_id}",
                description=f"hubspot update contact {external_id}",
                cancel=cancel,
                timeout=self.timeout,
                headers=self._headers(config),
                json={'properties': fields},
            )
            return CRMResult(external_id=external_id, created=False)

        response = self.retrying.request(
            'POST', url,
            description="hubspot create contact",
            cancel=cancel,
            timeout=self.timeout,
            headers=self._headers(config),
            json={'properties': fields},
        )
        contact_id = extract_id(response, self.name, 'id')
        logger.info(f"Created HubSpot contact {contact_id}")
        return CRMResult(external_id=contact_id, created=True)
