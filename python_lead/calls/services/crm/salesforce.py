"""
Salesforce Lead connector.
"""
import logging
from typing import Optional

from calls.services.crm.base import CRMResult, api_key_from, extract_id, require
from calls.services.rate_limiter import CancelToken, RetryingClient

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = '59.0'


class SalesforceConnector:
    name = 'salesforce'
    default_field_mapping = {
        'FirstName': 'first_name',
        'LastName': {'source': 'last_name', 'default': 'Unknown'},
        'Company': {'source': 'full_name', 'default': 'Phone Lead'},
        'Phone': 'phone',
        'City': 'customer_city',
        'State': 'customer_state',
        'LeadSource': 'source',
        'Description': 'notes',
    }

    def __init__(self, retrying: RetryingClient, timeout: float = 30.0):
        self.retrying = retrying
        self.timeout = timeout

    def _base(self, config: dict) -> str:
        instance_url = require(config, 'instance_url', self.name).rstrip('/')
        return f"{instance_url}/services/data/v{config.get('api_version') or DEFAULT_API_VERSION}"

    def _headers(self, config: dict) -> dict:
        return {
            'Authorization': f"Bearer {api_key_from(config, self.name, key='access_token')}",
            'Content-Type': 'application/json',
        }

    def validate_connection(self, config: dict, cancel: Optional[CancelToken] = None) -> None:
        self.retrying.request(
            'GET', f"{self._base(config)}/limits",
            description="salesforce connection check",
            cancel=cancel,
            timeout=self.timeout,
            headers=self._headers(config),
        )

    def create_or_update_contact(self, fields: dict, config: dict, external_id: Optional[str] = None,
                                 cancel: Optional[CancelToken] = None) -> CRMResult:
        url = f"{self._base(config)}/sobjects/Lead"
        if external_id:
            self.retrying.request(
                'PATCH', f"{url}/{external_id}",
                description=f"salesforce update lead {external_id}",
                cancel=cancel,
                timeout=self.timeout,
                headers=self._headers(config),
                json=fields,
            )
            return CRMResult(external_id=external_id, created=False)

        response = self.retrying.request(
            'POST', f"{url}/",
            description="salesforce create lead",
            cancel=cancel,
            timeout=self.timeout,
            headers=self._headers(config),
            json=fields,
        )
        lead_id = extract_id(response, self.name, 'id')
        logger.info(f"Created Salesforce lead {lead_id}")
        return CRMResult(external_id=lead_id, created=True)
