"""
Client for the call-provider (CallRail) REST API.
"""
import logging
from typing import Optional

from calls.services.errors import NotYetAvailableError
from calls.services.rate_limiter import CancelToken, RetryingClient, json_object

logger = logging.getLogger(__name__)


class CallProviderClient:
    """
    Fetches call details and recordings. Every request goes through the
    shared ``RetryingClient`` and therefore the provider's rate limit.
    """

    def __init__(self, retrying: RetryingClient, base_url: str, timeout: float = 30.0):
        self.retrying = retrying
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    @staticmethod
    def _headers(api_key: str) -> dict:
        return {
            'Authorization': f'Token token="{api_key}"',
            'Accept': 'application/json',
        }

    def get_call_details(self, account_id: str, call_id: str, api_key: str,
                         cancel: Optional[CancelToken] = None) -> dict:
        url = f"{self.base_url}/a/{account_id}/calls/{call_id}.json"
        response = self.retrying.request(
            'GET', url,
            description=f"call details {call_id}",
            cancel=cancel,
            timeout=self.timeout,
            headers=self._headers(api_key),
        )
        return json_object(response, self.retrying.name, f"call details {call_id}")

    def get_recording(self, account_id: str, call_id: str, api_key: str,
                      cancel: Optional[CancelToken] = None) -> dict:
        """
        Fetch recording metadata.

        Raises:
            NotYetAvailableError: If the recording has no download URL yet
        """
        url = f"{self.base_url}/a/{account_id}/calls/{call_id}/recording.json"
        response = self.retrying.request(
            'GET', url,
            description=f"recording metadata {call_id}",
            cancel=cancel,
            timeout=self.timeout,
            headers=self._headers(api_key),
        )
        recording = json_object(response, self.retrying.name, f"recording metadata {call_id}")
        if not recording.get('recording_url') and not recording.get('url'):
            raise NotYetAvailableError(
                f"recording for call {call_id} has no download URL yet",
                dependency=self.retrying.name
            )
        return recording

    def download_recording(self, recording_url: str, api_key: str,
                           cancel: Optional[CancelToken] = None) -> bytes:
        """
        Download recording bytes, following provider redirects.

        Raises:
            NotYetAvailableError: If the provider returned an empty body
        """
        response = self.retrying.request(
            'GET', recording_url,
            description="recording download",
            cancel=cancel,
            timeout=self.timeout,
            headers={'Authorization': f'Token token="{api_key}"'},
            follow_redirects=True,
        )
        content = response.content
        if not content:
            raise NotYetAvailableError("recording download returned no audio", dependency=self.retrying.name)
        logger.debug(f"Downloaded {len(content)} bytes of audio")
        return content
