import json
import os
import sys
from unittest.mock import patch

import httpx
import pytest

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'call_gateway.settings')
os.environ.setdefault('USE_SQLITE_FOR_TESTS', 'true')

from calls.tests.fakes import (  # noqa: E402
    ANALYSIS_URL,
    CALL_PROVIDER_BASE_URL,
    TRANSCRIPTION_URL,
    WEBHOOK_SECRET,
    FakeApis,
    sign,
)


@pytest.fixture(autouse=True)
def outbound_settings(settings, tmp_path):
    """Point every outbound dependency at the fake hosts and disable backoff sleeps."""
    settings.CALL_PROVIDER_API_BASE_URL = CALL_PROVIDER_BASE_URL
    settings.TRANSCRIPTION_API_URL = TRANSCRIPTION_URL
    settings.ANALYSIS_API_URL = ANALYSIS_URL
    settings.OUTBOUND_MAX_ATTEMPTS = 4
    settings.OUTBOUND_BACKOFF_SECONDS = 0
    settings.OUTBOUND_BACKOFF_MAX_SECONDS = 0
    settings.OUTBOUND_TOKEN_WAIT_SECONDS = 1
    settings.AUDIO_STORAGE_URI_PREFIX = ''
    settings.WEBHOOK_REPLAY_WINDOW_SECONDS = 300
    settings.RECORDING_NOT_READY_MAX_RETRIES = 2
    return settings


@pytest.fixture
def tenant(db):
    from calls.models import Tenant

    return Tenant.objects.create(tenant_id='T1', name='Acme Remodeling', webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def office(tenant):
    from calls.models import Office

    return Office.objects.create(
        tenant=tenant,
        name='Austin',
        external_company_id='C1',
        call_provider_account_id='ACC1',
        call_provider_api_key_ref='callrail-api-key',
    )


@pytest.fixture
def other_tenant(db):
    from calls.models import Office, Tenant

    other = Tenant.objects.create(tenant_id='T2', name='Other Builders', webhook_secret='other-secret')
    Office.objects.create(
        tenant=other,
        name='Dallas',
        external_company_id='C2',
        call_provider_account_id='ACC2',
        call_provider_api_key_ref='other-api-key',
    )
    return other


@pytest.fixture
def call_payload():
    """Return a valid call webhook payload for testing."""
    return {
        'call_id': 'CAL1',
        'tenant_id': 'T1',
        'callrail_company_id': 'C1',
        'account_id': 'ACC1',
        'caller_id': '+1 (555) 555-0100',
        'customer_name': '  Jane Homeowner ',
        'customer_city': 'Austin',
        'customer_state': 'TX',
        'duration': '185',
        'direction': 'inbound',
        'answered': 'true',
        'source': 'Google Ads',
        'tags': 'kitchen, remodel',
    }


@pytest.fixture
def fake_apis():
    return FakeApis()


@pytest.fixture
def pipeline(fake_apis, tmp_path, outbound_settings):
    """A pipeline wired to ``fake_apis``, installed as the tasks' pipeline."""
    from django.core.files.storage import FileSystemStorage

    from calls.pipeline import build_pipeline

    built = build_pipeline(
        transport=httpx.MockTransport(fake_apis),
        storage=FileSystemStorage(location=str(tmp_path / 'audio')),
    )
    with patch('calls.tasks.get_pipeline', return_value=built):
        yield built


@pytest.fixture
def post_webhook():
    """Post a signed call webhook through the test client."""
    from rest_framework.test import APIClient

    client = APIClient()

    def _post(payload, secret=WEBHOOK_SECRET, signature=None, headers=None):
        body = json.dumps(payload).encode('utf-8')
        headers = headers or {}
        if signature is None:
            signature = sign(body, secret, timestamp=headers.get('HTTP_X_WEBHOOK_TIMESTAMP'))
        extra = {'HTTP_X_WEBHOOK_SIGNATURE': signature}
        extra.update(headers)
        return client.post('/webhooks/calls/', data=body, content_type='application/json', **extra)

    return _post
