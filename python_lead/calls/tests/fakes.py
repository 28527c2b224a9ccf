"""
Fake outbound dependencies and canned responses shared by the test suite.
"""
import json

import httpx


WEBHOOK_SECRET = 'whsec-test-secret'
CALL_PROVIDER_BASE_URL = 'https://callprovider.test/v3'
RECORDING_URL = 'https://recordings.test/calls/CAL1.mp3'
TRANSCRIPTION_URL = 'https://speech.test/v1/speech:recognize'
ANALYSIS_URL = 'https://analysis.test/v1/models/gemini:predict'
CRM_WEBHOOK_URL = 'https://crm.test/leads'

AUDIO_BYTES = b'ID3\x03\x00fake-mp3-audio'

CONTENT_ANALYSIS = {
    'intent': 'quote_request',
    'project_type': 'kitchen',
    'timeline': '1-3_months',
    'budget_indicator': 'high',
    'sentiment': 'positive',
    'lead_score': 87,
    'urgency': 'medium',
    'appointment_requested': True,
    'follow_up_required': True,
    'key_details': ['Wants a full kitchen remodel', 'Has a 40k budget'],
}

SPAM_ASSESSMENT = {
    'spam_likelihood': 8,
    'confidence': 0.9,
    'indicators': [],
    'reasoning': 'Genuine homeowner asking for a quote',
}

TRANSCRIPTION_RESPONSE = {
    'results': [
        {
            'alternatives': [{
                'transcript': 'Hi I would like a quote for my kitchen',
                'confidence': 0.92,
                'words': [
                    {'word': 'Hi', 'startTime': '0s', 'endTime': '0.4s', 'confidence': 0.9, 'speakerTag': 1},
                    {'word': 'I', 'startTime': '0.5s', 'endTime': '0.6s', 'confidence': 0.95, 'speakerTag': 1},
                    {'word': 'would', 'startTime': '0.6s', 'endTime': '0.9s', 'confidence': 0.93, 'speakerTag': 1},
                    {'word': 'like', 'startTime': '0.9s', 'endTime': '1.1s', 'confidence': 0.94, 'speakerTag': 1},
                    {'word': 'a', 'startTime': '1.1s', 'endTime': '1.2s', 'confidence': 0.9, 'speakerTag': 1},
                    {'word': 'quote', 'startTime': '1.2s', 'endTime': '1.6s', 'confidence': 0.97, 'speakerTag': 1},
                ],
            }],
        },
        {
            'alternatives': [{
                'transcript': 'Sure when works for you',
                'confidence': 0.88,
                'words': [
                    {'word': 'Sure', 'startTime': '2.0s', 'endTime': '2.3s', 'confidence': 0.9, 'speakerTag': 2},
                    {'word': 'when', 'startTime': '2.4s', 'endTime': '2.6s', 'confidence': 0.86, 'speakerTag': 2},
                    {'word': 'works', 'startTime': '2.6s', 'endTime': '2.9s', 'confidence': 0.88, 'speakerTag': 2},
                ],
            }],
        },
    ]
}


def sign(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: str = None) -> str:
    from calls.services.signature import compute_signature, signed_payload

    return f"sha256={compute_signature(signed_payload(body, timestamp), secret)}"


class FakeApis:
    """
    In-process stand-in for every outbound dependency, served through
    ``httpx.MockTransport``.

    ``failures`` maps a route name to a list of status codes returned (in
    order) before the route starts answering normally.
    ``bodies`` maps a route name to a raw 200 body served instead of the
    canned JSON.
    """

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.bodies = {}
        self.recording = {'recording_url': RECORDING_URL}
        self.audio = AUDIO_BYTES
        self.transcription = TRANSCRIPTION_RESPONSE
        self.content_responses = [json.dumps(CONTENT_ANALYSIS)]
        self.spam_responses = [json.dumps(SPAM_ASSESSMENT)]
        self.crm_response = {'id': 'crm-lead-1'}

    def count(self, route: str) -> int:
        return sum(1 for name, _ in self.calls if name == route)

    def requests_for(self, route: str) -> list:
        return [request for name, request in self.calls if name == route]

    def _route(self, request: httpx.Request) -> str:
        host = request.url.host
        path = request.url.path
        if host == 'callprovider.test':
            return 'recording' if path.endswith('/recording.json') else 'call_details'
        if host == 'recordings.test':
            return 'download'
        if host == 'speech.test':
            return 'transcription'
        if host == 'analysis.test':
            prompt = json.loads(request.content)['instances'][0]['inputs']
            return 'spam' if 'spam likelihood' in prompt else 'content'
        if host == 'crm.test':
            return 'crm'
        return 'unknown'

    def _next_failure(self, route: str):
        pending = self.failures.get(route) or []
        if pending:
            return pending.pop(0)
        return None

    def _prediction(self, responses: list) -> httpx.Response:
        text = responses.pop(0) if len(responses) > 1 else responses[0]
        return httpx.Response(200, json={'predictions': [{'content': text}]})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        route = self._route(request)
        self.calls.append((route, request))

        failure = self._next_failure(route)
        if failure is not None:
            if failure == 'timeout':
                raise httpx.ConnectTimeout("timed out", request=request)
            return httpx.Response(failure, json={'error': 'failure'})

        if route in self.bodies:
            return httpx.Response(200, content=self.bodies[route], headers={'Content-Type': 'text/html'})

        if route == 'call_details':
            return httpx.Response(200, json={
                'id': 'CAL1',
                'customer_name': 'Jane Homeowner',
                'customer_phone_number': '+15555550100',
                'customer_city': 'Austin',
                'customer_state': 'TX',
                'duration': 185,
                'source': 'Google Ads',
                'tags': ['kitchen'],
            })
        if route == 'recording':
            return httpx.Response(200, json=self.recording)
        if route == 'download':
            return httpx.Response(200, content=self.audio, headers={'Content-Type': 'audio/mpeg'})
        if route == 'transcription':
            return httpx.Response(200, json=self.transcription)
        if route == 'content':
            return self._prediction(self.content_responses)
        if route == 'spam':
            return self._prediction(self.spam_responses)
        if route == 'crm':
            return httpx.Response(200, json=self.crm_response)
        return httpx.Response(404, json={'error': 'no such route'})


