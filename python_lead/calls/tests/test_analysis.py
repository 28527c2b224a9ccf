"""
Unit tests for content analysis parsing and the analysis orchestrator.
"""
import json
from unittest.mock import Mock

import pytest
from hypothesis import given, settings
import hypothesis.strategies as st

from calls.models import AIProcessingLog, Request
from calls.repository import TenantRepository
from calls.services.analysis import (
    AnalysisClient,
    ContentAnalysisOrchestrator,
    build_content_prompt,
    build_spam_prompt,
    call_metadata,
    extract_json,
    parse_content_analysis,
    parse_spam_assessment,
)
from calls.services.errors import AnalysisParseError, TransientDependencyError
from calls.services.workflow import load_workflow_config
from calls.tests.fakes import CONTENT_ANALYSIS, SPAM_ASSESSMENT


def _content(**overrides):
    data = dict(CONTENT_ANALYSIS)
    data.update(overrides)
    return json.dumps(data)


class TestExtractJson:

    def test_plain_json(self):
        assert extract_json('{"a": 1}') == {'a': 1}

    def test_markdown_fence(self):
        assert extract_json('```json\n{"a": 1}\n```') == {'a': 1}

    def test_surrounding_prose(self):
        assert extract_json('Here you go: {"a": 1} hope that helps') == {'a': 1}

    def test_bare_number(self):
        assert extract_json('42') == 42

    def test_garbage(self):
        with pytest.raises(AnalysisParseError):
            extract_json('I cannot help with that')

    def test_empty(self):
        with pytest.raises(AnalysisParseError):
            extract_json('   ')


class TestParseContentAnalysis:

    def test_valid_response(self):
        result = parse_content_analysis(_content())
        assert result['lead_score'] == 87
        assert result['intent'] == 'quote_request'
        assert result['key_details'] == CONTENT_ANALYSIS['key_details']

    def test_choices_are_case_insensitive(self):
        result = parse_content_analysis(_content(project_type='Kitchen', urgency=' HIGH '))
        assert result['project_type'] == 'kitchen'
        assert result['urgency'] == 'high'

    def test_key_details_optional(self):
        data = dict(CONTENT_ANALYSIS)
        del data['key_details']
        assert parse_content_analysis(json.dumps(data))['key_details'] == []

    @pytest.mark.parametrize('score', [0, 101, -5, 250])
    def test_score_out_of_range(self, score):
        with pytest.raises(AnalysisParseError):
            parse_content_analysis(_content(lead_score=score))

    @pytest.mark.parametrize('score', ['87', 'high', None, True, 87.5])
    def test_score_not_an_integer(self, score):
        with pytest.raises(AnalysisParseError):
            parse_content_analysis(_content(lead_score=score))

    def test_unknown_choice(self):
        with pytest.raises(AnalysisParseError):
            parse_content_analysis(_content(intent='buy_a_boat'))

    def test_missing_field(self):
        data = dict(CONTENT_ANALYSIS)
        del data['sentiment']
        with pytest.raises(AnalysisParseError):
            parse_content_analysis(json.dumps(data))

    def test_json_array(self):
        with pytest.raises(AnalysisParseError) as exc_info:
            parse_content_analysis('[1, 2, 3]')
        assert exc_info.value.raw_response == '[1, 2, 3]'

    @settings(max_examples=100)
    @given(score=st.integers(min_value=1, max_value=100))
    def test_any_score_in_range_accepted(self, score):
        assert parse_content_analysis(_content(lead_score=score))['lead_score'] == score

    @settings(max_examples=100)
    @given(score=st.one_of(st.integers(max_value=0), st.integers(min_value=101)))
    def test_any_score_out_of_range_rejected(self, score):
        with pytest.raises(AnalysisParseError):
            parse_content_analysis(_content(lead_score=score))


class TestParseSpamAssessment:

    def test_object(self):
        result = parse_spam_assessment(json.dumps(SPAM_ASSESSMENT))
        assert result['spam_likelihood'] == 8
        assert result['confidence'] == 0.9

    def test_bare_number(self):
        assert parse_spam_assessment('85')['spam_likelihood'] == 85

    def test_fractional_likelihood(self):
        assert parse_spam_assessment('{"spam_likelihood": 12.5}')['spam_likelihood'] == 12.5

    @pytest.mark.parametrize('value', [-1, 100.5, '"high"', 'null', 'true'])
    def test_invalid_likelihood(self, value):
        with pytest.raises(AnalysisParseError):
            parse_spam_assessment(f'{{"spam_likelihood": {value}}}')

    def test_missing_likelihood(self):
        with pytest.raises(AnalysisParseError):
            parse_spam_assessment('{"reasoning": "looks fine"}')

    @settings(max_examples=100)
    @given(likelihood=st.floats(min_value=0, max_value=100, allow_nan=False))
    def test_any_likelihood_in_range_accepted(self, likelihood):
        result = parse_spam_assessment(json.dumps({'spam_likelihood': likelihood}))
        assert result['spam_likelihood'] == pytest.approx(likelihood)


class TestPrompts:

    def _metadata(self):
        return {
            'customer_name': 'Jane Homeowner',
            'customer_phone_number': '+15555550100',
            'customer_city': 'Austin',
            'customer_state': 'TX',
            'duration': 185,
            'source': 'Google Ads',
            'tags': ['kitchen', 'remodel'],
            'lead_status': 'good_lead',
        }

    def test_content_prompt(self):
        prompt = build_content_prompt('I need a new kitchen', self._metadata())
        assert 'TRANSCRIPT: I need a new kitchen' in prompt
        assert '- Customer Location: Austin, TX' in prompt
        assert '- Tags: kitchen, remodel' in prompt
        assert '"lead_score": 1-100' in prompt

    def test_spam_prompt(self):
        prompt = build_spam_prompt('Press one to win', self._metadata())
        assert 'spam likelihood' in prompt
        assert 'DURATION: 185 seconds' in prompt

    def test_transcript_with_braces(self):
        prompt = build_content_prompt('budget {maybe} 40k', self._metadata())
        assert 'budget {maybe} 40k' in prompt


@pytest.mark.django_db
class TestCallMetadata:

    def test_details_win_over_webhook(self, office):
        request = Request(
            tenant_id='T1',
            call_id='CAL1',
            source='callrail',
            raw_payload={},
            normalized_payload={'customer_name': 'Jane', 'customer_city': 'Austin', 'tags': ['a'], 'duration': 10},
        )
        metadata = call_metadata(request, {'customer_city': 'Round Rock', 'duration': 185})
        assert metadata['customer_name'] == 'Jane'
        assert metadata['customer_city'] == 'Round Rock'
        assert metadata['duration'] == 185
        assert metadata['tags'] == ['a']
        assert metadata['source'] == 'callrail'


@pytest.mark.django_db
class TestContentAnalysisOrchestrator:

    @pytest.fixture
    def request_row(self, office):
        repo = TenantRepository('T1')
        row, _ = repo.upsert_request('CAL1', {'call_id': 'CAL1'}, {'call_id': 'CAL1'}, office=office)
        return row

    def _orchestrator(self, responses, attempts=3):
        client = Mock(spec=AnalysisClient)
        client.model = 'test-model'
        client.generate.side_effect = responses
        return ContentAnalysisOrchestrator(client, parse_max_attempts=attempts), client

    def test_content_and_spam(self, request_row):
        orchestrator, client = self._orchestrator([_content(), json.dumps(SPAM_ASSESSMENT)])
        repo = TenantRepository('T1')

        result = orchestrator.analyze(repo, request_row, 'transcript', _metadata(), load_workflow_config({}))

        assert result.lead_score == 87
        assert result.spam_likelihood == 8
        assert result.spam_assessment['reasoning'] == SPAM_ASSESSMENT['reasoning']
        logs = repo.list_ai_logs(request_row.request_id)
        assert [(log.analysis_type, log.status) for log in logs] == [
            (AIProcessingLog.AnalysisType.CONTENT, AIProcessingLog.Status.SUCCESS),
            (AIProcessingLog.AnalysisType.SPAM, AIProcessingLog.Status.SUCCESS),
        ]

    def test_spam_detection_disabled(self, request_row):
        orchestrator, client = self._orchestrator([_content()])
        workflow = load_workflow_config({'validation': {'spam_detection': {'enabled': False}}})

        result = orchestrator.analyze(TenantRepository('T1'), request_row, 'transcript', _metadata(), workflow)

        assert result.spam_likelihood is None
        assert client.generate.call_count == 1

    def test_parse_error_retried_then_success(self, request_row):
        orchestrator, client = self._orchestrator([
            'not json at all',
            _content(lead_score=150),
            _content(),
            json.dumps(SPAM_ASSESSMENT),
        ])
        repo = TenantRepository('T1')

        result = orchestrator.analyze(repo, request_row, 'transcript', _metadata(), load_workflow_config({}))

        assert result.lead_score == 87
        statuses = [(log.status, log.attempt_no) for log in repo.list_ai_logs(request_row.request_id)]
        assert statuses[:3] == [
            (AIProcessingLog.Status.PARSE_ERROR, 1),
            (AIProcessingLog.Status.PARSE_ERROR, 2),
            (AIProcessingLog.Status.SUCCESS, 3),
        ]

    def test_parse_attempts_exhausted(self, request_row):
        orchestrator, client = self._orchestrator(['nope', 'still nope'], attempts=2)
        with pytest.raises(AnalysisParseError):
            orchestrator.analyze(TenantRepository('T1'), request_row, 'transcript', _metadata(),
                                 load_workflow_config({}))
        assert client.generate.call_count == 2

    def test_dependency_error_propagates_without_parse_retry(self, request_row):
        orchestrator, client = self._orchestrator([TransientDependencyError('analysis down', dependency='analysis')])
        repo = TenantRepository('T1')
        with pytest.raises(TransientDependencyError):
            orchestrator.analyze(repo, request_row, 'transcript', _metadata(), load_workflow_config({}))
        assert client.generate.call_count == 1
        assert repo.list_ai_logs(request_row.request_id)[0].status == AIProcessingLog.Status.FAILED


def _metadata():
    return {
        'customer_name': '',
        'customer_phone_number': '+15555550100',
        'customer_city': '',
        'customer_state': '',
        'duration': 185,
        'source': 'callrail',
        'tags': [],
        'lead_status': '',
    }
