"""LLM collaborator: reply parsing, retries and the never-raise contract."""

import pytest

import llm_service
from llm_service import ParsedFallback, ParsedOk, generate_json, parse_json_reply
from token_budget import TokenTracker, truncate_history, truncate_text

FAKE_PROVIDER = {'name': 'gemini', 'base_url': 'http://llm.test/', 'api_key': 'k',
                 'model': 'gemini-test', 'max_context': 1000}


@pytest.fixture
def provider(monkeypatch):
    monkeypatch.setattr(llm_service, '_PROVIDERS', [FAKE_PROVIDER])
    monkeypatch.setattr(llm_service, 'LLM_ENABLED', True)
    monkeypatch.setattr(llm_service.time, 'sleep', lambda s: None)


def scripted_provider(monkeypatch, *outcomes):
    calls = []

    def fake_call(provider, messages, max_tokens, temperature, timeout, json_mode=True):
        calls.append({'messages': messages, 'timeout': timeout, 'json_mode': json_mode})
        outcome = outcomes[min(len(calls), len(outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(llm_service, '_call_provider', fake_call)
    return calls


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


@pytest.mark.parametrize('raw', [
    '{"next_question": "Why us?"}',
    '```json\n{"next_question": "Why us?"}\n```',
    'Sure! Here it is: {"next_question": "Why us?"} Good luck.',
])
def test_parse_json_reply_accepts_common_shapes(raw):
    result = parse_json_reply(raw)
    assert isinstance(result, ParsedOk)
    assert result.data['next_question'] == 'Why us?'


def test_parse_json_reply_rejects_prose():
    result = parse_json_reply('I cannot help with that.')
    assert isinstance(result, ParsedFallback)
    assert result.reason == 'invalid_json'


def test_parse_json_reply_rejects_arrays():
    assert parse_json_reply('[1, 2]').reason == 'not_an_object'


def test_parse_json_reply_reports_missing_keys():
    result = parse_json_reply('{"cover_letter": "Hi", "pitch": ""}',
                              required_keys=('cover_letter', 'pitch'))
    assert result.reason == 'missing_keys'
    assert result.missing == ['pitch']


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------


def test_generate_json_when_disabled(monkeypatch):
    monkeypatch.setattr(llm_service, 'LLM_ENABLED', False)
    assert generate_json('anything', task='letter').reason == 'llm_disabled'


def test_generate_json_upstream_error_is_a_fallback(provider, monkeypatch):
    scripted_provider(monkeypatch, ValueError('boom'))
    result = generate_json('prompt', task='letter')
    assert isinstance(result, ParsedFallback)
    assert result.reason == 'upstream_error'


def test_timeout_is_not_retried(provider, monkeypatch):
    calls = scripted_provider(monkeypatch, TimeoutError('Request timed out'))
    with pytest.raises(RuntimeError):
        llm_service._call_llm_chat([{'role': 'user', 'content': 'hi'}], _retries=2)
    assert len(calls) == 1


def test_rate_limit_is_retried(provider, monkeypatch):
    calls = scripted_provider(monkeypatch, Exception('429 RESOURCE_EXHAUSTED'), '{"ok": true}')
    raw = llm_service._call_llm_chat([{'role': 'user', 'content': 'hi'}], _retries=1)
    assert raw == '{"ok": true}'
    assert len(calls) == 2


def test_complete_uses_task_budget_and_text_mode(provider, monkeypatch):
    calls = scripted_provider(monkeypatch, 'Dear team,')
    assert llm_service.complete('Write', response_format='text', task='letter') == 'Dear team,'
    assert calls[0]['json_mode'] is False
    assert calls[0]['timeout'] == 45


def test_generate_json_with_message_list(provider, monkeypatch):
    calls = scripted_provider(monkeypatch, '{"next_question": "Q"}')
    messages = [{'role': 'system', 'content': 's'}, {'role': 'user', 'content': 'u'}]
    result = generate_json(messages, task='interview')
    assert result.data == {'next_question': 'Q'}
    assert calls[0]['messages'] == messages


# ---------------------------------------------------------------------------
# Budgets / tracking
# ---------------------------------------------------------------------------


def test_tracker_summary_groups_by_task():
    tracker = TokenTracker()
    tracker.log_call('letter', 4000, 800, 1.2)
    tracker.log_call('letter', 400, 0, 30.0, failed=True)
    tracker.log_call('interview', 800, 400, 0.5)

    summary = tracker.summary()

    assert summary['total_calls'] == 3
    assert summary['failed_calls'] == 1
    assert summary['by_task']['letter']['calls'] == 2
    assert summary['by_task']['interview']['input_tokens'] == 200


def test_truncation_helpers():
    assert truncate_text('abcdef', 3) == 'abc'
    assert truncate_text(None, 3) == ''
    assert truncate_history(list(range(40)), max_turns=30) == list(range(10, 40))
