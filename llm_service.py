"""Generative-language collaborator: Google Gemini 2.5 Flash.

Primary LLM: Gemini 2.5 Flash via Google AI Studio (OpenAI-compatible endpoint)
  - 1M token context window, 65K max output tokens
  - $0.30/1M input, $2.50/1M output tokens

Everything the model returns is untrusted text. Callers that need structure
use generate_json(), which never raises: it returns ParsedOk with the decoded
object or ParsedFallback with the reason, and the caller substitutes its own
default payload.
"""

import json
import logging
import os
import re
import time
from dataclasses import dataclass, field

from token_budget import TASK_BUDGETS, check_payload_size, get_tracker

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# LLM Configuration (Google Gemini)
# ---------------------------------------------------------------------------

GEMINI_API_KEY = os.environ.get('GEMINI_API_KEY', '')
GEMINI_MODEL = os.environ.get('GEMINI_MODEL', 'gemini-2.5-flash')

# Provider list (single provider, Gemini)
_PROVIDERS = []

if GEMINI_API_KEY:
    _PROVIDERS.append({
        'name': 'gemini',
        'base_url': 'https://generativelanguage.googleapis.com/v1beta/openai/',
        'api_key': GEMINI_API_KEY,
        'model': GEMINI_MODEL,
        'max_context': 1048576,  # 1M tokens
    })

# Determine if backend is available
LLM_ENABLED = bool(_PROVIDERS)

if _PROVIDERS:
    logger.info('LLM backend: Gemini (%s)', GEMINI_MODEL)
if not LLM_ENABLED:
    logger.warning('No LLM backend configured, set GEMINI_API_KEY')

# Cache OpenAI clients per provider (lazy init)
_clients = {}

_DEFAULT_BUDGET = {'max_tokens': 1500, 'temperature': 0.5, 'timeout': 30.0}


def _get_provider_client(provider: dict):
    """Lazy-initialise an OpenAI-compatible client for a provider."""
    name = provider['name']
    if name in _clients:
        return _clients[name]

    from openai import OpenAI
    client = OpenAI(
        base_url=provider['base_url'],
        api_key=provider['api_key'],
        max_retries=0,  # retries are handled in _call_llm_chat
    )
    _clients[name] = client
    logger.info('Initialised %s client', name)
    return client


def _is_rate_limit_error(error) -> bool:
    """Check if an error is a rate limit / quota exceeded error."""
    err_str = str(error).lower()
    return any(keyword in err_str for keyword in [
        'rate_limit', 'rate limit', '429', 'quota', 'too many requests',
        'resource_exhausted', 'overloaded', 'service_unavailable', '503', '502',
    ])


def _is_timeout_error(error) -> bool:
    err_str = f'{type(error).__name__} {error}'.lower()
    return 'timeout' in err_str or 'timed out' in err_str


_JSON_OBJECT_RE = re.compile(r'\{.*\}', re.DOTALL)


def _parse_raw_json(raw: str):
    """Strip markdown fences if present, then parse JSON.

    Falls back to the outermost ``{...}`` span when the model wrapped the
    object in prose. Raises ValueError when nothing decodes.
    """
    raw = (raw or '').strip()
    if raw.startswith('```'):
        lines = raw.split('\n')
        if lines[0].startswith('```'):
            lines = lines[1:]
        if lines and lines[-1].strip() == '```':
            lines = lines[:-1]
        raw = '\n'.join(lines).strip()
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        match = _JSON_OBJECT_RE.search(raw)
        if not match:
            raise
        return json.loads(match.group(0))


def _call_provider(provider: dict, messages: list, max_tokens: int,
                   temperature: float, timeout: float, json_mode: bool = True) -> str:
    """Call LLM provider via OpenAI-compatible API and return raw response text."""
    client = _get_provider_client(provider)

    kwargs = {}
    if json_mode:
        kwargs['response_format'] = {'type': 'json_object'}
    response = client.chat.completions.create(
        model=provider['model'],
        messages=messages,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=timeout,
        **kwargs,
    )
    return response.choices[0].message.content or ''


def _call_llm_chat(messages: list, max_tokens: int = 1500, temperature: float = 0.5,
                   timeout: float = 30.0, _retries: int = 1, task: str = 'unknown',
                   json_mode: bool = True) -> str:
    """Send a multi-turn conversation to Gemini and return the raw reply text.

    Rate-limited calls are retried with a short backoff. Timeouts are not
    retried: a timed-out request has already used its whole time budget.
    Raises RuntimeError when no reply could be obtained.
    """
    if not _PROVIDERS:
        raise RuntimeError('No LLM backend configured, set GEMINI_API_KEY')

    input_chars = sum(len(m.get('content') or '') for m in messages)
    check_payload_size('\n'.join(m.get('content') or '' for m in messages), task)

    tracker = get_tracker()
    provider = _PROVIDERS[0]  # Gemini
    name = provider['name']
    last_error = None
    t0 = time.time()

    for attempt in range(_retries + 1):
        try:
            t0 = time.time()
            raw = _call_provider(provider, messages, max_tokens, temperature,
                                 timeout, json_mode=json_mode)
            elapsed = time.time() - t0
            logger.info('[%s] %s response in %.1fs: %d chars (attempt %d)',
                        name, task, elapsed, len(raw), attempt)
            tracker.log_call(task, input_chars, len(raw), elapsed, model=provider['model'])
            return raw

        except Exception as e:
            last_error = e
            error_str = str(e)

            if _is_timeout_error(e):
                logger.warning('[%s] %s timed out after %.0fs', name, task, timeout)
                break

            # Rate limit → exponential backoff retry
            if _is_rate_limit_error(e) and attempt < _retries:
                wait_time = 2 * (attempt + 1)
                logger.warning('[%s] rate limited (attempt %d/%d), waiting %ds: %s',
                               name, attempt + 1, _retries + 1, wait_time, error_str[:200])
                time.sleep(wait_time)
                continue

            logger.warning('[%s] error (attempt %d/%d): %s',
                           name, attempt + 1, _retries + 1, error_str[:200])
            if attempt < _retries:
                time.sleep(1)
                continue

    tracker.log_call(task, input_chars, 0, time.time() - t0,
                     model=provider['model'], failed=True)
    raise RuntimeError(f'Gemini LLM failed for {task}: {str(last_error)[:200]}')


# ---------------------------------------------------------------------------
# Public interface
# ---------------------------------------------------------------------------

def complete(prompt: str, response_format: str = 'json', task: str = 'unknown',
             system: str | None = None) -> str:
    """Stateless completion: prompt text in, raw model text out.

    ``response_format`` is a hint: ``'json'`` asks the provider for a JSON
    object, anything else requests plain text. Raises RuntimeError on
    upstream failure or timeout.
    """
    budget = TASK_BUDGETS.get(task, _DEFAULT_BUDGET)
    messages = []
    if system:
        messages.append({'role': 'system', 'content': system})
    messages.append({'role': 'user', 'content': prompt})
    return _call_llm_chat(messages, max_tokens=budget['max_tokens'],
                          temperature=budget['temperature'],
                          timeout=budget['timeout'], task=task,
                          json_mode=(response_format == 'json'))


@dataclass
class ParsedOk:
    data: dict
    raw: str = ''


@dataclass
class ParsedFallback:
    reason: str
    raw: str | None = None
    missing: list = field(default_factory=list)


def parse_json_reply(raw: str, required_keys=()) -> ParsedOk | ParsedFallback:
    """Decode a model reply into a dict. Never raises."""
    try:
        data = _parse_raw_json(raw)
    except ValueError as e:
        logger.warning('LLM reply is not JSON (%s): %.200s', e, raw)
        return ParsedFallback(reason='invalid_json', raw=raw)
    if not isinstance(data, dict):
        logger.warning('LLM reply is JSON but not an object: %.200s', raw)
        return ParsedFallback(reason='not_an_object', raw=raw)

    missing = [k for k in required_keys if not data.get(k)]
    if missing:
        logger.warning('LLM reply missing keys %s', missing)
        return ParsedFallback(reason='missing_keys', raw=raw, missing=missing)
    return ParsedOk(data=data, raw=raw)


def generate_json(prompt, task: str, system: str | None = None,
                  required_keys=(), retries: int = 0) -> ParsedOk | ParsedFallback:
    """Ask for a JSON object and return a tagged result. Never raises.

    ``prompt`` is either a single prompt string or a full chat message list
    (for multi-turn flows such as the interview).
    """
    if not LLM_ENABLED:
        return ParsedFallback(reason='llm_disabled')

    try:
        if isinstance(prompt, list):
            budget = TASK_BUDGETS.get(task, _DEFAULT_BUDGET)
            raw = _call_llm_chat(prompt, max_tokens=budget['max_tokens'],
                                 temperature=budget['temperature'],
                                 timeout=budget['timeout'], _retries=retries, task=task)
        else:
            raw = complete(prompt, response_format='json', task=task, system=system)
    except RuntimeError as e:
        logger.error('LLM call for %s failed, using fallback: %s', task, e)
        return ParsedFallback(reason='upstream_error')

    return parse_json_reply(raw, required_keys)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _ensure_list(val) -> list:
    if isinstance(val, list):
        return [str(v) for v in val if v]
    return []


def _ensure_str(val, default: str = '') -> str:
    if val is None:
        return default
    if isinstance(val, (dict, list)):
        return default
    text = str(val).strip()
    return text or default
