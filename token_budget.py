"""Token budget management: per-task limits, input truncation, and usage observability.

Provides:
  - Per-task max_tokens / temperature / timeout defaults
  - Input truncation helpers (CV text, job descriptions, interview history)
  - Token usage logging per call site
  - Current date injection for prompts
"""

import logging
import threading
import time
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Per-task token budgets (max_tokens for output)
# ---------------------------------------------------------------------------
# Gemini 2.5 Flash: $0.30/1M input, $2.50/1M output
# Thinking tokens consume part of max_tokens, so budget ~3-4x expected output

TASK_BUDGETS = {
    'interview':       {'max_tokens': 1200, 'temperature': 0.6, 'timeout': 25.0},
    'interview_qa':    {'max_tokens': 1200, 'temperature': 0.7, 'timeout': 30.0},
    'letter':          {'max_tokens': 2400, 'temperature': 0.7, 'timeout': 45.0},
    'profile_extract': {'max_tokens': 4000, 'temperature': 0.2, 'timeout': 60.0},
}

# ---------------------------------------------------------------------------
# Input size limits (chars)
# ---------------------------------------------------------------------------

INPUT_LIMITS = {
    'cv_text': {
        'profile_extract': 12000,
        'letter': 5000,
        'interview': 3000,
        'interview_qa': 3000,
    },
    'jd_text': {
        'letter': 4000,
        'interview': 3000,
    },
}

# Interview history kept in the prompt (most recent turns)
MAX_HISTORY_TURNS = 30

# Max payload size before warning (chars, approximate)
MAX_PAYLOAD_CHARS = 25000


# ---------------------------------------------------------------------------
# Current date helper
# ---------------------------------------------------------------------------

def get_date_context() -> str:
    """Return a date-awareness line to inject into prompts."""
    now = datetime.now(timezone.utc)
    return f"Today's date is {now.strftime('%B %d, %Y')}. The current year is {now.year}."


# ---------------------------------------------------------------------------
# Text truncation helpers
# ---------------------------------------------------------------------------

def truncate_text(text: str, max_chars: int, label: str = 'text') -> str:
    """Truncate text to max_chars. Logs if truncation occurs."""
    if not text:
        return ''
    if len(text) <= max_chars:
        return text
    truncated = text[:max_chars]
    logger.info('Truncated %s: %d → %d chars', label, len(text), max_chars)
    return truncated


def truncate_cv(cv_text: str, task: str) -> str:
    """Truncate CV/profile text according to task-specific limits."""
    limit = INPUT_LIMITS['cv_text'].get(task, 5000)
    return truncate_text(cv_text, limit, f'CV ({task})')


def truncate_jd(jd_text: str, task: str) -> str:
    """Truncate job description text according to task-specific limits."""
    limit = INPUT_LIMITS['jd_text'].get(task, 4000)
    return truncate_text(jd_text, limit, f'JD ({task})')


def truncate_history(history: list, max_turns: int = MAX_HISTORY_TURNS) -> list:
    """Keep only the most recent interview turns."""
    return history[-max_turns:] if history else []


# ---------------------------------------------------------------------------
# Prompt size guardrail
# ---------------------------------------------------------------------------

def check_payload_size(prompt: str, task: str) -> None:
    """Warn if payload exceeds threshold."""
    total = len(prompt)
    if total > MAX_PAYLOAD_CHARS:
        logger.warning('Payload size for %s: %d chars (threshold: %d)',
                       task, total, MAX_PAYLOAD_CHARS)


# ---------------------------------------------------------------------------
# Token usage tracking / observability
# ---------------------------------------------------------------------------

class TokenTracker:
    """Tracks token usage per call site for observability."""

    def __init__(self, max_entries: int = 500):
        self._calls: list[dict] = []
        self._max_entries = max_entries
        self._lock = threading.Lock()

    def log_call(self, task: str, input_chars: int, output_chars: int,
                 elapsed_secs: float, model: str = '', failed: bool = False) -> None:
        """Log a single LLM call."""
        # Rough token estimate: ~4 chars per token
        est_input_tokens = input_chars // 4
        est_output_tokens = output_chars // 4
        est_cost_input = est_input_tokens * 0.30 / 1_000_000
        est_cost_output = est_output_tokens * 2.50 / 1_000_000
        est_total_cost = est_cost_input + est_cost_output

        entry = {
            'task': task,
            'timestamp': time.time(),
            'input_chars': input_chars,
            'output_chars': output_chars,
            'est_input_tokens': est_input_tokens,
            'est_output_tokens': est_output_tokens,
            'est_cost_usd': round(est_total_cost, 6),
            'elapsed_secs': round(elapsed_secs, 2),
            'model': model,
            'failed': failed,
        }
        with self._lock:
            self._calls.append(entry)
            if len(self._calls) > self._max_entries:
                self._calls = self._calls[-self._max_entries:]

        logger.info(
            'TOKEN_USAGE | task=%s | input=%d chars (~%d tok) | '
            'output=%d chars (~%d tok) | cost=$%.6f | %.1fs | failed=%s',
            task, input_chars, est_input_tokens,
            output_chars, est_output_tokens,
            est_total_cost, elapsed_secs, failed
        )

    def summary(self) -> dict:
        """Return aggregate usage summary."""
        with self._lock:
            calls = list(self._calls)
        if not calls:
            return {'total_calls': 0}

        by_task = {}
        for c in calls:
            t = by_task.setdefault(c['task'], {'calls': 0, 'failed': 0, 'input_tokens': 0,
                                               'output_tokens': 0, 'cost_usd': 0.0})
            t['calls'] += 1
            t['failed'] += int(c['failed'])
            t['input_tokens'] += c['est_input_tokens']
            t['output_tokens'] += c['est_output_tokens']
            t['cost_usd'] = round(t['cost_usd'] + c['est_cost_usd'], 6)

        return {
            'total_calls': len(calls),
            'failed_calls': sum(1 for c in calls if c['failed']),
            'total_input_tokens': sum(c['est_input_tokens'] for c in calls),
            'total_output_tokens': sum(c['est_output_tokens'] for c in calls),
            'total_cost_usd': round(sum(c['est_cost_usd'] for c in calls), 4),
            'by_task': by_task,
        }


# Global tracker instance
_tracker = TokenTracker()


def get_tracker() -> TokenTracker:
    """Return the global token tracker instance."""
    return _tracker
