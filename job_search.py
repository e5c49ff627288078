"""Adzuna job search for the /api/jobs route.

Searching is free: no credits are reserved. The Adzuna keys live in
Config (ADZUNA_APP_ID / ADZUNA_APP_KEY); without them the search raises
RuntimeError, which the app answers with 503.
"""

import logging
from datetime import datetime, timezone

import requests as http_requests
from flask import current_app

logger = logging.getLogger(__name__)

ADZUNA_SEARCH_URL = 'https://api.adzuna.com/v1/api/jobs/{country}/search/{page}'
ALLOWED_COUNTRIES = ('fr', 'be', 'ch', 'ca', 'gb', 'es', 'de', 'it')
DEFAULT_RESULTS_PER_PAGE = 50
MAX_RESULTS_PER_PAGE = 100


# ---------------------------------------------------------------------------
# Shared utilities
# ---------------------------------------------------------------------------

def make_snippet(description, max_len=250):
    """Create a short snippet from job description."""
    if not description:
        return ''
    text = description.strip()
    if len(text) > max_len:
        return text[:max_len - 3] + '...'
    return text


def format_posted(date_str, now=None):
    """Relative posting age ('Today', '3 days ago', '2 weeks ago') or a plain date."""
    if not date_str:
        return ''
    try:
        dt = datetime.fromisoformat(str(date_str).replace('Z', '+00:00'))
    except ValueError:
        return ''
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    days = (now - dt).days
    if days <= 0:
        return 'Today'
    if days == 1:
        return '1 day ago'
    if days < 7:
        return f'{days} days ago'
    if days < 30:
        weeks = days // 7
        return f'{weeks} week{"s" if weeks > 1 else ""} ago'
    return dt.strftime('%b %d, %Y')


def _as_int(value):
    if isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _display_name(value) -> str:
    if isinstance(value, dict):
        return value.get('display_name') or ''
    return str(value or '')


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

def build_params(filters: dict, app_id: str, app_key: str, results_per_page: int) -> dict:
    """Adzuna query string for one search. Unset filters are left out."""
    params = {
        'app_id': app_id,
        'app_key': app_key,
        'results_per_page': results_per_page,
        'content-type': 'application/json',
    }
    if filters.get('query'):
        params['what'] = filters['query']
    if filters.get('location'):
        params['where'] = filters['location']

    for key in ('salary_min', 'salary_max', 'max_days_old'):
        value = _as_int(filters.get(key))
        if value is not None:
            params[key] = value

    # Adzuna takes these as flags rather than enum values
    if filters.get('contract_time') in ('full_time', 'part_time'):
        params[filters['contract_time']] = 1
    if filters.get('contract_type') in ('permanent', 'contract'):
        params[filters['contract_type']] = 1
    return params


def normalise_job(item: dict, page: int, index: int) -> dict:
    desc = (item.get('description') or '')[:3000]
    created = item.get('created') or ''
    salary_min = item.get('salary_min')
    salary_max = item.get('salary_max')
    return {
        'id': str(item.get('id') or f'job-{page}-{index}'),
        'title': item.get('title') or 'Untitled offer',
        'company': _display_name(item.get('company')) or 'Company not specified',
        'location': _display_name(item.get('location')) or 'Location not specified',
        'url': item.get('redirect_url') or '',
        'description': desc,
        'description_snippet': make_snippet(desc),
        'created': created,
        'posted': format_posted(created),
        'salary_min': salary_min if isinstance(salary_min, (int, float)) else None,
        'salary_max': salary_max if isinstance(salary_max, (int, float)) else None,
    }


def search_jobs(query='', location='', page=1, country=None,
                results_per_page=DEFAULT_RESULTS_PER_PAGE, **filters) -> dict:
    """Run one Adzuna search page.

    Returns {'jobs': [...], 'meta': {'country', 'page', 'results_per_page', 'count'}}.
    Raises ValueError when both query and location are empty, RuntimeError
    when Adzuna isn't configured and requests.RequestException when the
    Adzuna call fails.
    """
    query = str(query or '').strip()
    location = str(location or '').strip()
    if not query and not location:
        raise ValueError('query or location is required')

    cfg = current_app.config
    app_id = cfg.get('ADZUNA_APP_ID', '')
    app_key = cfg.get('ADZUNA_APP_KEY', '')
    if not (app_id and app_key):
        raise RuntimeError('Job search is not configured (ADZUNA_APP_ID / ADZUNA_APP_KEY missing)')

    country = str(country or cfg.get('ADZUNA_COUNTRY') or 'fr').strip().lower()
    if country not in ALLOWED_COUNTRIES:
        country = 'fr'
    page = _as_int(page)
    page = page if page and page > 0 else 1
    rpp = _as_int(results_per_page) or DEFAULT_RESULTS_PER_PAGE
    rpp = max(1, min(rpp, MAX_RESULTS_PER_PAGE))

    params = build_params(dict(filters, query=query, location=location), app_id, app_key, rpp)
    try:
        resp = http_requests.get(
            ADZUNA_SEARCH_URL.format(country=country, page=page),
            params=params,
            headers={'Accept': 'application/json'},
            timeout=20,
        )
        resp.raise_for_status()
        data = resp.json()
    except http_requests.RequestException as e:
        logger.error('Adzuna error: %s', e)
        raise

    results = data.get('results') if isinstance(data, dict) else None
    jobs = [normalise_job(item, page, i)
            for i, item in enumerate(results or []) if isinstance(item, dict)]
    count = data.get('count') if isinstance(data, dict) else None

    logger.info('Adzuna: fetched %d jobs (country=%s page %d)', len(jobs), country, page)
    return {
        'jobs': jobs,
        'meta': {'country': country, 'page': page, 'results_per_page': rpp,
                 'count': count if isinstance(count, int) else None},
    }
