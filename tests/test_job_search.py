"""Adzuna job search: parameters, normalisation and the /api/jobs route."""

from datetime import datetime, timezone
from unittest import mock

import pytest
import requests

import job_search
from conftest import auth_headers, balance_of
from job_search import build_params, format_posted, normalise_job

ADZUNA_REPLY = {
    'count': 2,
    'results': [
        {'id': '4242', 'title': 'Data analyst', 'company': {'display_name': 'Acme'},
         'location': {'display_name': 'Lyon, Rhône'}, 'redirect_url': 'https://adzuna.test/4242',
         'description': 'SQL and dashboards', 'created': '2024-05-01T09:00:00Z',
         'salary_min': 38000, 'salary_max': 45000},
        {'title': '', 'company': None, 'location': 'Remote', 'salary_min': 'n/a'},
    ],
}


@pytest.fixture
def adzuna(app):
    app.config['ADZUNA_APP_ID'] = 'az-id'
    app.config['ADZUNA_APP_KEY'] = 'az-key'
    reply = mock.Mock()
    reply.json.return_value = ADZUNA_REPLY
    with mock.patch.object(job_search.http_requests, 'get', return_value=reply) as get:
        yield get


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_build_params_sets_only_given_filters():
    params = build_params({'query': 'python', 'location': '', 'salary_min': '30000.5',
                           'contract_time': 'part_time', 'contract_type': 'any'},
                          'id', 'key', 20)
    assert params['what'] == 'python'
    assert 'where' not in params
    assert params['salary_min'] == 30000
    assert params['part_time'] == 1
    assert 'permanent' not in params and 'contract' not in params
    assert params['results_per_page'] == 20


def test_normalise_job_fills_placeholders():
    job = normalise_job(ADZUNA_REPLY['results'][1], page=3, index=1)
    assert job['id'] == 'job-3-1'
    assert job['title'] == 'Untitled offer'
    assert job['company'] == 'Company not specified'
    assert job['location'] == 'Remote'
    assert job['salary_min'] is None


@pytest.mark.parametrize('created, expected', [
    ('2024-05-10T08:00:00Z', 'Today'),
    ('2024-05-09T08:00:00Z', '1 day ago'),
    ('2024-05-06T08:00:00', '4 days ago'),
    ('2024-04-26T08:00:00Z', '2 weeks ago'),
    ('2024-01-02T08:00:00Z', 'Jan 02, 2024'),
    ('not a date', ''),
])
def test_format_posted(created, expected):
    now = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
    assert format_posted(created, now=now) == expected


# ---------------------------------------------------------------------------
# /api/jobs
# ---------------------------------------------------------------------------


def test_jobs_search_calls_adzuna_and_normalises(app, client, make_user, adzuna):
    make_user('u1', credits=3)

    resp = client.post('/api/jobs', json={'query': 'data analyst', 'location': 'Lyon',
                                          'page': 2, 'country': 'GB', 'results_per_page': 500,
                                          'contract_type': 'permanent'},
                       headers=auth_headers('u1'))

    assert resp.status_code == 200
    data = resp.get_json()
    assert data['meta'] == {'country': 'gb', 'page': 2, 'results_per_page': 100, 'count': 2}
    first = data['jobs'][0]
    assert first['id'] == '4242'
    assert first['company'] == 'Acme'
    assert first['url'] == 'https://adzuna.test/4242'
    assert first['salary_max'] == 45000

    url = adzuna.call_args.args[0]
    params = adzuna.call_args.kwargs['params']
    assert url == 'https://api.adzuna.com/v1/api/jobs/gb/search/2'
    assert params['app_id'] == 'az-id'
    assert params['app_key'] == 'az-key'
    assert params['what'] == 'data analyst'
    assert params['where'] == 'Lyon'
    assert params['permanent'] == 1
    # Searching never costs credits
    assert balance_of(app, 'u1') == 3


def test_jobs_unknown_country_falls_back_to_default(client, make_user, adzuna):
    make_user('u1')
    client.post('/api/jobs', json={'query': 'chef', 'country': 'xx'}, headers=auth_headers('u1'))
    assert adzuna.call_args.args[0] == 'https://api.adzuna.com/v1/api/jobs/fr/search/1'


def test_jobs_without_query_or_location_is_400(client, make_user, adzuna):
    make_user('u1')
    resp = client.post('/api/jobs', json={'query': '  ', 'location': ''}, headers=auth_headers('u1'))
    assert resp.status_code == 400
    adzuna.assert_not_called()


def test_jobs_unconfigured_is_503(client, make_user):
    make_user('u1')
    with mock.patch.object(job_search.http_requests, 'get') as get:
        resp = client.post('/api/jobs', json={'query': 'chef'}, headers=auth_headers('u1'))
    assert resp.status_code == 503
    get.assert_not_called()


def test_jobs_adzuna_failure_is_502(app, client, make_user):
    make_user('u1')
    app.config['ADZUNA_APP_ID'] = 'az-id'
    app.config['ADZUNA_APP_KEY'] = 'az-key'
    with mock.patch.object(job_search.http_requests, 'get',
                           side_effect=requests.ConnectionError('adzuna down')):
        resp = client.post('/api/jobs', json={'query': 'chef'}, headers=auth_headers('u1'))
    assert resp.status_code == 502
    assert resp.get_json()['error'] == 'upstream_unavailable'


def test_jobs_requires_login(client):
    assert client.post('/api/jobs', json={'query': 'chef'}).status_code == 401
