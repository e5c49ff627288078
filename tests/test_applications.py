"""Application tracker: owner-scoped CRUD over /api/applications."""

import pytest

from conftest import auth_headers
from models import Application, db


def headers(uid):
    return auth_headers(uid, f'{uid}@example.com')


def create(client, uid='u1', **fields):
    body = {'company': 'Acme', 'job_title': 'Data analyst', **fields}
    resp = client.post('/api/applications', json=body, headers=headers(uid))
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()


# ---------------------------------------------------------------------------
# Create and list
# ---------------------------------------------------------------------------


def test_create_defaults_to_todo(client, make_user):
    make_user('u1')

    created = create(client, job_link=' https://jobs.test/1 ', notes='Referral from Sam')

    assert created['status'] == 'todo'
    assert created['job_link'] == 'https://jobs.test/1'
    assert created['notes'] == 'Referral from Sam'
    assert created['has_cv'] is False
    assert created['created_at'] is not None


@pytest.mark.parametrize('body', [
    {'company': 'Acme'},
    {'job_title': 'Analyst'},
    {'company': '   ', 'job_title': 'Analyst'},
    {'company': 'Acme', 'job_title': 'Analyst', 'status': 'hired'},
    {'company': 'Acme', 'job_title': 'Analyst', 'interview_at': 'next tuesday'},
])
def test_create_rejects_invalid_input(app, client, make_user, body):
    make_user('u1')

    resp = client.post('/api/applications', json=body, headers=headers('u1'))

    assert resp.status_code == 400
    with app.app_context():
        assert Application.query.count() == 0


def test_interview_at_is_stored_in_utc(client, make_user):
    make_user('u1')
    created = create(client, status='interview', interview_at='2024-06-03T14:30:00+02:00')
    assert created['interview_at'] == '2024-06-03T12:30:00'


def test_list_is_scoped_filtered_and_counted(client, make_user):
    make_user('u1')
    make_user('u2')
    create(client, company='Acme', status='sent')
    create(client, company='Globex', job_title='Backend developer', status='interview')
    create(client, company='Initech', status='rejected')
    create(client, uid='u2', company='Umbrella')

    data = client.get('/api/applications', headers=headers('u1')).get_json()
    assert sorted(a['company'] for a in data['applications']) == ['Acme', 'Globex', 'Initech']
    assert data['stats'] == {'total': 3, 'active': 2, 'interview': 1, 'offer': 0}

    by_status = client.get('/api/applications?status=interview', headers=headers('u1')).get_json()
    assert [a['company'] for a in by_status['applications']] == ['Globex']

    by_search = client.get('/api/applications?q=backend', headers=headers('u1')).get_json()
    assert [a['company'] for a in by_search['applications']] == ['Globex']


# ---------------------------------------------------------------------------
# Update and delete
# ---------------------------------------------------------------------------


def test_update_changes_only_given_fields(client, make_user):
    make_user('u1')
    created = create(client, notes='first call')

    resp = client.put(f"/api/applications/{created['id']}",
                      json={'status': 'offer', 'has_lm': True}, headers=headers('u1'))

    assert resp.status_code == 200
    updated = resp.get_json()
    assert updated['status'] == 'offer'
    assert updated['has_lm'] is True
    assert updated['notes'] == 'first call'
    assert updated['company'] == 'Acme'


def test_update_cannot_blank_required_fields(app, client, make_user):
    make_user('u1')
    created = create(client)

    resp = client.put(f"/api/applications/{created['id']}", json={'company': ''},
                      headers=headers('u1'))

    assert resp.status_code == 400
    with app.app_context():
        assert db.session.get(Application, created['id']).company == 'Acme'


def test_delete_removes_row(app, client, make_user):
    make_user('u1')
    created = create(client)

    resp = client.delete(f"/api/applications/{created['id']}", headers=headers('u1'))

    assert resp.status_code == 200
    with app.app_context():
        assert db.session.get(Application, created['id']) is None


# ---------------------------------------------------------------------------
# Ownership
# ---------------------------------------------------------------------------


def test_other_users_rows_are_invisible(app, client, make_user):
    make_user('owner')
    make_user('intruder')
    created = create(client, uid='owner', notes='private')
    url = f"/api/applications/{created['id']}"

    assert client.get(url, headers=headers('intruder')).status_code == 404
    assert client.put(url, json={'status': 'rejected', 'notes': 'x'},
                      headers=headers('intruder')).status_code == 404
    assert client.delete(url, headers=headers('intruder')).status_code == 404
    assert client.get('/api/applications', headers=headers('intruder')).get_json()['applications'] == []

    with app.app_context():
        row = db.session.get(Application, created['id'])
        assert row is not None
        assert row.status == 'todo'
        assert row.notes == 'private'
    assert client.get(url, headers=headers('owner')).get_json()['notes'] == 'private'


def test_unknown_or_malformed_id_is_404(client, make_user):
    make_user('u1')
    assert client.get('/api/applications/999', headers=headers('u1')).status_code == 404
    assert client.put('/api/applications/abc', json={}, headers=headers('u1')).status_code == 404


def test_applications_require_login(client):
    assert client.get('/api/applications').status_code == 401
