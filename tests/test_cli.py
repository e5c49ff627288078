"""Operator commands."""

import json

from conftest import balance_of
from models import User, db


def test_grant_credits_command_is_idempotent(app, make_user):
    make_user('u1', credits=2)
    runner = app.test_cli_runner()

    first = runner.invoke(args=['grant-credits', 'u1', '20', '--reference', 'polar-order-9'])
    second = runner.invoke(args=['grant-credits', 'u1', '20', '--reference', 'polar-order-9'])

    assert first.exit_code == 0
    assert 'balance=22' in first.output
    assert 'already applied' in second.output
    assert balance_of(app, 'u1') == 22


def test_grant_credits_unknown_user(app):
    result = app.test_cli_runner().invoke(args=['grant-credits', 'ghost', '5', '--reference', 'r'])
    assert result.exit_code != 0
    assert 'No user ghost' in result.output


def test_set_admin(app, make_user):
    make_user('u1', email='Ops@Example.com')
    runner = app.test_cli_runner()

    assert runner.invoke(args=['set-admin', 'ops@example.com']).exit_code == 0
    with app.app_context():
        assert db.session.get(User, 'u1').is_admin is True

    runner.invoke(args=['set-admin', 'ops@example.com', '--revoke'])
    with app.app_context():
        assert db.session.get(User, 'u1').is_admin is False


def test_sync_users_creates_and_updates_without_touching_balances(app, make_user, tmp_path):
    make_user('existing', credits=7, email='old@example.com')
    export = tmp_path / 'users.json'
    export.write_text(json.dumps({'users': [
        {'localId': 'existing', 'email': 'New@Example.com', 'displayName': 'Sam'},
        {'localId': 'new-1', 'email': 'n@example.com', 'emailVerified': True,
         'providerUserInfo': [{'providerId': 'google.com'}], 'createdAt': '1700000000000'},
        {'email': 'no-id@example.com'},
    ]}), encoding='utf-8')

    result = app.test_cli_runner().invoke(args=['sync-users', str(export)])

    assert 'created=1 updated=1 skipped=1' in result.output
    with app.app_context():
        existing = db.session.get(User, 'existing')
        assert existing.credits == 7
        assert existing.email == 'new@example.com'
        assert existing.display_name == 'Sam'
        created = db.session.get(User, 'new-1')
        assert created.credits == 0
        assert created.blocked is False
        assert created.provider == 'google.com'
