"""Identity tokens and user provisioning."""

import pytest

from auth import Identity, InvalidTokenError, get_or_create_user, verify_identity_token
from conftest import auth_headers, make_token
from models import User, db


def test_verify_identity_token(ctx):
    identity = verify_identity_token(make_token('uid-1', 'Person@Example.com', name='Pat'))
    assert identity.actor_id == 'uid-1'
    assert identity.actor_email == 'person@example.com'
    assert identity.name == 'Pat'


def test_firebase_user_id_claim_wins(ctx):
    token = make_token('sub-1', user_id='fb-1', firebase={'sign_in_provider': 'google.com'})
    identity = verify_identity_token(token)
    assert identity.actor_id == 'fb-1'
    assert identity.provider == 'google.com'


@pytest.mark.parametrize('token', [
    '',
    'not-a-jwt',
    make_token('uid-1', secret='another-secret'),
    make_token('uid-1', expires_in=-60),
])
def test_invalid_tokens_are_rejected(ctx, token):
    with pytest.raises(InvalidTokenError):
        verify_identity_token(token)


def test_issuer_is_checked_when_configured(ctx):
    ctx.config['AUTH_ISSUER'] = 'https://securetoken.google.com/jobpilot'
    with pytest.raises(InvalidTokenError):
        verify_identity_token(make_token('uid-1', iss='https://evil.example'))
    assert verify_identity_token(
        make_token('uid-1', iss='https://securetoken.google.com/jobpilot')).actor_id == 'uid-1'


def test_new_user_starts_with_zero_credits(ctx):
    user = get_or_create_user(Identity(actor_id='uid-1', actor_email='a@example.com'))
    assert user.credits == 0
    assert user.blocked is False


def test_signup_bonus_goes_through_ledger(ctx):
    ctx.config['FREE_SIGNUP_CREDITS'] = 3
    user = get_or_create_user(Identity(actor_id='uid-1', actor_email='a@example.com'))
    assert user.credits == 3

    # Logging in again never grants a second bonus
    again = get_or_create_user(Identity(actor_id='uid-1', actor_email='a@example.com'))
    assert again.credits == 3


def test_admin_email_promotes_user(ctx):
    user = get_or_create_user(Identity(actor_id='uid-1', actor_email='admin@example.com'))
    assert user.is_admin is True


def test_existing_user_keeps_balance(ctx, make_user):
    make_user('uid-1', credits=12, email='old@example.com')
    user = get_or_create_user(Identity(actor_id='uid-1', actor_email='new@example.com'))
    assert user.credits == 12
    assert user.email == 'new@example.com'


# ---------------------------------------------------------------------------
# Request guards
# ---------------------------------------------------------------------------


def test_missing_token_is_401(client):
    assert client.get('/api/credits').status_code == 401


def test_bad_token_is_401(client):
    resp = client.get('/api/credits', headers={'Authorization': 'Bearer nope'})
    assert resp.status_code == 401


def test_admin_routes_need_admin(client, make_user):
    make_user('u1', email='u1@example.com')
    resp = client.get('/api/admin/users', headers=auth_headers('u1', 'u1@example.com'))
    assert resp.status_code == 403


def test_browser_session_login(app, client, make_user):
    make_user('u1', credits=4)
    with client.session_transaction() as sess:
        sess['user_id'] = 'u1'
    assert client.get('/api/credits').get_json()['credits'] == 4


def test_login_without_oauth_config(client):
    assert client.get('/login').status_code == 404


def test_logout_clears_session(client, make_user):
    make_user('u1')
    with client.session_transaction() as sess:
        sess['user_id'] = 'u1'
    client.get('/logout')
    assert client.get('/api/credits').status_code == 401
    with client.application.app_context():
        assert db.session.get(User, 'u1') is not None
