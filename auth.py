"""Identity for JobPilot: bearer identity tokens + Google OAuth, both via Authlib."""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from functools import wraps

import requests as http_requests
from authlib.integrations.flask_client import OAuth
from authlib.jose import JsonWebKey, JsonWebToken
from authlib.jose.errors import JoseError
from flask import current_app, g, jsonify, request, session
from sqlalchemy.exc import IntegrityError

from credits import LedgerError, grant_credits
from models import User, db

logger = logging.getLogger(__name__)

oauth = OAuth()

_rs256 = JsonWebToken(['RS256'])
_hs256 = JsonWebToken(['HS256'])

JWKS_CACHE_SECONDS = 60 * 60
_jwks_cache = {'url': None, 'keys': None, 'fetched_at': 0.0}
_jwks_lock = threading.Lock()


class InvalidTokenError(Exception):
    """Identity token missing, malformed, expired or not signed by a trusted key."""


@dataclass
class Identity:
    actor_id: str
    actor_email: str | None = None
    name: str | None = None
    email_verified: bool = False
    provider: str = 'password'


def init_oauth(app):
    """Register Google OAuth with the Flask app."""
    oauth.init_app(app)
    oauth.register(
        name='google',
        client_id=app.config.get('GOOGLE_CLIENT_ID'),
        client_secret=app.config.get('GOOGLE_CLIENT_SECRET'),
        server_metadata_url='https://accounts.google.com/.well-known/openid-configuration',
        client_kwargs={'scope': 'openid email profile'},
    )


# ---------------------------------------------------------------------------
# Token verification
# ---------------------------------------------------------------------------

def _get_jwks(url: str):
    with _jwks_lock:
        fresh = time.time() - _jwks_cache['fetched_at'] < JWKS_CACHE_SECONDS
        if _jwks_cache['url'] == url and _jwks_cache['keys'] is not None and fresh:
            return _jwks_cache['keys']
        try:
            resp = http_requests.get(url, timeout=10)
            resp.raise_for_status()
        except http_requests.RequestException as e:
            logger.error('Could not fetch JWKS from %s: %s', url, e)
            raise InvalidTokenError('Signing keys unavailable')
        keys = JsonWebKey.import_key_set(resp.json())
        _jwks_cache.update(url=url, keys=keys, fetched_at=time.time())
        logger.info('Loaded identity signing keys from %s', url)
        return keys


def _claims_options(cfg) -> dict:
    options = {'sub': {'essential': True}}
    if cfg.get('AUTH_ISSUER'):
        options['iss'] = {'essential': True, 'value': cfg['AUTH_ISSUER']}
    if cfg.get('AUTH_AUDIENCE'):
        options['aud'] = {'essential': True, 'value': cfg['AUTH_AUDIENCE']}
    return options


def verify_identity_token(token: str) -> Identity:
    """Verify a bearer JWT and return who it belongs to. Raises InvalidTokenError."""
    if not token:
        raise InvalidTokenError('Missing token')
    cfg = current_app.config
    try:
        if cfg.get('AUTH_JWT_SECRET'):
            claims = _hs256.decode(token, cfg['AUTH_JWT_SECRET'].encode('utf-8'),
                                   claims_options=_claims_options(cfg))
        elif cfg.get('AUTH_JWKS_URL'):
            claims = _rs256.decode(token, _get_jwks(cfg['AUTH_JWKS_URL']),
                                   claims_options=_claims_options(cfg))
        else:
            raise InvalidTokenError('No identity token verifier configured')
        claims.validate()
    except (JoseError, ValueError) as e:
        raise InvalidTokenError(str(e))

    firebase = claims.get('firebase') if isinstance(claims.get('firebase'), dict) else {}
    email = claims.get('email')
    return Identity(
        actor_id=str(claims.get('user_id') or claims['sub']),
        actor_email=email.strip().lower() if isinstance(email, str) else None,
        name=claims.get('name'),
        email_verified=bool(claims.get('email_verified')),
        provider=firebase.get('sign_in_provider') or 'password',
    )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def _is_admin_email(email: str | None) -> bool:
    return bool(email) and email.lower() in current_app.config.get('ADMIN_EMAILS', [])


def get_or_create_user(identity: Identity) -> User:
    """Find the user for an identity or create one with a zero balance."""
    user = db.session.get(User, identity.actor_id)
    now = datetime.utcnow()
    if user:
        user.last_login_at = now
        if identity.actor_email:
            user.email = identity.actor_email
        user.display_name = identity.name or user.display_name
        user.email_verified = identity.email_verified or user.email_verified
        if _is_admin_email(user.email):
            user.is_admin = True
        db.session.commit()
        return user

    user = User(
        id=identity.actor_id,
        email=identity.actor_email,
        display_name=identity.name,
        email_verified=identity.email_verified,
        provider=identity.provider,
        is_admin=_is_admin_email(identity.actor_email),
        credits=0,
        last_login_at=now,
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        # Another request created the same user first
        db.session.rollback()
        return db.session.get(User, identity.actor_id)
    logger.info('New user %s (%s)', user.id, user.email)

    bonus = current_app.config.get('FREE_SIGNUP_CREDITS', 0)
    if bonus > 0:
        try:
            grant_credits(user.id, user.email, bonus, f'signup:{user.id}',
                          action='bonus_signup', event_type='signup')
        except LedgerError as e:
            logger.error('Signup bonus for %s not granted: %s', user.id, e)
        db.session.refresh(user)
    return user


def _bearer_token() -> str | None:
    header = request.headers.get('Authorization', '')
    if header.lower().startswith('bearer '):
        return header[7:].strip()
    return None


def current_user() -> User | None:
    """Return the caller's User (bearer token first, then browser session) or None."""
    if 'actor' in g:
        return g.actor

    user = None
    token = _bearer_token()
    if token:
        try:
            user = get_or_create_user(verify_identity_token(token))
        except InvalidTokenError as e:
            logger.info('Rejected identity token: %s', e)
    else:
        user_id = session.get('user_id')
        if user_id:
            user = db.session.get(User, user_id)
    g.actor = user
    return user


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if current_user() is None:
            return jsonify({'error': 'unauthorized'}), 401
        return view(*args, **kwargs)
    return wrapped


def admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        user = current_user()
        if user is None:
            return jsonify({'error': 'unauthorized'}), 401
        if not (user.is_admin or _is_admin_email(user.email)):
            return jsonify({'error': 'forbidden'}), 403
        return view(*args, **kwargs)
    return wrapped
