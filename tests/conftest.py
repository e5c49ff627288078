"""Shared fixtures: a fresh app on a temporary SQLite file per test."""

import base64
import os
import time

# Keep the model out of tests regardless of the developer's .env
os.environ['GEMINI_API_KEY'] = ''

import pytest
from authlib.jose import jwt

import interview_service
from app import create_app
from models import User, db

JWT_SECRET = 'test-jwt-secret'
WEBHOOK_SECRET = 'whsec_' + base64.b64encode(b'polar-test-signing-key-0123456789').decode('ascii')

PRODUCT_IDS = {'20': 'prod_20', '50': 'prod_50', '100': 'prod_100'}
PRICE_IDS = {'20': 'price_20', '50': 'price_50', '100': 'price_100'}


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'test-secret',
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'test.db'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}},
        'AUTH_JWT_SECRET': JWT_SECRET,
        'AUTH_ISSUER': '',
        'AUTH_AUDIENCE': '',
        'GOOGLE_CLIENT_ID': '',
        'ADMIN_EMAILS': ['admin@example.com'],
        'FREE_SIGNUP_CREDITS': 0,
        'POLAR_ACCESS_TOKEN': '',
        'POLAR_ENV': 'sandbox',
        'POLAR_WEBHOOK_SECRET': WEBHOOK_SECRET,
        'POLAR_PRODUCT_IDS': dict(PRODUCT_IDS),
        'POLAR_PRICE_IDS': dict(PRICE_IDS),
        'APP_BASE_URL': 'http://localhost:5050',
        'ADZUNA_APP_ID': '',
        'ADZUNA_APP_KEY': '',
        'ADZUNA_COUNTRY': 'fr',
    })
    interview_service.get_store().clear()
    yield app
    interview_service.get_store().clear()
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def ctx(app):
    """Push an app context for service-level tests (not for test-client tests)."""
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    def _make_user(user_id, credits=0, email=None, blocked=False, is_admin=False):
        with app.app_context():
            db.session.add(User(id=user_id, email=email, credits=credits,
                                blocked=blocked, is_admin=is_admin))
            db.session.commit()
        return user_id
    return _make_user


def make_token(sub, email=None, secret=JWT_SECRET, expires_in=3600, **extra):
    now = int(time.time())
    claims = {'sub': sub, 'iat': now, 'exp': now + expires_in, **extra}
    if email:
        claims['email'] = email
    token = jwt.encode({'alg': 'HS256'}, claims, secret)
    return token.decode('ascii') if isinstance(token, bytes) else token


def auth_headers(sub, email=None):
    return {'Authorization': f'Bearer {make_token(sub, email)}'}


def balance_of(app, user_id):
    with app.app_context():
        user = db.session.get(User, user_id)
        return user.credits if user else None
