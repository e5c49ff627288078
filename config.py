"""Application configuration: everything comes from the environment (.env in dev)."""

import os

from dotenv import load_dotenv

load_dotenv()  # Load .env file (GEMINI_API_KEY, POLAR_*, etc.)


def _database_url() -> str:
    url = os.environ.get('DATABASE_URL', '')
    if url:
        # Railway/Render Postgres URLs start with postgres:// but SQLAlchemy needs postgresql://
        if url.startswith('postgres://'):
            url = url.replace('postgres://', 'postgresql://', 1)
        return url
    _db_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'jobpilot.db')
    return f'sqlite:///{_db_path}'


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or os.urandom(24)
    PREFERRED_URL_SCHEME = 'https'
    MAX_CONTENT_LENGTH = _int_env('MAX_CONTENT_LENGTH', 10 * 1024 * 1024)  # 10 MB

    # Database
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Identity tokens (JWT). JWKS for RS256 providers, shared secret for HS256.
    AUTH_JWKS_URL = os.environ.get(
        'AUTH_JWKS_URL',
        'https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com',
    )
    AUTH_JWT_SECRET = os.environ.get('AUTH_JWT_SECRET', '')
    AUTH_ISSUER = os.environ.get('AUTH_ISSUER', '')
    AUTH_AUDIENCE = os.environ.get('AUTH_AUDIENCE', '')

    # Google OAuth (browser sign-in, optional)
    GOOGLE_CLIENT_ID = os.environ.get('GOOGLE_CLIENT_ID', '')
    GOOGLE_CLIENT_SECRET = os.environ.get('GOOGLE_CLIENT_SECRET', '')

    # Comma-separated list of emails with admin rights
    ADMIN_EMAILS = [e.strip().lower() for e in os.environ.get('ADMIN_EMAILS', '').split(',')
                    if e.strip()]

    FREE_SIGNUP_CREDITS = _int_env('FREE_SIGNUP_CREDITS', 0)

    # Polar
    POLAR_ACCESS_TOKEN = os.environ.get('POLAR_ACCESS_TOKEN', '')
    POLAR_ENV = os.environ.get('POLAR_ENV', 'sandbox')
    POLAR_WEBHOOK_SECRET = os.environ.get('POLAR_WEBHOOK_SECRET', '')
    POLAR_PRODUCT_IDS = {
        '20': os.environ.get('POLAR_PRODUCT_20_ID', ''),
        '50': os.environ.get('POLAR_PRODUCT_50_ID', ''),
        '100': os.environ.get('POLAR_PRODUCT_100_ID', ''),
    }
    POLAR_PRICE_IDS = {
        '20': os.environ.get('POLAR_PRICE_20_ID', ''),
        '50': os.environ.get('POLAR_PRICE_50_ID', ''),
        '100': os.environ.get('POLAR_PRICE_100_ID', ''),
    }
    APP_BASE_URL = os.environ.get('APP_BASE_URL', 'http://localhost:5050')

    # Interview sessions live in process memory only
    INTERVIEW_SESSION_TTL_SECONDS = _int_env('INTERVIEW_SESSION_TTL_SECONDS', 2 * 60 * 60)

    # Adzuna job search (optional; /api/jobs answers 503 without keys)
    ADZUNA_APP_ID = os.environ.get('ADZUNA_APP_ID', '')
    ADZUNA_APP_KEY = os.environ.get('ADZUNA_APP_KEY', '')
    ADZUNA_COUNTRY = os.environ.get('ADZUNA_COUNTRY', 'fr')
