import io
import logging
import os
import uuid

import requests as http_requests
from authlib.integrations.base_client.errors import OAuthError
from flask import Blueprint, Flask, current_app, jsonify, redirect, request, send_file, session, url_for
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.middleware.proxy_fix import ProxyFix

import interview_service
from auth import (Identity, admin_required, current_user, get_or_create_user, init_oauth,
                  login_required, oauth)
from cli import register_commands
from config import Config
from credits import (BlockedError, InsufficientCreditsError, get_balance, grant_credits,
                     record_activity, set_blocked, usage_history)
from interview_service import SessionClosedError, SessionForbiddenError, SessionNotFoundError
from job_search import search_jobs
from letter_service import generate_letter_and_pitch
from llm_service import LLM_ENABLED
from models import User, db
from payments import (InvalidSignatureError, create_checkout, credits_by_price_id,
                      credits_by_product_id, handle_webhook, list_packs)
from pdf_service import generate_cv_letter_zip, generate_cv_pdf, letter_filename, render_letter_pdf
from profile_service import (build_profile_context, extract_profile, extract_text_from_upload,
                             normalise_profile)
from token_budget import get_tracker
from tracker_service import (ApplicationNotFoundError, application_stats, create_application,
                             delete_application, get_application, list_applications,
                             update_application)

# Configure logging for debugging on Railway
logging.basicConfig(level=logging.INFO,
                    format='%(asctime)s [%(levelname)s] %(message)s')
logger = logging.getLogger(__name__)

api = Blueprint('api', __name__)


def create_app(overrides: dict | None = None) -> Flask:
    app = Flask(__name__)
    # Trust the reverse proxy headers so url_for() generates https:// URLs
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    db.init_app(app)
    with app.app_context():
        db.create_all()

    interview_service.init_app(app)
    if app.config.get('GOOGLE_CLIENT_ID'):
        init_oauth(app)
    register_commands(app)
    _register_error_handlers(app)
    app.register_blueprint(api)

    logger.info('JobPilot ready (db=%s, llm=%s, polar=%s)',
                app.config['SQLALCHEMY_DATABASE_URI'].split(':', 1)[0],
                'on' if LLM_ENABLED else 'off',
                app.config.get('POLAR_ENV') if app.config.get('POLAR_ACCESS_TOKEN') else 'off')
    return app


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------

def _register_error_handlers(app):
    @app.errorhandler(InsufficientCreditsError)
    def insufficient_credits(e):
        return jsonify({'error': 'insufficient_credits', 'credits': e.balance,
                        'required': e.required}), 402

    @app.errorhandler(BlockedError)
    def account_blocked(e):
        return jsonify({'error': 'account_blocked'}), 423

    @app.errorhandler(InvalidSignatureError)
    def invalid_signature(e):
        logger.warning('Rejected webhook: %s', e)
        return jsonify({'error': 'invalid_signature'}), 403

    @app.errorhandler(SessionNotFoundError)
    def session_not_found(e):
        return jsonify({'error': 'session_not_found'}), 404

    @app.errorhandler(SessionForbiddenError)
    def session_forbidden(e):
        return jsonify({'error': 'forbidden'}), 403

    @app.errorhandler(SessionClosedError)
    def session_closed(e):
        return jsonify({'error': 'session_completed'}), 409

    @app.errorhandler(ApplicationNotFoundError)
    def application_not_found(e):
        return jsonify({'error': 'application_not_found'}), 404

    @app.errorhandler(ValueError)
    def bad_request(e):
        return jsonify({'error': str(e)}), 400

    @app.errorhandler(SQLAlchemyError)
    def store_unavailable(e):
        db.session.rollback()
        logger.error('Database error: %s', e, exc_info=True)
        return jsonify({'error': 'temporarily_unavailable'}), 503

    @app.errorhandler(http_requests.RequestException)
    def upstream_failed(e):
        logger.error('Upstream call failed: %s', e)
        return jsonify({'error': 'upstream_unavailable'}), 502

    @app.errorhandler(RuntimeError)
    def not_configured(e):
        logger.error('Service unavailable: %s', e)
        return jsonify({'error': 'service_unavailable', 'detail': str(e)}), 503


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _profile_from(data: dict) -> dict:
    profile = data.get('profile')
    if not isinstance(profile, dict) or not profile:
        raise ValueError('profile is required')
    return normalise_profile(profile)


def _file_response(payload: bytes, mimetype: str, filename: str, balance=None):
    resp = send_file(io.BytesIO(payload), mimetype=mimetype, as_attachment=True,
                     download_name=filename)
    if balance is not None:
        resp.headers['X-Credits-Balance'] = str(balance)
    return resp


def _int_arg(name: str, default: int, maximum: int) -> int:
    try:
        return max(1, min(int(request.args.get(name, default)), maximum))
    except (TypeError, ValueError):
        return default


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@api.route('/')
def index():
    return jsonify({'service': 'jobpilot', 'llm_enabled': LLM_ENABLED})


@api.route('/api/credits')
@login_required
def credits_view():
    user = current_user()
    balance = get_balance(user.id)
    return jsonify({
        **balance.to_dict(),
        'email': user.email,
        'is_admin': user.is_admin,
        'usage': [log.to_dict() for log in usage_history(user.id, limit=20)],
    })


@api.route('/api/activity', methods=['POST'])
@login_required
def activity():
    user = current_user()
    record_activity(user.id, user.email, _body().get('page'))
    return jsonify({'ok': True})


@api.route('/api/profile/extract', methods=['POST'])
@login_required
def profile_extract():
    user = current_user()
    upload = request.files.get('cv')
    if upload and upload.filename:
        cv_text = extract_text_from_upload(upload)
    else:
        cv_text = request.form.get('text') or _body().get('text') or ''
    return jsonify(extract_profile(user.id, user.email, cv_text))


@api.route('/api/letter', methods=['POST'])
@login_required
def letter():
    user = current_user()
    data = _body()
    result = generate_letter_and_pitch(
        user.id, user.email, _profile_from(data),
        job_title=data.get('job_title', ''),
        company_name=data.get('company_name', ''),
        job_description=data.get('job_description', ''),
        lang=data.get('lang', 'fr'),
    )
    return jsonify(result)


@api.route('/api/cv/pdf', methods=['POST'])
@login_required
def cv_pdf():
    user = current_user()
    data = _body()
    pdf_bytes, balance = generate_cv_pdf(
        user.id, user.email, _profile_from(data),
        target_job=data.get('target_job', ''),
        lang=data.get('lang', 'fr'),
        contract=data.get('contract', ''),
        job_link=data.get('job_link', ''),
    )
    return _file_response(pdf_bytes, 'application/pdf', 'cv-ia.pdf', balance)


@api.route('/api/letter/pdf', methods=['POST'])
@login_required
def letter_pdf():
    data = _body()
    cover_letter = str(data.get('cover_letter') or '').strip()
    if not cover_letter:
        raise ValueError('cover_letter is required')
    job_title = str(data.get('job_title') or '').strip()
    lang = data.get('lang', 'fr')
    pdf_bytes = render_letter_pdf(cover_letter, job_title,
                                  str(data.get('company_name') or '').strip(),
                                  str(data.get('candidate_name') or '').strip(), lang)
    return _file_response(pdf_bytes, 'application/pdf', letter_filename(job_title, lang))


@api.route('/api/cv-letter/zip', methods=['POST'])
@login_required
def cv_letter_zip():
    user = current_user()
    data = _body()
    lm = data.get('lm') if isinstance(data.get('lm'), dict) else {}
    zip_bytes, balance = generate_cv_letter_zip(
        user.id, user.email, _profile_from(data),
        target_job=data.get('target_job', ''),
        lang=data.get('lang', 'fr'),
        contract=data.get('contract', ''),
        job_link=data.get('job_link', ''),
        job_description=data.get('job_description', ''),
        letter_options=lm,
    )
    return _file_response(zip_bytes, 'application/zip', 'cv-lm-ia.zip', balance)


# ---------------------------------------------------------------------------
# Interview
# ---------------------------------------------------------------------------

@api.route('/api/interview', methods=['POST'])
@login_required
def interview():
    user = current_user()
    data = _body()
    action = data.get('action')

    if action == 'start':
        cv_summary = data.get('cv_summary') or ''
        if not cv_summary and isinstance(data.get('profile'), dict):
            cv_summary = build_profile_context(normalise_profile(data['profile']))
        result = interview_service.start_interview(
            user.id, user.email,
            job_title=data.get('job_title', ''),
            job_desc=data.get('job_desc', ''),
            cv_summary=cv_summary,
            mode=data.get('mode', interview_service.DEFAULT_MODE),
            difficulty=data.get('difficulty', 'standard'),
            lang=data.get('lang', 'fr'),
        )
        return jsonify(result)

    if action == 'answer':
        result = interview_service.answer(
            user.id, user.email,
            session_id=data.get('session_id', ''),
            message=data.get('message', ''),
            step=data.get('step'),
        )
        return jsonify(result)

    raise ValueError("action must be 'start' or 'answer'")


@api.route('/api/interview/<session_id>')
@login_required
def interview_session(session_id):
    user = current_user()
    return jsonify(interview_service.get_session(user.id, session_id).to_dict())


@api.route('/api/interview/qa', methods=['POST'])
@login_required
def interview_qa():
    user = current_user()
    data = _body()
    result = interview_service.generate_interview_qa(
        user.id, user.email, _profile_from(data),
        data.get('experience_index'), lang=data.get('lang', 'fr'),
    )
    return jsonify(result)


# ---------------------------------------------------------------------------
# Payments (Polar)
# ---------------------------------------------------------------------------

@api.route('/api/packs')
def packs():
    return jsonify({'packs': list_packs()})


@api.route('/api/checkout', methods=['POST'])
@login_required
def checkout():
    user = current_user()
    return jsonify(create_checkout(user.id, user.email, _body().get('pack_id')))


@api.route('/api/webhooks/polar', methods=['GET', 'POST'])
def polar_webhook():
    if request.method == 'GET':
        return jsonify({'ok': True, 'products': credits_by_product_id(),
                        'prices': credits_by_price_id()})
    return jsonify(handle_webhook(request.get_data(), request.headers))


# ---------------------------------------------------------------------------
# Job search (Adzuna)
# ---------------------------------------------------------------------------

@api.route('/api/jobs', methods=['POST'])
@login_required
def jobs():
    data = _body()
    filters = {key: data.get(key) for key in
               ('salary_min', 'salary_max', 'max_days_old', 'contract_time', 'contract_type')
               if data.get(key) not in (None, '', 'any')}
    return jsonify(search_jobs(
        query=data.get('query', ''),
        location=data.get('location', ''),
        page=data.get('page', 1),
        country=data.get('country'),
        results_per_page=data.get('results_per_page', 50),
        **filters,
    ))


# ---------------------------------------------------------------------------
# Application tracker
# ---------------------------------------------------------------------------

@api.route('/api/applications', methods=['GET', 'POST'])
@login_required
def applications():
    user = current_user()
    if request.method == 'POST':
        record = create_application(user.id, _body())
        return jsonify(record.to_dict()), 201
    records = list_applications(user.id, status=request.args.get('status'),
                                search=request.args.get('q'))
    return jsonify({'applications': [r.to_dict() for r in records],
                    'stats': application_stats(user.id)})


@api.route('/api/applications/<application_id>', methods=['GET', 'PUT', 'DELETE'])
@login_required
def application_detail(application_id):
    user = current_user()
    if request.method == 'PUT':
        return jsonify(update_application(user.id, application_id, _body()).to_dict())
    if request.method == 'DELETE':
        delete_application(user.id, application_id)
        return jsonify({'ok': True, 'deleted': application_id})
    return jsonify(get_application(user.id, application_id).to_dict())


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@api.route('/api/admin/users')
@admin_required
def admin_users():
    q = User.query
    search = (request.args.get('q') or '').strip().lower()
    if search:
        q = q.filter(func.lower(User.email).contains(search))
    users = q.order_by(User.created_at.desc()).limit(_int_arg('limit', 100, 500)).all()
    return jsonify({'users': [u.to_dict() for u in users]})


@api.route('/api/admin/logs')
@admin_required
def admin_logs():
    logs = usage_history(request.args.get('user_id') or None,
                         limit=_int_arg('limit', 100, 1000),
                         financial_only=request.args.get('financial') == '1')
    return jsonify({'logs': [log.to_dict() for log in logs]})


@api.route('/api/admin/users/<user_id>/block', methods=['POST'])
@admin_required
def admin_block(user_id):
    user = set_blocked(user_id, bool(_body().get('blocked', True)))
    return jsonify(user.to_dict())


@api.route('/api/admin/users/<user_id>/credits', methods=['POST'])
@admin_required
def admin_credits(user_id):
    admin = current_user()
    if db.session.get(User, user_id) is None:
        return jsonify({'error': 'user_not_found'}), 404
    data = _body()
    amount = data.get('amount')
    reference = str(data.get('reference') or uuid.uuid4().hex)
    result = grant_credits(user_id, None, amount, f'admin:{reference}',
                           metadata={'admin_id': admin.id, 'reference': reference},
                           action='admin_credit', event_type='admin')
    return jsonify({'user_id': result.actor_id, 'credits_added': result.credits_added,
                    'duplicate': result.duplicate, 'new_balance': get_balance(user_id).credits})


@api.route('/api/admin/llm-usage')
@admin_required
def admin_llm_usage():
    return jsonify(get_tracker().summary())


# ---------------------------------------------------------------------------
# Browser sign-in (Google OAuth, only when credentials are configured)
# ---------------------------------------------------------------------------

def _oauth_enabled() -> bool:
    return bool(current_app.config.get('GOOGLE_CLIENT_ID'))


@api.route('/login')
def login():
    if not _oauth_enabled():
        return jsonify({'error': 'oauth_not_configured'}), 404
    redirect_uri = url_for('api.auth_callback', _external=True)
    logger.info('OAuth redirect_uri: %s', redirect_uri)
    return oauth.google.authorize_redirect(redirect_uri)


@api.route('/auth/callback')
def auth_callback():
    if not _oauth_enabled():
        return jsonify({'error': 'oauth_not_configured'}), 404
    base_url = current_app.config.get('APP_BASE_URL', '').rstrip('/')
    try:
        token = oauth.google.authorize_access_token()
        userinfo = token.get('userinfo') or oauth.google.userinfo()
    except OAuthError as e:
        logger.error('OAuth callback error: %s', e, exc_info=True)
        return redirect(f'{base_url}/login?error=oauth')

    logger.info('OAuth userinfo: email=%s', userinfo.get('email', 'unknown'))
    user = get_or_create_user(Identity(
        actor_id=f"google:{userinfo['sub']}",
        actor_email=(userinfo.get('email') or '').lower() or None,
        name=userinfo.get('name'),
        email_verified=bool(userinfo.get('email_verified')),
        provider='google.com',
    ))
    session['user_id'] = user.id
    return redirect(f'{base_url}/app')


@api.route('/logout')
def logout():
    session.clear()
    return redirect(current_app.config.get('APP_BASE_URL') or url_for('api.index'))


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5050))
    create_app().run(debug=True, port=port)
