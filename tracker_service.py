"""Job application tracker: per-user CRUD over the ``applications`` table.

Every lookup is scoped to the owner. Another user's row is reported as not
found so ids do not leak between accounts. Tracker actions are free.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import or_

from models import Application, db

logger = logging.getLogger(__name__)

STATUSES = ('todo', 'sent', 'interview', 'offer', 'rejected')
ACTIVE_STATUSES = ('sent', 'interview', 'offer')

_TEXT_FIELDS = {
    'company': 256,
    'job_title': 256,
    'location': 256,
    'contract': 100,
    'source': 100,
    'job_link': 1024,
    'notes': 20000,
}
_FLAG_FIELDS = ('has_cv', 'has_lm', 'has_pitch')


class ApplicationNotFoundError(Exception):
    """No application with this id belongs to the caller."""


def _clean_text(value, max_len: int) -> str:
    return str(value if value is not None else '').strip()[:max_len]


def _parse_status(value) -> str:
    status = str(value or 'todo').strip().lower()
    if status not in STATUSES:
        raise ValueError(f"status must be one of {', '.join(STATUSES)}")
    return status


def _parse_datetime(value):
    if value in (None, ''):
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise ValueError('interview_at must be an ISO 8601 date-time')
    # Stored naive, in UTC like every other timestamp column
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _apply_fields(record: Application, data: dict, partial: bool):
    for name, max_len in _TEXT_FIELDS.items():
        if name in data or not partial:
            setattr(record, name, _clean_text(data.get(name), max_len))
    for name in _FLAG_FIELDS:
        if name in data or not partial:
            setattr(record, name, bool(data.get(name)))
    if 'status' in data or not partial:
        record.status = _parse_status(data.get('status'))
    if 'interview_at' in data or not partial:
        record.interview_at = _parse_datetime(data.get('interview_at'))

    if not record.company or not record.job_title:
        raise ValueError('company and job_title are required')


def _owned(owner_id: str, application_id) -> Application:
    try:
        application_id = int(application_id)
    except (TypeError, ValueError):
        raise ApplicationNotFoundError(application_id)
    record = Application.query.filter_by(id=application_id, user_id=owner_id).first()
    if record is None:
        raise ApplicationNotFoundError(application_id)
    return record


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

def list_applications(owner_id: str, status: str | None = None, search: str | None = None) -> list:
    """The owner's applications, newest first, optionally filtered."""
    query = Application.query.filter_by(user_id=owner_id)
    if status and status != 'all':
        query = query.filter_by(status=_parse_status(status))
    if search and search.strip():
        pattern = f'%{search.strip()}%'
        query = query.filter(or_(Application.company.ilike(pattern),
                                 Application.job_title.ilike(pattern)))
    return query.order_by(Application.created_at.desc(), Application.id.desc()).all()


def application_stats(owner_id: str) -> dict:
    statuses = [row.status for row in
                db.session.query(Application.status).filter_by(user_id=owner_id)]
    return {
        'total': len(statuses),
        'active': sum(1 for s in statuses if s in ACTIVE_STATUSES),
        'interview': statuses.count('interview'),
        'offer': statuses.count('offer'),
    }


def get_application(owner_id: str, application_id) -> Application:
    return _owned(owner_id, application_id)


def create_application(owner_id: str, data: dict) -> Application:
    record = Application(user_id=owner_id)
    _apply_fields(record, data, partial=False)
    db.session.add(record)
    db.session.commit()
    logger.info('Application %s created for user %s (%s)', record.id, owner_id, record.status)
    return record


def update_application(owner_id: str, application_id, data: dict) -> Application:
    """Change only the fields present in ``data``."""
    record = _owned(owner_id, application_id)
    try:
        _apply_fields(record, data, partial=True)
    except ValueError:
        db.session.rollback()
        raise
    db.session.commit()
    return record


def delete_application(owner_id: str, application_id):
    record = _owned(owner_id, application_id)
    db.session.delete(record)
    db.session.commit()
    logger.info('Application %s deleted by user %s', application_id, owner_id)
