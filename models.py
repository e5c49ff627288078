"""Database models for JobPilot: users (balances), usage logs, payments, tracked applications."""

import json
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


class User(db.Model):
    """A user and their credit balance, keyed by the identity provider's uid.

    ``credits`` is only ever changed through credits.debit / credits.grant_credits.
    """
    __tablename__ = 'users'

    id = db.Column(db.String(128), primary_key=True)
    email = db.Column(db.String(256), index=True)
    display_name = db.Column(db.String(256))
    email_verified = db.Column(db.Boolean, default=False, nullable=False)
    provider = db.Column(db.String(50), default='password')
    is_admin = db.Column(db.Boolean, default=False, nullable=False)

    credits = db.Column(db.Integer, default=0, nullable=False)
    blocked = db.Column(db.Boolean, default=False, nullable=False)

    # Informational counters, never read for control decisions
    total_ai_calls = db.Column(db.Integer, default=0, nullable=False)
    total_documents_generated = db.Column(db.Integer, default=0, nullable=False)
    total_cv_generated = db.Column(db.Integer, default=0, nullable=False)
    total_lm_generated = db.Column(db.Integer, default=0, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    last_login_at = db.Column(db.DateTime)
    last_seen_at = db.Column(db.DateTime)
    last_seen_page = db.Column(db.String(512))

    __table_args__ = (
        db.CheckConstraint('credits >= 0', name='ck_users_credits_non_negative'),
    )

    usage_logs = db.relationship('UsageLog', backref='user', lazy='dynamic')

    def __repr__(self):
        return f'<User {self.id} {self.email} credits={self.credits}>'

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'display_name': self.display_name,
            'credits': self.credits,
            'blocked': self.blocked,
            'is_admin': self.is_admin,
            'total_ai_calls': self.total_ai_calls,
            'total_documents_generated': self.total_documents_generated,
            'total_cv_generated': self.total_cv_generated,
            'total_lm_generated': self.total_lm_generated,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'last_seen_at': self.last_seen_at.isoformat() if self.last_seen_at else None,
        }


class UsageLog(db.Model):
    """Append-only audit trail: one row per balance mutation (plus heartbeats)."""
    __tablename__ = 'usage_logs'

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(db.String(128), db.ForeignKey('users.id'), nullable=False, index=True)
    actor_email = db.Column(db.String(256))
    action = db.Column(db.String(50), nullable=False)       # generate_document, interview_turn, credit_purchase, heartbeat
    doc_type = db.Column(db.String(10), default='other')    # cv | lm | other
    credits_delta = db.Column(db.Integer)                   # -n debit, +n grant, NULL = not a financial event
    metadata_json = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f'<UsageLog actor={self.actor_id} action={self.action} delta={self.credits_delta}>'

    @property
    def meta(self) -> dict:
        try:
            return json.loads(self.metadata_json) if self.metadata_json else {}
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self):
        return {
            'id': self.id,
            'actor_id': self.actor_id,
            'actor_email': self.actor_email,
            'action': self.action,
            'doc_type': self.doc_type,
            'credits_delta': self.credits_delta,
            'metadata': self.meta,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class ProcessedWebhookEvent(db.Model):
    """Idempotency ledger: a payment event id is credited at most once."""
    __tablename__ = 'processed_webhook_events'

    event_id = db.Column(db.String(128), primary_key=True)
    actor_id = db.Column(db.String(128), nullable=False, index=True)
    credits_added = db.Column(db.Integer, nullable=False)
    product_id = db.Column(db.String(128))
    event_type = db.Column(db.String(50))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<ProcessedWebhookEvent {self.event_id} +{self.credits_added}>'


class CheckoutRecord(db.Model):
    """Polar checkout started by a user; lets the webhook find the payer."""
    __tablename__ = 'polar_checkouts'

    id = db.Column(db.Integer, primary_key=True)
    checkout_id = db.Column(db.String(128), unique=True, nullable=False, index=True)
    customer_id = db.Column(db.String(128), index=True)
    user_id = db.Column(db.String(128), db.ForeignKey('users.id'), nullable=False, index=True)
    email = db.Column(db.String(256))
    pack_id = db.Column(db.String(10), nullable=False)      # 20 / 50 / 100
    product_id = db.Column(db.String(128), nullable=False)
    env = db.Column(db.String(20), default='sandbox')
    status = db.Column(db.String(20))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<CheckoutRecord {self.checkout_id} user={self.user_id} pack={self.pack_id}>'


class Application(db.Model):
    """A job application in the user's tracker. Rows are only ever read through their owner."""
    __tablename__ = 'applications'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(128), db.ForeignKey('users.id'), nullable=False, index=True)
    company = db.Column(db.String(256), nullable=False)
    job_title = db.Column(db.String(256), nullable=False)
    status = db.Column(db.String(20), default='todo', nullable=False)  # todo | sent | interview | offer | rejected
    location = db.Column(db.String(256))
    contract = db.Column(db.String(100))
    source = db.Column(db.String(100))
    job_link = db.Column(db.String(1024))
    notes = db.Column(db.Text)
    has_cv = db.Column(db.Boolean, default=False, nullable=False)
    has_lm = db.Column(db.Boolean, default=False, nullable=False)
    has_pitch = db.Column(db.Boolean, default=False, nullable=False)
    interview_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f'<Application {self.id} {self.company!r} status={self.status}>'

    def to_dict(self):
        return {
            'id': self.id,
            'company': self.company,
            'job_title': self.job_title,
            'status': self.status,
            'location': self.location or '',
            'contract': self.contract or '',
            'source': self.source or '',
            'job_link': self.job_link or '',
            'notes': self.notes or '',
            'has_cv': self.has_cv,
            'has_lm': self.has_lm,
            'has_pitch': self.has_pitch,
            'interview_at': self.interview_at.isoformat() if self.interview_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }
