"""Credits & usage ledger: the only code allowed to change a user's balance.

Two protocols mutate ``users.credits``:

  * debit():         reserve credits before a paid AI action
  * grant_credits(): top up after a confirmed payment (idempotent per event id)

Every mutation appends a UsageLog row in the same transaction. The balance
change itself is always a single conditional UPDATE so concurrent requests
serialize on the row instead of racing on a read-then-write.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import ProcessedWebhookEvent, UsageLog, User, db

logger = logging.getLogger(__name__)

users_table = User.__table__

# ---------------------------------------------------------------------------
# Pricing per action (credits)
# ---------------------------------------------------------------------------
CREDIT_COSTS = {
    'letter': 1,             # cover letter + pitch
    'cv_pdf': 1,
    'cv_letter_zip': 2,
    'profile_extract': 1,
    'interview_turn': 1,
    'interview_qa': 1,
}

DOC_TYPES = ('cv', 'lm', 'other')


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class LedgerError(Exception):
    """Base class for refused ledger operations."""


class InsufficientCreditsError(LedgerError):
    def __init__(self, actor_id: str, balance: int, required: int):
        super().__init__(f'User {actor_id} has {balance} credits, {required} required')
        self.actor_id = actor_id
        self.balance = balance
        self.required = required


class BlockedError(LedgerError):
    def __init__(self, actor_id: str):
        super().__init__(f'User {actor_id} is blocked')
        self.actor_id = actor_id


class NoRecipientError(LedgerError):
    """A payment could not be matched to any user."""


class AmbiguousRecipientError(LedgerError):
    """Several users share the payer email; nothing is credited."""

    def __init__(self, email: str, matches: list):
        super().__init__(f'{len(matches)} users share email {email}')
        self.email = email
        self.matches = matches


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class BalanceRecord:
    actor_id: str
    credits: int = 0
    blocked: bool = False
    total_ai_calls: int = 0
    total_documents_generated: int = 0
    total_cv_generated: int = 0
    total_lm_generated: int = 0
    exists: bool = False

    def to_dict(self) -> dict:
        return {
            'credits': self.credits,
            'blocked': self.blocked,
            'total_ai_calls': self.total_ai_calls,
            'total_documents_generated': self.total_documents_generated,
            'total_cv_generated': self.total_cv_generated,
            'total_lm_generated': self.total_lm_generated,
        }


@dataclass
class GrantResult:
    actor_id: str
    credits_added: int
    new_balance: int | None = None
    duplicate: bool = False
    created: bool = False


def _check_amount(amount) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f'Credit amount must be a positive integer, got {amount!r}')


def _dump_metadata(metadata: dict | None) -> str | None:
    if not metadata:
        return None
    return json.dumps(metadata, default=str, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Balance store (read side)
# ---------------------------------------------------------------------------

def get_balance(actor_id: str) -> BalanceRecord:
    """Return the current balance record. Absent user ⇒ zero, not blocked."""
    user = db.session.get(User, actor_id)
    if user is None:
        return BalanceRecord(actor_id=actor_id)
    return BalanceRecord(
        actor_id=user.id,
        credits=user.credits,
        blocked=user.blocked,
        total_ai_calls=user.total_ai_calls,
        total_documents_generated=user.total_documents_generated,
        total_cv_generated=user.total_cv_generated,
        total_lm_generated=user.total_lm_generated,
        exists=True,
    )


def usage_history(actor_id: str | None = None, limit: int = 20,
                  financial_only: bool = False) -> list[UsageLog]:
    """Most recent usage entries, newest first. ``actor_id=None`` = all users."""
    q = UsageLog.query
    if actor_id:
        q = q.filter(UsageLog.actor_id == actor_id)
    if financial_only:
        q = q.filter(UsageLog.credits_delta.isnot(None))
    return q.order_by(UsageLog.created_at.desc(), UsageLog.id.desc()).limit(limit).all()


# ---------------------------------------------------------------------------
# Debit protocol
# ---------------------------------------------------------------------------

def debit(actor_id: str, actor_email: str | None, amount: int,
          action: str = 'generate_document', doc_type: str = 'other',
          metadata: dict | None = None) -> int:
    """Atomically take ``amount`` credits from a user and log it.

    Returns the new balance. Raises BlockedError or InsufficientCreditsError
    without touching the database. Store errors propagate after rollback.
    """
    _check_amount(amount)
    if doc_type not in DOC_TYPES:
        doc_type = 'other'

    values = {
        'credits': users_table.c.credits - amount,
        'total_ai_calls': users_table.c.total_ai_calls + 1,
    }
    if doc_type in ('cv', 'lm'):
        values['total_documents_generated'] = users_table.c.total_documents_generated + 1
    if doc_type == 'cv':
        values['total_cv_generated'] = users_table.c.total_cv_generated + 1
    elif doc_type == 'lm':
        values['total_lm_generated'] = users_table.c.total_lm_generated + 1

    try:
        result = db.session.execute(
            update(users_table)
            .where(users_table.c.id == actor_id,
                   users_table.c.credits >= amount,
                   users_table.c.blocked.is_(False))
            .values(**values)
        )
        if result.rowcount == 0:
            row = db.session.execute(
                select(users_table.c.credits, users_table.c.blocked)
                .where(users_table.c.id == actor_id)
            ).first()
            db.session.rollback()
            if row is not None and row.blocked:
                logger.warning('Debit refused: user %s is blocked (%s)', actor_id, action)
                raise BlockedError(actor_id)
            balance = row.credits if row is not None else 0
            logger.info('Debit refused: user %s has %d credits, needs %d (%s)',
                        actor_id, balance, amount, action)
            raise InsufficientCreditsError(actor_id, balance, amount)

        db.session.add(UsageLog(
            actor_id=actor_id,
            actor_email=actor_email,
            action=action,
            doc_type=doc_type,
            credits_delta=-amount,
            metadata_json=_dump_metadata(metadata),
        ))
        db.session.flush()
        new_balance = db.session.execute(
            select(users_table.c.credits).where(users_table.c.id == actor_id)
        ).scalar_one()
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise

    logger.info('Debited %d credits from user %s for %s/%s (balance=%d)',
                amount, actor_id, action, doc_type, new_balance)
    return new_balance


# ---------------------------------------------------------------------------
# Credit protocol
# ---------------------------------------------------------------------------

def _find_by_email(email: str) -> list[User]:
    return User.query.filter(func.lower(User.email) == email.strip().lower()).all()


def _resolve_recipient(payer_external_id: str | None, payer_email: str | None) -> User | None:
    """Find the user to credit. None means "create a record for payer_external_id"."""
    if payer_external_id:
        user = db.session.get(User, payer_external_id)
        if user is not None:
            return user

    if payer_email:
        matches = _find_by_email(payer_email)
        if len(matches) > 1:
            raise AmbiguousRecipientError(payer_email, [u.id for u in matches])
        if matches:
            if payer_external_id:
                logger.warning('Payer id %s unknown, matched user %s by email',
                               payer_external_id, matches[0].id)
            return matches[0]

    if payer_external_id:
        return None
    raise NoRecipientError(f'No user for external id {payer_external_id!r} / email {payer_email!r}')


def _already_processed(external_event_id: str) -> GrantResult | None:
    event = db.session.get(ProcessedWebhookEvent, external_event_id)
    if event is None:
        return None
    logger.info('Event %s already credited (+%d to %s), skipping',
                external_event_id, event.credits_added, event.actor_id)
    return GrantResult(actor_id=event.actor_id, credits_added=0, duplicate=True)


def grant_credits(payer_external_id: str | None, payer_email: str | None, amount: int,
                  external_event_id: str, product_id: str | None = None,
                  metadata: dict | None = None, action: str = 'credit_purchase',
                  event_type: str = 'order.paid') -> GrantResult:
    """Add ``amount`` credits for a confirmed external event, at most once per event id.

    Raises NoRecipientError / AmbiguousRecipientError when the payer can't be
    resolved and BlockedError when the recipient is blocked; in those cases the
    event is NOT marked processed so it can be replayed later.
    """
    _check_amount(amount)
    if not external_event_id:
        raise ValueError('external_event_id is required for idempotent crediting')

    duplicate = _already_processed(external_event_id)
    if duplicate:
        return duplicate

    user = _resolve_recipient(payer_external_id, payer_email)
    created = user is None
    meta = dict(metadata or {})
    if product_id:
        meta.setdefault('product_id', product_id)
    meta.setdefault('external_event_id', external_event_id)

    try:
        if created:
            user = User(id=payer_external_id, email=payer_email, credits=0)
            db.session.add(user)
            db.session.flush()
            logger.warning('No user record for %s, creating one with %d credits',
                           payer_external_id, amount)
        actor_id = user.id
        actor_email = user.email or payer_email

        db.session.add(ProcessedWebhookEvent(
            event_id=external_event_id,
            actor_id=actor_id,
            credits_added=amount,
            product_id=product_id,
            event_type=event_type,
        ))
        db.session.flush()

        result = db.session.execute(
            update(users_table)
            .where(users_table.c.id == actor_id, users_table.c.blocked.is_(False))
            .values(credits=users_table.c.credits + amount)
        )
        if result.rowcount == 0:
            db.session.rollback()
            logger.error('Credit refused: user %s is blocked (event %s, +%d)',
                         actor_id, external_event_id, amount)
            raise BlockedError(actor_id)

        db.session.add(UsageLog(
            actor_id=actor_id,
            actor_email=actor_email,
            action=action,
            doc_type='other',
            credits_delta=amount,
            metadata_json=_dump_metadata(meta),
        ))
        db.session.flush()
        new_balance = db.session.execute(
            select(users_table.c.credits).where(users_table.c.id == actor_id)
        ).scalar_one()
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        # A concurrent delivery of the same event committed first
        duplicate = _already_processed(external_event_id)
        if duplicate:
            return duplicate
        raise
    except SQLAlchemyError:
        db.session.rollback()
        raise

    logger.info('Credited +%d to user %s for event %s (balance=%d)',
                amount, actor_id, external_event_id, new_balance)
    return GrantResult(actor_id=actor_id, credits_added=amount,
                       new_balance=new_balance, created=created)


# ---------------------------------------------------------------------------
# Administrative / non-financial
# ---------------------------------------------------------------------------

def set_blocked(actor_id: str, blocked: bool) -> User:
    """Lock or unlock an account. Raises ValueError if the user doesn't exist."""
    user = db.session.get(User, actor_id)
    if user is None:
        raise ValueError(f'User not found: {actor_id}')
    user.blocked = bool(blocked)
    db.session.commit()
    logger.warning('User %s %s', actor_id, 'blocked' if blocked else 'unblocked')
    return user


def record_activity(actor_id: str, actor_email: str | None, page: str | None = None) -> None:
    """Heartbeat: remember where the user is and append a zero-delta log entry."""
    user = db.session.get(User, actor_id)
    if user is None:
        return
    user.last_seen_at = datetime.utcnow()
    if page:
        user.last_seen_page = page[:512]
    db.session.add(UsageLog(
        actor_id=actor_id,
        actor_email=actor_email,
        action='heartbeat',
        doc_type='other',
        credits_delta=None,
        metadata_json=_dump_metadata({'path': page} if page else None),
    ))
    db.session.commit()
