"""Operator commands (``flask --app app <command>``). All are safe to re-run."""

import json
import logging
from datetime import datetime

import click
from sqlalchemy import func

from credits import LedgerError, grant_credits
from models import User, db

logger = logging.getLogger(__name__)


def _ms_to_datetime(value):
    try:
        return datetime.utcfromtimestamp(int(value) / 1000)
    except (TypeError, ValueError):
        return None


def sync_users(accounts: list) -> dict:
    """Import identity-provider accounts into the users table.

    Missing users are created with 0 credits and not blocked; existing users
    only get their profile fields refreshed (balances are never touched).
    """
    created = updated = skipped = 0
    for account in accounts:
        uid = account.get('localId') or account.get('uid')
        if not uid:
            skipped += 1
            continue
        providers = account.get('providerUserInfo') or []
        provider = providers[0].get('providerId') if providers else 'password'
        email = (account.get('email') or '').strip().lower() or None

        user = db.session.get(User, uid)
        if user is None:
            user = User(id=uid, credits=0, blocked=False,
                        created_at=_ms_to_datetime(account.get('createdAt')) or datetime.utcnow())
            db.session.add(user)
            created += 1
        else:
            updated += 1
        user.email = email or user.email
        user.display_name = account.get('displayName') or user.display_name
        user.email_verified = bool(account.get('emailVerified')) or user.email_verified
        user.provider = provider or user.provider
        last_login = _ms_to_datetime(account.get('lastSignedInAt'))
        if last_login:
            user.last_login_at = last_login
    db.session.commit()
    logger.info('User sync: %d created, %d updated, %d skipped', created, updated, skipped)
    return {'created': created, 'updated': updated, 'skipped': skipped}


def register_commands(app):
    @app.cli.command('set-admin')
    @click.argument('email')
    @click.option('--revoke', is_flag=True, help='Remove admin rights instead of granting them.')
    def set_admin(email, revoke):
        """Grant (or revoke) admin rights for the user with EMAIL."""
        users = User.query.filter(func.lower(User.email) == email.strip().lower()).all()
        if not users:
            raise click.ClickException(f'No user with email {email}')
        for user in users:
            user.is_admin = not revoke
        db.session.commit()
        click.echo(f"{'Revoked' if revoke else 'Granted'} admin for "
                   f"{', '.join(u.id for u in users)}")

    @app.cli.command('sync-users')
    @click.argument('export_json', type=click.File('r', encoding='utf-8'))
    def sync_users_command(export_json):
        """Import users from an identity-provider export (auth:export JSON)."""
        data = json.load(export_json)
        accounts = data.get('users', []) if isinstance(data, dict) else data
        stats = sync_users(accounts)
        click.echo(f"created={stats['created']} updated={stats['updated']} "
                   f"skipped={stats['skipped']}")

    @app.cli.command('grant-credits')
    @click.argument('user_id')
    @click.argument('amount', type=int)
    @click.option('--reference', required=True,
                  help='Unique reference (e.g. Polar order id); re-running with it is a no-op.')
    def grant_credits_command(user_id, amount, reference):
        """Manually credit USER_ID with AMOUNT credits (reconciliation)."""
        user = db.session.get(User, user_id)
        if user is None:
            raise click.ClickException(f'No user {user_id}')
        try:
            result = grant_credits(user_id, None, amount, f'manual:{reference}',
                                   metadata={'source': 'cli', 'reference': reference},
                                   action='manual_credit', event_type='manual')
        except (LedgerError, ValueError) as e:
            raise click.ClickException(str(e))
        if result.duplicate:
            click.echo(f'Reference {reference} was already applied, nothing changed')
        else:
            click.echo(f'+{amount} credits for {user_id} (balance={result.new_balance})')
