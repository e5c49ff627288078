"""Polar payment integration for JobPilot credit packs.

Flow: POST /api/checkout creates a Polar checkout (customer external id =
our user id) and remembers checkout → user. Polar then delivers a signed
``order.paid`` webhook; handle_webhook() verifies the Standard Webhooks
signature, maps the product to a credit amount and hands over to
credits.grant_credits(), which is idempotent per order id.
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field

import requests as http_requests
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from credits import LedgerError, grant_credits
from models import CheckoutRecord, db

logger = logging.getLogger(__name__)

POLAR_API_URLS = {
    'production': 'https://api.polar.sh',
    'sandbox': 'https://sandbox-api.polar.sh',
}

# ---------------------------------------------------------------------------
# Credit packs
# ---------------------------------------------------------------------------
PACKS = {
    '20':  {'credits': 20,  'label': 'Starter'},
    '50':  {'credits': 50,  'label': 'Popular'},
    '100': {'credits': 100, 'label': 'Pro Pack'},
}

WEBHOOK_TOLERANCE_SECONDS = 5 * 60


class InvalidSignatureError(Exception):
    """Webhook signature missing, malformed, stale or wrong."""


def list_packs() -> list:
    product_ids = current_app.config.get('POLAR_PRODUCT_IDS', {})
    return [{'pack_id': pack_id, 'credits': info['credits'], 'label': info['label'],
             'available': bool(product_ids.get(pack_id))}
            for pack_id, info in PACKS.items()]


def credits_by_product_id() -> dict:
    product_ids = current_app.config.get('POLAR_PRODUCT_IDS', {})
    return {str(pid): PACKS[pack]['credits'] for pack, pid in product_ids.items()
            if pid and pack in PACKS}


def credits_by_price_id() -> dict:
    price_ids = current_app.config.get('POLAR_PRICE_IDS', {})
    return {str(pid): PACKS[pack]['credits'] for pack, pid in price_ids.items()
            if pid and pack in PACKS}


# ---------------------------------------------------------------------------
# Create Checkout
# ---------------------------------------------------------------------------

def create_checkout(actor_id: str, email: str | None, pack_id: str) -> dict:
    """Create a Polar checkout session and record checkout → user.

    Returns dict with 'url', 'checkout_id', 'pack_id', 'credits'.
    Raises ValueError for an unknown pack, RuntimeError if Polar isn't configured
    and requests.RequestException if the Polar API call fails.
    """
    cfg = current_app.config
    token = cfg.get('POLAR_ACCESS_TOKEN')
    if not token:
        raise RuntimeError('Payments are not configured (POLAR_ACCESS_TOKEN missing)')

    pack_id = str(pack_id or '')
    product_id = cfg.get('POLAR_PRODUCT_IDS', {}).get(pack_id)
    if pack_id not in PACKS or not product_id:
        raise ValueError(f'Invalid pack or product not configured: {pack_id!r}')

    env = 'production' if cfg.get('POLAR_ENV') == 'production' else 'sandbox'
    base_url = cfg.get('APP_BASE_URL', '').rstrip('/')
    payload = {
        'products': [product_id],
        'success_url': f'{base_url}/app/credits?status=success',
        'return_url': f'{base_url}/app/credits?status=cancel',
        'external_customer_id': actor_id,
        'allow_discount_codes': True,
        'metadata': {'app_user_id': actor_id, 'pack_id': pack_id},
    }
    if email:
        payload['customer_email'] = email

    resp = http_requests.post(
        f'{POLAR_API_URLS[env]}/v1/checkouts/',
        json=payload,
        headers={'Authorization': f'Bearer {token}', 'Accept': 'application/json'},
        timeout=20,
    )
    resp.raise_for_status()
    checkout = resp.json()
    if not checkout.get('url'):
        raise RuntimeError('Polar checkout created without a URL')

    checkout_id = str(checkout.get('id') or '')
    logger.info('Polar checkout %s created for user %s pack %s (%s)',
                checkout_id, actor_id, pack_id, env)

    if checkout_id:
        record = CheckoutRecord.query.filter_by(checkout_id=checkout_id).first()
        if record is None:
            record = CheckoutRecord(checkout_id=checkout_id, user_id=actor_id)
            db.session.add(record)
        record.customer_id = checkout.get('customer_id')
        record.email = email
        record.pack_id = pack_id
        record.product_id = product_id
        record.env = env
        record.status = checkout.get('status')
        db.session.commit()

    return {'url': checkout['url'], 'checkout_id': checkout_id,
            'pack_id': pack_id, 'credits': PACKS[pack_id]['credits']}


# ---------------------------------------------------------------------------
# Webhook signature (Standard Webhooks)
# ---------------------------------------------------------------------------

def _signing_key(secret: str) -> bytes:
    if secret.startswith('whsec_'):
        return base64.b64decode(secret[len('whsec_'):])
    return secret.encode('utf-8')


def sign_payload(secret: str, msg_id: str, timestamp: str, body: bytes) -> str:
    """Return the ``v1,<base64>`` signature Polar sends for this message."""
    signed = f'{msg_id}.{timestamp}.'.encode('utf-8') + body
    digest = hmac.new(_signing_key(secret), signed, hashlib.sha256).digest()
    return 'v1,' + base64.b64encode(digest).decode('ascii')


def verify_signature(body: bytes, headers, secret: str, now: float | None = None) -> str:
    """Check the webhook-id / webhook-timestamp / webhook-signature headers.

    Returns the webhook message id. Raises InvalidSignatureError.
    """
    if not secret:
        raise InvalidSignatureError('POLAR_WEBHOOK_SECRET is not configured')

    msg_id = headers.get('webhook-id', '')
    timestamp = headers.get('webhook-timestamp', '')
    signature_header = headers.get('webhook-signature', '')
    if not (msg_id and timestamp and signature_header):
        raise InvalidSignatureError('Missing webhook signature headers')

    try:
        ts = int(timestamp)
    except ValueError:
        raise InvalidSignatureError('Invalid webhook timestamp')
    now = time.time() if now is None else now
    if abs(now - ts) > WEBHOOK_TOLERANCE_SECONDS:
        raise InvalidSignatureError('Webhook timestamp outside tolerance')

    expected = sign_payload(secret, msg_id, timestamp, body)
    for candidate in signature_header.split():
        if hmac.compare_digest(expected, candidate):
            return msg_id
    raise InvalidSignatureError('Webhook signature mismatch')


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------

@dataclass
class PurchaseEvent:
    external_event_id: str
    event_type: str
    credits: int = 0
    product_id: str | None = None
    price_id: str | None = None
    payer_external_id: str | None = None
    payer_email: str | None = None
    customer_id: str | None = None
    checkout_id: str | None = None
    product_ids: list = field(default_factory=list)
    price_ids: list = field(default_factory=list)


def _deep_collect(obj, keys, acc=None) -> list:
    """All non-empty values stored under any of ``keys`` (case-insensitive), depth first."""
    acc = [] if acc is None else acc
    wanted = {k.lower() for k in keys}
    if isinstance(obj, dict):
        for k, v in obj.items():
            if str(k).lower() in wanted and v not in (None, '') and not isinstance(v, (dict, list)):
                acc.append(v)
            if isinstance(v, (dict, list)):
                _deep_collect(v, keys, acc)
    elif isinstance(obj, list):
        for item in obj:
            _deep_collect(item, keys, acc)
    return acc


def _deep_find(obj, keys):
    for key in keys:
        found = _deep_collect(obj, [key])
        if found:
            return str(found[0])
    return None


def parse_purchase_event(event: dict, webhook_id: str | None = None) -> PurchaseEvent:
    """Turn an untrusted ``order.paid`` body into a PurchaseEvent.

    ``credits`` is 0 unless a configured product or price id maps to a pack.
    Product names and descriptions in the payload are never read as amounts.
    """
    data = event.get('data') if isinstance(event.get('data'), dict) else {}

    price_ids = [str(v) for v in _deep_collect(data, ['product_price_id', 'productPriceId'])]
    product_ids = [str(v) for v in _deep_collect(data, ['product_id', 'productId'])]

    by_price = credits_by_price_id()
    by_product = credits_by_product_id()
    amount, price_id, product_id = 0, None, None
    for pid in price_ids:
        if pid in by_price:
            amount, price_id = by_price[pid], pid
            break
    for pid in product_ids:
        if pid in by_product:
            product_id = pid
            amount = amount or by_product[pid]
            break

    order_id = data.get('id') or data.get('order_id') or event.get('id') or webhook_id
    return PurchaseEvent(
        external_event_id=str(order_id) if order_id else '',
        event_type=str(event.get('type') or ''),
        credits=amount,
        product_id=product_id or (product_ids[0] if product_ids else None),
        price_id=price_id or (price_ids[0] if price_ids else None),
        payer_external_id=_deep_find(data, ['external_customer_id', 'customer_external_id',
                                            'external_id', 'app_user_id']),
        payer_email=_deep_find(data, ['customer_email', 'email']),
        customer_id=_deep_find(data, ['customer_id', 'customerId']),
        checkout_id=_deep_find(data, ['checkout_id', 'checkoutId']),
        product_ids=product_ids,
        price_ids=price_ids,
    )


def _payer_from_checkout_mapping(purchase: PurchaseEvent) -> str | None:
    record = None
    if purchase.customer_id:
        record = (CheckoutRecord.query.filter_by(customer_id=purchase.customer_id)
                  .order_by(CheckoutRecord.created_at.desc()).first())
    if record is None and purchase.checkout_id:
        record = CheckoutRecord.query.filter_by(checkout_id=purchase.checkout_id).first()
    return record.user_id if record else None


# ---------------------------------------------------------------------------
# Webhook handler
# ---------------------------------------------------------------------------

def handle_webhook(body: bytes, headers) -> dict:
    """Verify and process a Polar webhook delivery.

    Raises InvalidSignatureError (→ 403). Everything after verification
    answers 200 so Polar stops retrying, including a signed body that is not
    a readable event; crediting problems are logged for manual reconciliation.
    """
    webhook_id = verify_signature(body, headers, current_app.config.get('POLAR_WEBHOOK_SECRET', ''))

    try:
        event = json.loads(body or b'{}')
    except ValueError:
        logger.error('Polar webhook %s: signed body is not valid JSON, ignored', webhook_id)
        return {'ok': True, 'ignored': True, 'reason': 'unreadable_body'}
    if not isinstance(event, dict) or not event.get('type'):
        logger.error('Polar webhook %s: signed event has no type, ignored', webhook_id)
        return {'ok': True, 'ignored': True, 'reason': 'unreadable_body'}

    if event['type'] != 'order.paid':
        logger.info('Polar webhook %s ignored (type=%s)', webhook_id, event['type'])
        return {'ok': True, 'ignored': True}

    purchase = parse_purchase_event(event, webhook_id)
    if not purchase.credits:
        logger.warning('Polar order %s: no configured product/price maps to credits '
                       '(products=%s prices=%s), nothing granted',
                       purchase.external_event_id, purchase.product_ids, purchase.price_ids)
        return {'ok': True, 'ignored': True, 'reason': 'unmapped_product'}

    payer_id = purchase.payer_external_id or _payer_from_checkout_mapping(purchase)
    try:
        result = grant_credits(
            payer_external_id=payer_id,
            payer_email=purchase.payer_email,
            amount=purchase.credits,
            external_event_id=purchase.external_event_id,
            product_id=purchase.product_id,
            metadata={'price_id': purchase.price_id, 'checkout_id': purchase.checkout_id,
                      'customer_id': purchase.customer_id, 'source': 'polar'},
            event_type=purchase.event_type,
        )
    except LedgerError as e:
        logger.error('RECONCILE Polar order %s (+%d, payer=%s, email=%s) not credited: %s',
                     purchase.external_event_id, purchase.credits, payer_id,
                     purchase.payer_email, e)
        return {'ok': True, 'processed': False, 'reason': type(e).__name__}
    except SQLAlchemyError:
        logger.exception('RECONCILE Polar order %s (+%d, payer=%s) failed in the database',
                         purchase.external_event_id, purchase.credits, payer_id)
        return {'ok': True, 'processed': False, 'reason': 'store_error'}

    return {'ok': True, 'processed': not result.duplicate, 'duplicate': result.duplicate,
            'user_id': result.actor_id, 'credits_added': result.credits_added}
