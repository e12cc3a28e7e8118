"""
Subscriptions & Billing
Stripe checkout, customer portal and webhook-driven plan sync
"""

import os
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import stripe
from flask import Blueprint, request, jsonify, g

from auth import require_auth
from cache import get_cache
from database import (
    get_db, get_user_by_id, get_user_by_stripe_customer, set_stripe_customer_id,
    log_audit, row_to_dict, to_db_time, utc_now
)
from usage_limits import PLAN_LIMITS, get_analytics_access

logger = logging.getLogger(__name__)

STRIPE_SECRET_KEY = os.getenv('STRIPE_SECRET_KEY', '')
STRIPE_WEBHOOK_SECRET = os.getenv('STRIPE_WEBHOOK_SECRET', '')
APP_URL = os.getenv('APP_URL', 'http://localhost:3000').rstrip('/')

PRICE_IDS = {
    'lite': os.getenv('STRIPE_LITE_PRICE_ID', ''),
    'pro': os.getenv('STRIPE_PRO_PRICE_ID', ''),
    'team': os.getenv('STRIPE_TEAM_PRICE_ID', ''),
}

stripe.api_key = STRIPE_SECRET_KEY

# ==============================================================================
# PLANS
# ==============================================================================

def _plan(tier: str, name: str, price: int, account_sets: int) -> Dict[str, Any]:
    return {
        'tier': tier,
        'name': name,
        'price': price,  # cents per month
        'limits': dict(PLAN_LIMITS[tier]),
        'analytics': get_analytics_access(tier),
        'ecommerce': tier in ('pro', 'team'),
        'team_dashboard': tier == 'team',
        'account_sets': account_sets,
    }


PLANS = {
    'free': _plan('free', 'Free', 0, 1),
    'lite': _plan('lite', 'Lite', 2997, 1),
    'pro': _plan('pro', 'Pro', 29700, 3),
    'team': _plan('team', 'Team', 99700, 10),
}

PAID_TIERS = ('lite', 'pro', 'team')


class BillingError(Exception):
    def __init__(self, message: str, status_code: int = 400, error_code: str = 'BILLING_ERROR'):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code


def is_billing_configured() -> bool:
    return bool(stripe.api_key)


def _require_stripe():
    if not is_billing_configured():
        raise BillingError('Billing is not configured', 503, 'BILLING_NOT_CONFIGURED')


def get_tier_from_price_id(price_id: Optional[str]) -> str:
    for tier, configured in PRICE_IDS.items():
        if configured and configured == price_id:
            return tier
    return 'free'


def get_price_id(tier: str) -> str:
    if tier not in PAID_TIERS:
        raise BillingError(f'Invalid plan: {tier}', 400, 'INVALID_PLAN')
    price_id = PRICE_IDS.get(tier)
    if not price_id:
        raise BillingError(f'No price configured for plan: {tier}', 503, 'BILLING_NOT_CONFIGURED')
    return price_id

# ==============================================================================
# LOCAL SUBSCRIPTION RECORDS
# ==============================================================================

def get_user_subscription(user_id: str) -> Dict[str, Any]:
    """Stored subscription, or a free/active default"""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM user_subscriptions WHERE user_id = ?', (user_id,))
        row = row_to_dict(cursor.fetchone())

    if not row:
        return {
            'user_id': user_id,
            'tier': 'free',
            'status': 'active',
            'stripe_customer_id': None,
            'stripe_subscription_id': None,
            'stripe_price_id': None,
            'current_period_end': None,
            'cancel_at_period_end': False,
        }

    row['cancel_at_period_end'] = bool(row['cancel_at_period_end'])
    return row


def upsert_subscription(user_id: str, **fields) -> Dict[str, Any]:
    columns = ['user_id'] + list(fields) + ['updated_at']
    values = [user_id] + list(fields.values()) + [utc_now()]
    updates = ', '.join(f"{c} = excluded.{c}" for c in columns[1:])

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(f'''
            INSERT INTO user_subscriptions ({', '.join(columns)})
            VALUES ({', '.join('?' for _ in columns)})
            ON CONFLICT(user_id) DO UPDATE SET {updates}
        ''', values)

    get_cache().invalidate_user_cache(user_id)
    return get_user_subscription(user_id)


def _update_status_by_subscription_id(subscription_id: str, status: str) -> bool:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            UPDATE user_subscriptions SET status = ?, updated_at = ?
            WHERE stripe_subscription_id = ?
        ''', (status, utc_now(), subscription_id))
        return cursor.rowcount > 0


def delete_subscription(user_id: str) -> Dict[str, Any]:
    """Revert a user to the free plan"""
    logger.info(f"[BILLING] Reverting {user_id} to free")
    return upsert_subscription(
        user_id,
        tier='free',
        status='canceled',
        stripe_subscription_id=None,
        stripe_price_id=None,
        current_period_end=None,
        cancel_at_period_end=0
    )

# ==============================================================================
# STRIPE OPERATIONS
# ==============================================================================

def _as_dict(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    return json.loads(str(obj))


def _get_or_create_customer(user) -> str:
    record = get_user_by_id(user.id) or {}
    customer_id = record.get('stripe_customer_id')
    if customer_id:
        return customer_id

    customer = stripe.Customer.create(
        email=user.email,
        name=user.name,
        metadata={'userId': user.id}
    )
    set_stripe_customer_id(user.id, customer.id)
    logger.info(f"[BILLING] Created Stripe customer {customer.id} for {user.id}")
    return customer.id


def create_checkout_session(user, tier: str) -> Dict[str, str]:
    _require_stripe()
    price_id = get_price_id(tier)
    customer_id = _get_or_create_customer(user)

    session = stripe.checkout.Session.create(
        mode='subscription',
        customer=customer_id,
        line_items=[{'price': price_id, 'quantity': 1}],
        success_url=f"{APP_URL}/dashboard/subscription?success=true&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{APP_URL}/pricing?canceled=true",
        allow_promotion_codes=True,
        client_reference_id=user.id,
        metadata={'userId': user.id, 'tier': tier},
        subscription_data={'metadata': {'userId': user.id, 'tier': tier}},
    )

    logger.info(f"[BILLING] Checkout session {session.id} for {user.id} ({tier})")
    return {'session_id': session.id, 'url': session.url}


def create_portal_session(user) -> Dict[str, str]:
    _require_stripe()
    record = get_user_by_id(user.id) or {}
    customer_id = record.get('stripe_customer_id')
    if not customer_id:
        raise BillingError('No billing account on file', 400, 'NO_CUSTOMER')

    session = stripe.billing_portal.Session.create(
        customer=customer_id,
        return_url=f"{APP_URL}/dashboard/subscription"
    )
    return {'url': session.url}


def cancel_subscription(user) -> Dict[str, Any]:
    """Cancel at the end of the current period"""
    _require_stripe()
    current = get_user_subscription(user.id)
    subscription_id = current.get('stripe_subscription_id')
    if not subscription_id:
        raise BillingError('No active subscription', 400, 'NO_SUBSCRIPTION')

    stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
    log_audit(user.id, user.email, 'subscription.cancel_requested', 'subscription', subscription_id)
    logger.info(f"[BILLING] {user.id} cancelled {subscription_id} at period end")
    return upsert_subscription(user.id, cancel_at_period_end=1)


def _subscription_period_end(subscription: Dict) -> Optional[str]:
    period_end = subscription.get('current_period_end')
    if period_end is None:
        items = (subscription.get('items') or {}).get('data') or []
        if items:
            period_end = items[0].get('current_period_end')
    if not period_end:
        return None
    return to_db_time(datetime.utcfromtimestamp(int(period_end)))


def _subscription_price_id(subscription: Dict) -> Optional[str]:
    items = (subscription.get('items') or {}).get('data') or []
    if not items:
        return None
    return (items[0].get('price') or {}).get('id')


def _resolve_user_id(obj: Dict) -> Optional[str]:
    user_id = (obj.get('metadata') or {}).get('userId')
    if user_id:
        return user_id
    customer_id = obj.get('customer')
    if customer_id:
        user = get_user_by_stripe_customer(customer_id)
        if user:
            return user['id']
    return None


def sync_subscription_from_stripe(subscription: Any) -> Optional[Dict[str, Any]]:
    """Mirror a Stripe subscription object into user_subscriptions"""
    subscription = _as_dict(subscription)
    user_id = _resolve_user_id(subscription)
    if not user_id:
        logger.warning(f"[BILLING] No user for subscription {subscription.get('id')}")
        return None

    price_id = _subscription_price_id(subscription)
    tier = get_tier_from_price_id(price_id)

    record = upsert_subscription(
        user_id,
        tier=tier,
        status=subscription.get('status', 'active'),
        stripe_customer_id=subscription.get('customer'),
        stripe_subscription_id=subscription.get('id'),
        stripe_price_id=price_id,
        current_period_end=_subscription_period_end(subscription),
        cancel_at_period_end=int(bool(subscription.get('cancel_at_period_end')))
    )
    logger.info(f"[BILLING] Synced {subscription.get('id')} -> {user_id} ({tier}, {record['status']})")
    return record


def _invoice_subscription_id(invoice: Dict) -> Optional[str]:
    subscription_id = invoice.get('subscription')
    if subscription_id:
        return subscription_id if isinstance(subscription_id, str) else subscription_id.get('id')
    details = ((invoice.get('parent') or {}).get('subscription_details') or {})
    return details.get('subscription')


def handle_webhook_event(event: Any) -> bool:
    """Apply a verified Stripe event, returns False when it is ignored"""
    event = _as_dict(event)
    event_type = event.get('type')
    obj = (event.get('data') or {}).get('object') or {}

    if event_type in ('customer.subscription.created', 'customer.subscription.updated'):
        sync_subscription_from_stripe(obj)

    elif event_type == 'customer.subscription.deleted':
        user_id = _resolve_user_id(obj)
        if user_id:
            delete_subscription(user_id)

    elif event_type == 'customer.subscription.trial_will_end':
        logger.info(f"[BILLING] Trial ending soon for subscription {obj.get('id')}")

    elif event_type == 'invoice.payment_succeeded':
        subscription_id = _invoice_subscription_id(obj)
        if subscription_id:
            _update_status_by_subscription_id(subscription_id, 'active')

    elif event_type == 'invoice.payment_failed':
        subscription_id = _invoice_subscription_id(obj)
        if subscription_id:
            _update_status_by_subscription_id(subscription_id, 'past_due')
            logger.warning(f"[BILLING] Payment failed for subscription {subscription_id}")

    elif event_type == 'checkout.session.completed':
        user_id = _resolve_user_id(obj) or obj.get('client_reference_id')
        if user_id and obj.get('customer'):
            set_stripe_customer_id(user_id, obj['customer'])
        if obj.get('subscription'):
            sync_subscription_from_stripe(stripe.Subscription.retrieve(obj['subscription']))

    else:
        logger.debug(f"[BILLING] Ignoring event {event_type}")
        return False

    return True

# ==============================================================================
# BILLING BLUEPRINT
# ==============================================================================

billing_bp = Blueprint('billing', __name__, url_prefix='/api/v1/billing')


def _billing_error(e: BillingError):
    return jsonify({
        'status': 'error',
        'error': e.message,
        'error_code': e.error_code
    }), e.status_code


@billing_bp.route('/plans', methods=['GET'])
def list_plans():
    return jsonify({'status': 'success', 'data': {'plans': list(PLANS.values())}})


@billing_bp.route('/subscription', methods=['GET'])
@require_auth
def current_subscription():
    subscription = get_user_subscription(g.current_user.id)
    return jsonify({
        'status': 'success',
        'data': {
            'subscription': subscription,
            'plan': PLANS.get(subscription['tier'], PLANS['free'])
        }
    })


@billing_bp.route('/checkout', methods=['POST'])
@require_auth
def checkout():
    data = request.get_json(silent=True) or {}
    try:
        session = create_checkout_session(g.current_user, str(data.get('tier', '')).lower())
    except BillingError as e:
        return _billing_error(e)
    except stripe.StripeError as e:
        logger.error(f"[ERROR] Stripe checkout failed: {e}")
        return jsonify({'status': 'error', 'error': 'Payment provider error', 'error_code': 'STRIPE_ERROR'}), 502
    return jsonify({'status': 'success', 'data': session})


@billing_bp.route('/portal', methods=['POST'])
@require_auth
def portal():
    try:
        session = create_portal_session(g.current_user)
    except BillingError as e:
        return _billing_error(e)
    except stripe.StripeError as e:
        logger.error(f"[ERROR] Stripe portal failed: {e}")
        return jsonify({'status': 'error', 'error': 'Payment provider error', 'error_code': 'STRIPE_ERROR'}), 502
    return jsonify({'status': 'success', 'data': session})


@billing_bp.route('/cancel', methods=['POST'])
@require_auth
def cancel():
    try:
        subscription = cancel_subscription(g.current_user)
    except BillingError as e:
        return _billing_error(e)
    except stripe.StripeError as e:
        logger.error(f"[ERROR] Stripe cancel failed: {e}")
        return jsonify({'status': 'error', 'error': 'Payment provider error', 'error_code': 'STRIPE_ERROR'}), 502
    return jsonify({'status': 'success', 'data': {'subscription': subscription}})


@billing_bp.route('/webhook', methods=['POST'])
def webhook():
    if not STRIPE_WEBHOOK_SECRET:
        return _billing_error(BillingError('Webhook secret not configured', 503, 'BILLING_NOT_CONFIGURED'))

    payload = request.get_data()
    signature = request.headers.get('Stripe-Signature', '')

    try:
        stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
    except ValueError:
        logger.warning("[WARN] Invalid Stripe webhook payload")
        return jsonify({'status': 'error', 'error': 'Invalid payload', 'error_code': 'INVALID_PAYLOAD'}), 400
    except stripe.SignatureVerificationError:
        logger.warning("[WARN] Invalid Stripe webhook signature")
        return jsonify({'status': 'error', 'error': 'Invalid signature', 'error_code': 'INVALID_SIGNATURE'}), 400

    event = json.loads(payload)
    handled = handle_webhook_event(event)
    return jsonify({'status': 'success', 'data': {'received': True, 'handled': handled}})
