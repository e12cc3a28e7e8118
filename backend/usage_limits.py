"""
Usage limits and IP throttling
Monthly per-feature quotas by plan tier, and failed-attempt throttling for auth endpoints
"""

import logging
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Dict, Tuple

from flask import request, g, jsonify

from database import get_db, to_db_time, from_db_time, utc_now
from feature_flags import is_feature_enabled

logger = logging.getLogger(__name__)

UNLIMITED = -1

FEATURES = ('viral_blitz_cycle', 'idea_generator', 'autoposts', 'video_edits')

PLAN_LIMITS = {
    'free': {'viral_blitz_cycle': 1, 'idea_generator': 1, 'autoposts': 1, 'video_edits': 3},
    'lite': {'viral_blitz_cycle': 15, 'idea_generator': 15, 'autoposts': 15, 'video_edits': 30},
    'pro': {feature: UNLIMITED for feature in FEATURES},
    'team': {feature: UNLIMITED for feature in FEATURES},
}

TIER_ORDER = ('free', 'lite', 'pro', 'team')
DEFAULT_TIER = 'free'

# Subscription statuses that grant the paid tier
PAID_STATUSES = ('active', 'trialing')

# Minimum tier for access-gated features; the flag (if any) must also be on
FEATURE_ACCESS = {
    'ecommerce': ('pro', None),
    'analytics': ('pro', 'ADVANCED_ANALYTICS'),
    'team_dashboard': ('team', None),
    'content_ideation': ('free', 'CONTENT_IDEATION'),
    'bulk_operations': ('lite', 'BULK_OPERATIONS'),
}

ANALYTICS_ACCESS = {'team': 'full', 'pro': 'full', 'lite': 'standard', 'free': 'basic'}

THROTTLE_MAX_ATTEMPTS = 5
THROTTLE_WINDOW = timedelta(minutes=15)
THROTTLE_RETENTION = timedelta(hours=24)

# ==============================================================================
# PERIODS & TIERS
# ==============================================================================

def current_period(now: datetime = None) -> str:
    return (now or datetime.utcnow()).strftime('%Y-%m')


def next_reset_date(now: datetime = None) -> str:
    """First day of next month (YYYY-MM-DD)"""
    now = now or datetime.utcnow()
    if now.month == 12:
        return f"{now.year + 1}-01-01"
    return f"{now.year}-{now.month + 1:02d}-01"


def get_user_tier(user_id: str) -> str:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT tier, status FROM user_subscriptions WHERE user_id = ?', (user_id,))
        row = cursor.fetchone()

    if not row or row['tier'] not in PLAN_LIMITS or row['status'] not in PAID_STATUSES:
        return DEFAULT_TIER
    return row['tier']


def tier_at_least(tier: str, minimum: str) -> bool:
    if tier not in TIER_ORDER:
        return False
    return TIER_ORDER.index(tier) >= TIER_ORDER.index(minimum)


def get_feature_limit(tier: str, feature: str) -> int:
    return PLAN_LIMITS.get(tier, PLAN_LIMITS[DEFAULT_TIER]).get(feature, 0)

# ==============================================================================
# MONTHLY USAGE
# ==============================================================================

def get_current_usage(user_id: str, feature: str) -> int:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT usage_count FROM usage_tracking
            WHERE user_id = ? AND feature = ? AND period = ?
        ''', (user_id, feature, current_period()))
        row = cursor.fetchone()
        return row['usage_count'] if row else 0


def can_use_feature(user_id: str, feature: str) -> Dict[str, Any]:
    """Check a user's monthly quota for a metered feature"""
    tier = get_user_tier(user_id)
    limit = get_feature_limit(tier, feature)
    used = get_current_usage(user_id, feature)

    return {
        'allowed': limit == UNLIMITED or used < limit,
        'current_usage': used,
        'limit': limit,
        'reset_date': next_reset_date(),
        'tier': tier
    }


def track_usage(user_id: str, feature: str, amount: int = 1) -> int:
    """Add to this month's counter, returns the new total"""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO usage_tracking (user_id, feature, period, usage_count, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(user_id, feature, period)
            DO UPDATE SET usage_count = usage_count + excluded.usage_count,
                          updated_at = excluded.updated_at
        ''', (user_id, feature, current_period(), amount, utc_now()))

    return get_current_usage(user_id, feature)


def has_feature_access(user_id: str, feature: str) -> bool:
    if feature not in FEATURE_ACCESS:
        return False
    minimum, flag = FEATURE_ACCESS[feature]
    if flag and not is_feature_enabled(flag):
        return False
    return tier_at_least(get_user_tier(user_id), minimum)


def get_analytics_access(tier: str) -> str:
    return ANALYTICS_ACCESS.get(tier, 'basic')


def get_usage_summary(user_id: str) -> Dict[str, Any]:
    tier = get_user_tier(user_id)

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT feature, usage_count FROM usage_tracking
            WHERE user_id = ? AND period = ?
        ''', (user_id, current_period()))
        used_by_feature = {row['feature']: row['usage_count'] for row in cursor.fetchall()}

    features = {}
    for feature in FEATURES:
        limit = get_feature_limit(tier, feature)
        used = used_by_feature.get(feature, 0)
        unlimited = limit == UNLIMITED
        features[feature] = {
            'used': used,
            'limit': limit,
            'percentage': 0 if unlimited or limit == 0 else round(used / limit * 100),
            'unlimited': unlimited
        }

    return {
        'tier': tier,
        'period': current_period(),
        'reset_date': next_reset_date(),
        'analytics_access': get_analytics_access(tier),
        'features': features
    }

# ==============================================================================
# IP THROTTLING
# ==============================================================================

def get_client_ip() -> str:
    forwarded = request.headers.get('X-Forwarded-For')
    if forwarded:
        return forwarded.split(',')[0].strip()
    real_ip = request.headers.get('X-Real-IP')
    if real_ip:
        return real_ip.strip()
    return request.remote_addr or 'unknown'


def is_ip_throttled(ip: str, action: str) -> Tuple[bool, int]:
    """Returns (throttled, retry_after_seconds); every attempt in the window counts"""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT attempts, window_start FROM ip_throttling
            WHERE ip_address = ? AND action = ?
        ''', (ip, action))
        row = cursor.fetchone()

    if not row:
        return False, 0

    window_end = from_db_time(row['window_start']) + THROTTLE_WINDOW
    now = datetime.utcnow()
    if now >= window_end:
        return False, 0

    if row['attempts'] >= THROTTLE_MAX_ATTEMPTS:
        return True, max(1, int((window_end - now).total_seconds()))
    return False, 0


def record_ip_attempt(ip: str, action: str, success: bool = False):
    now = datetime.utcnow()
    window_cutoff = to_db_time(now - THROTTLE_WINDOW)

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO ip_throttling (ip_address, action, attempts, success_count, window_start, last_attempt)
            VALUES (?, ?, 1, ?, ?, ?)
            ON CONFLICT(ip_address, action) DO UPDATE SET
                attempts = CASE WHEN window_start <= ? THEN 1 ELSE attempts + 1 END,
                success_count = CASE WHEN window_start <= ? THEN excluded.success_count
                                     ELSE success_count + excluded.success_count END,
                window_start = CASE WHEN window_start <= ? THEN excluded.window_start ELSE window_start END,
                last_attempt = excluded.last_attempt
        ''', (ip, action, int(success), to_db_time(now), to_db_time(now),
              window_cutoff, window_cutoff, window_cutoff))

    if not success:
        logger.info(f"[THROTTLE] Failed {action} attempt from {ip}")


def cleanup_ip_throttling() -> int:
    cutoff = to_db_time(datetime.utcnow() - THROTTLE_RETENTION)
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('DELETE FROM ip_throttling WHERE last_attempt < ?', (cutoff,))
        deleted = cursor.rowcount

    if deleted:
        logger.info(f"[THROTTLE] Removed {deleted} stale throttling records")
    return deleted

# ==============================================================================
# ROUTE PROTECTION
# ==============================================================================

def usage_limit_response(feature: str, check: Dict[str, Any]):
    return jsonify({
        'status': 'error',
        'error': 'Usage limit exceeded',
        'error_code': 'USAGE_LIMIT_EXCEEDED',
        'message': f'You have reached your monthly limit for {feature}',
        'feature': feature,
        'current_usage': check['current_usage'],
        'limit': check['limit'],
        'reset_date': check['reset_date'],
        'tier': check['tier']
    }), 429


def protect_route(feature: str):
    """Enforce the monthly quota for feature; successful responses are counted.

    Must be applied after require_auth so g.current_user is set. Quotas are
    skipped entirely while the USAGE_QUOTAS flag is off.
    """
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            user = getattr(g, 'current_user', None)
            if not user:
                return jsonify({
                    'status': 'error',
                    'error': 'Authentication required',
                    'error_code': 'AUTH_REQUIRED'
                }), 401

            if not is_feature_enabled('USAGE_QUOTAS'):
                return f(*args, **kwargs)

            check = can_use_feature(user.id, feature)
            if not check['allowed']:
                logger.info(f"[USAGE] {user.id} hit {feature} limit ({check['limit']})")
                return usage_limit_response(feature, check)

            result = f(*args, **kwargs)
            status_code = result[1] if isinstance(result, tuple) and len(result) > 1 else getattr(result, 'status_code', 200)
            if status_code < 400:
                track_usage(user.id, feature)
            return result
        return decorated
    return decorator
