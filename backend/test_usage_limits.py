"""Tests for plan quotas, feature access and IP throttling"""

from datetime import datetime, timedelta

from database import get_db, to_db_time
from usage_limits import (
    can_use_feature,
    cleanup_ip_throttling,
    get_usage_summary,
    get_user_tier,
    has_feature_access,
    is_ip_throttled,
    next_reset_date,
    record_ip_attempt,
    tier_at_least,
    track_usage,
)


def test_users_default_to_free_tier(user):
    assert get_user_tier(user.id) == 'free'


def test_inactive_subscription_falls_back_to_free(user, set_tier):
    for status in ('canceled', 'past_due', 'incomplete', 'paused'):
        set_tier(user.id, 'pro', status=status)
        assert get_user_tier(user.id) == 'free'
    set_tier(user.id, 'pro', status='trialing')
    assert get_user_tier(user.id) == 'pro'
    set_tier(user.id, 'pro')
    assert get_user_tier(user.id) == 'pro'


def test_tier_ordering():
    assert tier_at_least('team', 'pro')
    assert tier_at_least('lite', 'lite')
    assert not tier_at_least('free', 'lite')
    assert not tier_at_least('enterprise', 'free')


def test_free_quota_is_enforced(user):
    assert can_use_feature(user.id, 'video_edits')['allowed']
    for _ in range(3):
        track_usage(user.id, 'video_edits')

    check = can_use_feature(user.id, 'video_edits')
    assert not check['allowed']
    assert check['current_usage'] == 3
    assert check['limit'] == 3
    assert check['tier'] == 'free'


def test_unlimited_tier_is_never_blocked(user, set_tier):
    set_tier(user.id, 'pro')
    track_usage(user.id, 'autoposts', amount=1000)
    check = can_use_feature(user.id, 'autoposts')
    assert check['allowed']
    assert check['limit'] == -1


def test_usage_summary(user):
    track_usage(user.id, 'idea_generator')
    summary = get_usage_summary(user.id)

    assert summary['tier'] == 'free'
    assert summary['analytics_access'] == 'basic'
    assert summary['features']['idea_generator'] == {
        'used': 1, 'limit': 1, 'percentage': 100, 'unlimited': False
    }
    assert summary['features']['video_edits']['used'] == 0


def test_feature_access_by_tier(user, set_tier, monkeypatch):
    assert not has_feature_access(user.id, 'ecommerce')
    assert has_feature_access(user.id, 'content_ideation')

    set_tier(user.id, 'pro')
    assert has_feature_access(user.id, 'ecommerce')
    assert has_feature_access(user.id, 'analytics')
    assert not has_feature_access(user.id, 'team_dashboard')

    monkeypatch.setenv('FEATURE_ADVANCED_ANALYTICS', 'false')
    assert not has_feature_access(user.id, 'analytics')


def test_next_reset_date_rolls_over_year():
    assert next_reset_date(datetime(2025, 12, 15)) == '2026-01-01'
    assert next_reset_date(datetime(2025, 3, 31)) == '2025-04-01'


def test_attempts_throttle_ip():
    for _ in range(4):
        record_ip_attempt('10.0.0.1', 'login', success=False)
    assert is_ip_throttled('10.0.0.1', 'login') == (False, 0)

    record_ip_attempt('10.0.0.1', 'login', success=False)
    throttled, retry_after = is_ip_throttled('10.0.0.1', 'login')
    assert throttled
    assert 0 < retry_after <= 15 * 60

    assert not is_ip_throttled('10.0.0.1', 'register')[0]
    assert not is_ip_throttled('10.0.0.2', 'login')[0]


def test_successful_attempts_count_toward_throttle():
    for _ in range(4):
        record_ip_attempt('10.0.0.3', 'login', success=True)
    assert not is_ip_throttled('10.0.0.3', 'login')[0]

    record_ip_attempt('10.0.0.3', 'login', success=True)
    assert is_ip_throttled('10.0.0.3', 'login')[0]


def test_cleanup_removes_stale_throttling_records():
    record_ip_attempt('10.0.0.4', 'login', success=False)
    record_ip_attempt('10.0.0.5', 'login', success=False)
    stale = to_db_time(datetime.utcnow() - timedelta(days=2))
    with get_db() as conn:
        conn.execute('UPDATE ip_throttling SET last_attempt = ?, window_start = ? WHERE ip_address = ?',
                     (stale, stale, '10.0.0.4'))

    assert cleanup_ip_throttling() == 1
    assert not is_ip_throttled('10.0.0.4', 'login')[0]
