"""Tests for time helpers, settings, audit logs and backups"""

import sqlite3
from datetime import datetime, timedelta, timezone

from database import (
    authenticate_user,
    backup_database,
    check_database_health,
    create_user,
    from_db_time,
    generate_user_id,
    get_all_settings,
    get_audit_log_count,
    get_audit_logs,
    get_db,
    get_setting,
    log_audit,
    log_request,
    parse_iso_datetime,
    to_db_time,
    update_setting,
)


def test_time_helpers():
    moment = datetime(2030, 1, 1, 12, 30, 0)
    assert to_db_time(moment) == '2030-01-01 12:30:00'
    assert from_db_time('2030-01-01 12:30:00') == moment
    assert from_db_time('2030-01-01T12:30:00Z') == moment
    assert to_db_time(datetime(2030, 1, 1, 14, 30, tzinfo=timezone(timedelta(hours=2)))) == '2030-01-01 12:30:00'


def test_parse_iso_datetime():
    assert parse_iso_datetime('2030-01-01T12:30:00Z') == datetime(2030, 1, 1, 12, 30)
    assert parse_iso_datetime('2030-01-01T14:30:00+02:00') == datetime(2030, 1, 1, 12, 30)
    assert parse_iso_datetime('tomorrow') is None
    assert parse_iso_datetime(None) is None


def test_users():
    created = create_user('Shop@Example.com', 'password123', 'Shop')
    assert created['id'] == generate_user_id('shop@example.com')
    assert created['email'] == 'shop@example.com'
    assert create_user('shop@example.com', 'password123', 'Again') is None

    assert authenticate_user('shop@example.com', 'password123')['id'] == created['id']
    assert authenticate_user('shop@example.com', 'nope') is None


def test_settings_seeded():
    settings = get_all_settings()
    assert settings['registration_enabled']['value'] == 'true'
    assert get_setting('missing', 'fallback') == 'fallback'
    assert update_setting('maintenance_mode', 'true', updated_by='admin')
    assert get_setting('maintenance_mode') == 'true'
    assert not update_setting('missing', 'x')


def test_audit_logs():
    log_audit('u1', 'a@example.com', 'user.login', details={'ip': '1.2.3.4'})
    log_audit('u2', 'b@example.com', 'user.login')
    log_audit('u1', 'a@example.com', 'setting.updated', 'setting', 'maintenance_mode')

    assert get_audit_log_count() == 3
    assert get_audit_log_count(user_id='u1') == 2
    logs = get_audit_logs(action='user.login')
    assert [log['user_id'] for log in logs] == ['u2', 'u1']
    assert logs[1]['details'] == {'ip': '1.2.3.4'}
    assert len(get_audit_logs(limit=1, offset=2)) == 1


def test_log_request():
    log_request(None, '/api/v1/health', 'GET', 200, 1.5)
    with get_db() as conn:
        row = conn.execute('SELECT * FROM request_logs').fetchone()
    assert row['endpoint'] == '/api/v1/health'
    assert row['status_code'] == 200


def test_health():
    health = check_database_health()
    assert health['healthy']
    assert health['journal_mode'] == 'wal'


def test_backup(tmp_path, user):
    target = tmp_path / 'backup.db'
    assert backup_database(str(target)) == str(target)

    copy = sqlite3.connect(str(target))
    try:
        emails = [row[0] for row in copy.execute('SELECT email FROM users')]
    finally:
        copy.close()
    assert user.email in emails
