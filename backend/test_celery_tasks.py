"""Tests for the Celery task bodies, run in-process"""

from datetime import datetime, timedelta

import video_processing
from celery_tasks import (
    celery_app,
    cleanup_expired_roles_task,
    cleanup_ip_throttling_task,
    process_video_edit_task,
    publish_due_posts_task,
)
from database import get_db, to_db_time, update_setting
from rbac import assign_role
from usage_limits import record_ip_attempt


def test_beat_schedule():
    schedule = celery_app.conf.beat_schedule
    assert schedule['publish-due-posts']['task'] == 'celery_tasks.publish_due_posts_task'
    assert set(schedule) == {'publish-due-posts', 'cleanup-ip-throttling', 'cleanup-expired-roles'}


def test_process_video_edit_task(monkeypatch):
    ran = []

    class Service:
        def run_job(self, edit_id):
            ran.append(edit_id)
            return 'completed'

    monkeypatch.setattr(video_processing, 'get_processing_service', lambda: Service())
    assert process_video_edit_task('edit_1') == {'edit_id': 'edit_1', 'status': 'completed'}
    assert ran == ['edit_1']


def test_publish_due_posts_task_drops_results():
    summary = publish_due_posts_task()
    assert summary['processed'] == 0
    assert 'results' not in summary

    update_setting('autoposting_enabled', 'false')
    assert publish_due_posts_task()['skipped'] is True


def test_cleanup_ip_throttling_task():
    record_ip_attempt('10.1.0.1', 'login', success=False)
    stale = to_db_time(datetime.utcnow() - timedelta(days=2))
    with get_db() as conn:
        conn.execute('UPDATE ip_throttling SET last_attempt = ?, window_start = ?', (stale, stale))

    assert cleanup_ip_throttling_task() == {'deleted': 1}


def test_cleanup_expired_roles_task(user):
    assign_role(user.id, 'member', expires_at=datetime.utcnow() + timedelta(hours=1))
    with get_db() as conn:
        conn.execute('UPDATE user_roles SET expires_at = ? WHERE user_id = ?',
                     (to_db_time(datetime.utcnow() - timedelta(minutes=1)), user.id))

    assert cleanup_expired_roles_task() == {'deactivated': 1}
