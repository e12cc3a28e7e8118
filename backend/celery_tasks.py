"""
Celery Tasks for background work

Video edit jobs, the autopost publisher and periodic cleanups run here when
a worker is deployed. Without a worker, main.py runs the publisher on an
in-process scheduler thread instead.

    celery -A celery_tasks worker --loglevel=info --concurrency=4
    celery -A celery_tasks beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab
from celery.signals import task_prerun, task_postrun, task_failure
import os
import logging
from typing import Dict, Any

logger = logging.getLogger(__name__)

# ============================================================
# CELERY CONFIGURATION
# ============================================================

BROKER_URL = os.getenv('CELERY_BROKER_URL', os.getenv('REDIS_URL', 'redis://localhost:6379/0'))
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', 'redis://localhost:6379/1')

celery_app = Celery(
    'clipscommerce_tasks',
    broker=BROKER_URL,
    backend=CELERY_RESULT_BACKEND
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # FFmpeg jobs are CPU heavy
    worker_concurrency=int(os.getenv('CELERY_CONCURRENCY', '4')),
    worker_prefetch_multiplier=1,

    task_acks_late=True,  # Acknowledge after task completes
    task_reject_on_worker_lost=True,  # Re-queue if worker dies
    task_time_limit=900,  # 15 minutes max per task
    task_soft_time_limit=840,

    result_expires=86400,

    task_default_retry_delay=30,
    task_max_retries=3,

    worker_send_task_events=True,
    task_send_sent_event=True,
)

celery_app.conf.beat_schedule = {
    'publish-due-posts': {
        'task': 'celery_tasks.publish_due_posts_task',
        'schedule': 60.0,
    },
    'cleanup-ip-throttling': {
        'task': 'celery_tasks.cleanup_ip_throttling_task',
        'schedule': crontab(minute=0),
    },
    'cleanup-expired-roles': {
        'task': 'celery_tasks.cleanup_expired_roles_task',
        'schedule': crontab(minute=30),
    },
}


# ============================================================
# TASK SIGNALS (for monitoring)
# ============================================================

@task_prerun.connect
def task_prerun_handler(task_id, task, args, kwargs, **extras):
    logger.info(f"Task starting: {task.name} [{task_id}]")


@task_postrun.connect
def task_postrun_handler(task_id, task, args, kwargs, retval, state, **extras):
    logger.info(f"Task completed: {task.name} [{task_id}] - State: {state}")


@task_failure.connect
def task_failure_handler(task_id, exception, args, kwargs, traceback, einfo, **extras):
    logger.error(f"Task failed: {task_id} - {exception}")
    from monitoring import capture_exception
    capture_exception(exception, {'task_id': task_id})


# ============================================================
# TASKS
# ============================================================

@celery_app.task(bind=True, name='celery_tasks.process_video_edit_task')
def process_video_edit_task(self, edit_id: str) -> Dict[str, Any]:
    """Run one queued video edit to completion; retries are handled by the service"""
    from video_processing import get_processing_service

    logger.info(f"[TASK] Processing edit {edit_id}")
    status = get_processing_service().run_job(edit_id)
    return {'edit_id': edit_id, 'status': status}


@celery_app.task(bind=True, name='celery_tasks.publish_due_posts_task', max_retries=3, default_retry_delay=30)
def publish_due_posts_task(self) -> Dict[str, Any]:
    from autoposting import process_due_posts

    try:
        summary = process_due_posts()
    except Exception as exc:
        logger.error(f"[TASK] Autopost run failed: {exc}")
        raise self.retry(exc=exc)

    summary.pop('results', None)
    return summary


@celery_app.task(name='celery_tasks.cleanup_ip_throttling_task')
def cleanup_ip_throttling_task() -> Dict[str, int]:
    from usage_limits import cleanup_ip_throttling
    return {'deleted': cleanup_ip_throttling()}


@celery_app.task(name='celery_tasks.cleanup_expired_roles_task')
def cleanup_expired_roles_task() -> Dict[str, int]:
    from rbac import cleanup_expired_roles
    return {'deactivated': cleanup_expired_roles()}


if __name__ == '__main__':
    celery_app.start()
