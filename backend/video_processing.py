"""
Video edit job service
Runs edit jobs on a bounded worker pool and persists their progress to video_edits
"""

import os
import json
import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

from database import get_db, row_to_dict, utc_now
from monitoring import track_video_edit
from video_editing import FFmpegProcessor, estimate_processing_time, generate_edit_id
from video_errors import (
    USER_MESSAGES, VideoErrorType, classify_error, get_retry_delay, log_video_error
)

logger = logging.getLogger(__name__)

FFMPEG_WORKERS = int(os.getenv('FFMPEG_WORKERS', '3'))

ACTIVE_STATUSES = ('queued', 'processing')
EDIT_STATUSES = ('queued', 'processing', 'completed', 'failed', 'cancelled')

# Overall progress at each stage; FFmpeg's own percent maps into 10..85
STAGE_PROGRESS = {
    'initialization': 0,
    'download': 5,
    'analysis': 10,
    'upload': 90,
    'finalization': 95,
    'completed': 100,
}
FFMPEG_PROGRESS_BASE = 10
FFMPEG_PROGRESS_SPAN = 0.75

# ==============================================================================
# VIDEO EDIT RECORDS
# ==============================================================================

def create_edit(user_id: str, video_id: str, video_url: str, operations: List[Dict]) -> Dict:
    edit_id = generate_edit_id(video_id)
    estimate = estimate_processing_time(operations)
    now = utc_now()

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO video_edits
                (id, user_id, video_id, video_url, operations, status, progress, estimated_time, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 'queued', 0, ?, ?, ?)
        ''', (edit_id, user_id, video_id, video_url, json.dumps(operations), estimate, now, now))

    logger.info(f"[EDIT] Created {edit_id} with {len(operations)} operations")
    return get_edit(edit_id)


def get_edit(edit_id: str) -> Optional[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM video_edits WHERE id = ?', (edit_id,))
        return row_to_dict(cursor.fetchone(), ('operations',))


def get_edits_for_video(user_id: str, video_id: str) -> List[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT * FROM video_edits WHERE user_id = ? AND video_id = ?
            ORDER BY created_at DESC, id DESC
        ''', (user_id, video_id))
        return [row_to_dict(row, ('operations',)) for row in cursor.fetchall()]


def update_edit(edit_id: str, unless_cancelled: bool = False, **fields) -> bool:
    if not fields:
        return False
    fields['updated_at'] = utc_now()
    assignments = ', '.join(f"{name} = ?" for name in fields)
    query = f'UPDATE video_edits SET {assignments} WHERE id = ?'
    if unless_cancelled:
        query += " AND status != 'cancelled'"

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(query, list(fields.values()) + [edit_id])
        return cursor.rowcount > 0


def edit_status_payload(edit: Dict) -> Dict[str, Any]:
    """Public view of an edit record"""
    payload = {
        'edit_id': edit['id'],
        'video_id': edit['video_id'],
        'status': edit['status'],
        'progress': edit['progress'],
        'stage': edit['stage'],
        'output_url': edit['output_url'],
        'error': edit['error'],
        'error_type': edit['error_type'],
        'retry_count': edit['retry_count'],
        'estimated_time': edit['estimated_time'],
        'processing_time_seconds': edit['processing_time_seconds'],
        'created_at': edit['created_at'],
        'completed_at': edit['completed_at'],
    }
    if edit['error_type']:
        try:
            payload['user_message'] = USER_MESSAGES[VideoErrorType(edit['error_type'])]
        except ValueError:
            pass
    return payload

# ==============================================================================
# PROCESSING SERVICE
# ==============================================================================

class EditCancelled(Exception):
    pass


class VideoProcessingService:
    """Runs edit jobs with staged progress, cancellation and typed retries"""

    def __init__(self, processor: FFmpegProcessor = None, max_workers: int = FFMPEG_WORKERS,
                 sleep: Callable[[float], None] = time.sleep):
        self.processor = processor or FFmpegProcessor()
        self.max_workers = max_workers
        self._sleep = sleep
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    @property
    def executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.max_workers,
                                                    thread_name_prefix='edit-worker')
                logger.info(f"[OK] Edit worker pool initialized ({self.max_workers} workers)")
            return self._executor

    def start_processing(self, edit_id: str) -> Dict[str, Any]:
        edit = get_edit(edit_id)
        if not edit:
            return {'success': False, 'error': 'Edit record not found'}
        if edit['status'] not in ACTIVE_STATUSES:
            return {'success': False, 'error': f"Edit is already {edit['status']}"}

        self.executor.submit(self._run_in_worker, edit_id)
        logger.info(f"[EDIT] Queued {edit_id} for processing")
        return {'success': True}

    def _run_in_worker(self, edit_id: str):
        try:
            self.run_job(edit_id)
        except Exception as e:
            logger.exception(f"[ERROR] Edit worker crashed on {edit_id}: {e}")

    @track_video_edit
    def run_job(self, edit_id: str) -> str:
        """Process an edit to completion, returns its final status"""
        edit = get_edit(edit_id)
        if not edit:
            logger.warning(f"[EDIT] {edit_id} vanished before processing")
            return 'failed'
        if edit['status'] == 'cancelled':
            return 'cancelled'

        started = time.time()
        update_edit(edit_id, status='processing', started_at=utc_now(),
                    progress=STAGE_PROGRESS['initialization'], stage='initialization',
                    error=None, error_type=None)

        attempt = 0
        while True:
            try:
                output_url = self._run_once(edit)
                if not update_edit(edit_id, unless_cancelled=True, status='completed', progress=100,
                                   stage='completed', output_url=output_url, completed_at=utc_now(),
                                   processing_time_seconds=round(time.time() - started, 2)):
                    logger.info(f"[EDIT] {edit_id} cancelled before completion")
                    return 'cancelled'
                logger.info(f"[EDIT] {edit_id} completed in {time.time() - started:.1f}s")
                return 'completed'

            except EditCancelled:
                logger.info(f"[EDIT] {edit_id} cancelled during processing")
                return 'cancelled'

            except Exception as e:
                error = classify_error(e, operation='edit', video_id=edit['video_id'],
                                       user_id=edit['user_id'])
                log_video_error(error)

                if error.retryable and attempt < error.strategy.max_retries and not self._is_cancelled(edit_id):
                    attempt += 1
                    delay = get_retry_delay(error.error_type, attempt)
                    logger.warning(f"[EDIT] {edit_id} failed ({error.error_type.value}), "
                                   f"retry {attempt}/{error.strategy.max_retries} in {delay:.0f}s")
                    update_edit(edit_id, retry_count=attempt, error=error.message,
                                error_type=error.error_type.value)
                    self._sleep(delay)
                    continue

                if not update_edit(edit_id, unless_cancelled=True, status='failed', error=error.message,
                                   error_type=error.error_type.value, completed_at=utc_now(),
                                   processing_time_seconds=round(time.time() - started, 2)):
                    logger.info(f"[EDIT] {edit_id} cancelled after {error.error_type.value}")
                    return 'cancelled'
                logger.error(f"[EDIT] {edit_id} failed: {error.message}")
                return 'failed'

    def _run_once(self, edit: Dict) -> str:
        edit_id = edit['id']
        input_path = None
        output_path = None

        try:
            self._stage(edit_id, 'download')
            input_path = self.processor.download_video(edit['video_url'])

            self._stage(edit_id, 'analysis')
            output_path = self.processor.temp_dir / f"{edit_id}_out.mp4"
            self.processor.process_video(input_path, output_path, edit['operations'],
                                         progress_callback=self._ffmpeg_progress(edit_id))

            self._stage(edit_id, 'upload')
            output_url = self.processor.store_output(output_path, edit['user_id'], edit_id)

            self._stage(edit_id, 'finalization')
            return output_url
        finally:
            self.processor.cleanup([input_path, output_path])

    def _stage(self, edit_id: str, stage: str):
        if self._is_cancelled(edit_id):
            raise EditCancelled(edit_id)
        update_edit(edit_id, stage=stage, progress=STAGE_PROGRESS[stage])

    def _ffmpeg_progress(self, edit_id: str) -> Callable[[float], None]:
        last = {'value': -1}

        def report(percent: float):
            overall = int(FFMPEG_PROGRESS_BASE + percent * FFMPEG_PROGRESS_SPAN)
            if overall > last['value']:
                last['value'] = overall
                update_edit(edit_id, stage='processing', progress=overall)

        return report

    def _is_cancelled(self, edit_id: str) -> bool:
        edit = get_edit(edit_id)
        return edit is not None and edit['status'] == 'cancelled'

    def cancel_processing(self, edit_id: str, user_id: str) -> Dict[str, Any]:
        edit = get_edit(edit_id)
        if not edit or edit['user_id'] != user_id:
            return {'success': False, 'error': 'Edit not found', 'error_code': 'NOT_FOUND'}
        if edit['status'] not in ACTIVE_STATUSES:
            return {'success': False, 'error': f"Cannot cancel an edit that is {edit['status']}",
                    'error_code': 'INVALID_STATE'}

        update_edit(edit_id, status='cancelled', completed_at=utc_now())
        logger.info(f"[EDIT] {edit_id} cancelled by {user_id}")
        return {'success': True}

    def get_processing_status(self, edit_id: str) -> Optional[Dict[str, Any]]:
        edit = get_edit(edit_id)
        return edit_status_payload(edit) if edit else None

    def get_active_jobs(self, user_id: str = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM video_edits WHERE status IN ('queued', 'processing')"
        params = []
        if user_id:
            query += ' AND user_id = ?'
            params.append(user_id)
        query += ' ORDER BY created_at'

        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [edit_status_payload(row_to_dict(row)) for row in cursor.fetchall()]

    def get_processing_stats(self, user_id: str = None) -> Dict[str, int]:
        query = 'SELECT status, COUNT(*) AS c FROM video_edits'
        params = []
        if user_id:
            query += ' WHERE user_id = ?'
            params.append(user_id)
        query += ' GROUP BY status'

        stats = {status: 0 for status in EDIT_STATUSES}
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            for row in cursor.fetchall():
                stats[row['status']] = row['c']
        stats['total'] = sum(stats.values())
        return stats

    def shutdown(self, wait: bool = True):
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=wait)
                self._executor = None


_service: Optional[VideoProcessingService] = None
_service_lock = threading.Lock()


def get_processing_service() -> VideoProcessingService:
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                _service = VideoProcessingService()
    return _service
