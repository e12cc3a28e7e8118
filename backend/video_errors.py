"""
Video error taxonomy, recovery strategies and error analytics
"""

import json
import time
import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict

import requests

from database import get_db, row_to_dict, to_db_time, utc_now
from monitoring import capture_exception, record_error

logger = logging.getLogger(__name__)

BACKOFF_MULTIPLIER = 2


class VideoErrorType(Enum):
    UPLOAD_FAILED = "UPLOAD_FAILED"
    PROCESSING_FAILED = "PROCESSING_FAILED"
    ANALYSIS_FAILED = "ANALYSIS_FAILED"
    EDIT_FAILED = "EDIT_FAILED"
    INVALID_FORMAT = "INVALID_FORMAT"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    NETWORK_ERROR = "NETWORK_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    CORRUPTED_FILE = "CORRUPTED_FILE"


RETRYABLE_TYPES = {
    VideoErrorType.UPLOAD_FAILED,
    VideoErrorType.PROCESSING_FAILED,
    VideoErrorType.ANALYSIS_FAILED,
    VideoErrorType.EDIT_FAILED,
    VideoErrorType.NETWORK_ERROR,
    VideoErrorType.SERVER_ERROR,
    VideoErrorType.TIMEOUT_ERROR,
}

CRITICAL_TYPES = {
    VideoErrorType.SERVER_ERROR,
    VideoErrorType.CORRUPTED_FILE,
    VideoErrorType.QUOTA_EXCEEDED,
}

USER_MESSAGES = {
    VideoErrorType.UPLOAD_FAILED: 'Failed to upload your video. Please try again.',
    VideoErrorType.PROCESSING_FAILED: 'Video processing failed. Please try again.',
    VideoErrorType.ANALYSIS_FAILED: 'Video analysis failed. Please try again.',
    VideoErrorType.EDIT_FAILED: 'Video editing failed. Please try again.',
    VideoErrorType.INVALID_FORMAT: 'Invalid video format. Please upload MP4, MOV, or AVI files.',
    VideoErrorType.FILE_TOO_LARGE: 'File is too large. Please upload a smaller video.',
    VideoErrorType.INSUFFICIENT_PERMISSIONS: "You don't have permission to perform this action.",
    VideoErrorType.NETWORK_ERROR: 'Network connection error. Please check your internet.',
    VideoErrorType.SERVER_ERROR: 'Server error. Please try again later.',
    VideoErrorType.TIMEOUT_ERROR: 'The operation timed out. Please try again.',
    VideoErrorType.QUOTA_EXCEEDED: 'You have exceeded your usage limit. Please upgrade your plan.',
    VideoErrorType.CORRUPTED_FILE: 'The video file appears to be corrupted.',
}


@dataclass(frozen=True)
class RecoveryStrategy:
    should_retry: bool
    max_retries: int
    retry_delay_ms: int
    user_action: str


RECOVERY_STRATEGIES = {
    VideoErrorType.UPLOAD_FAILED: RecoveryStrategy(True, 3, 5000, 'Check your internet connection and try uploading again'),
    VideoErrorType.PROCESSING_FAILED: RecoveryStrategy(True, 2, 10000, 'Wait a few minutes and try processing again'),
    VideoErrorType.ANALYSIS_FAILED: RecoveryStrategy(True, 2, 5000, 'Try analyzing the video again'),
    VideoErrorType.EDIT_FAILED: RecoveryStrategy(True, 2, 3000, 'Review your edit settings and try again'),
    VideoErrorType.INVALID_FORMAT: RecoveryStrategy(False, 0, 0, 'Please upload a video in MP4, MOV, or AVI format'),
    VideoErrorType.FILE_TOO_LARGE: RecoveryStrategy(False, 0, 0, 'Please reduce the file size or upload a smaller video'),
    VideoErrorType.INSUFFICIENT_PERMISSIONS: RecoveryStrategy(False, 0, 0, 'Please log in again or contact support'),
    VideoErrorType.NETWORK_ERROR: RecoveryStrategy(True, 5, 2000, 'Check your internet connection'),
    VideoErrorType.SERVER_ERROR: RecoveryStrategy(True, 3, 10000, 'Please try again in a few minutes'),
    VideoErrorType.TIMEOUT_ERROR: RecoveryStrategy(True, 2, 15000, 'The operation timed out. Please try again'),
    VideoErrorType.QUOTA_EXCEEDED: RecoveryStrategy(False, 0, 0, 'You have reached your usage limit. Please upgrade your plan'),
    VideoErrorType.CORRUPTED_FILE: RecoveryStrategy(False, 0, 0, 'The video file appears to be corrupted. Please try a different file'),
}

TIME_RANGE_HOURS = {'1h': 1, '24h': 24, '7d': 24 * 7, '30d': 24 * 30}

OPERATION_ERROR_TYPES = {
    'upload': VideoErrorType.UPLOAD_FAILED,
    'download': VideoErrorType.NETWORK_ERROR,
    'analysis': VideoErrorType.ANALYSIS_FAILED,
    'edit': VideoErrorType.EDIT_FAILED,
    'processing': VideoErrorType.PROCESSING_FAILED,
}


class VideoError(Exception):
    """Typed video pipeline failure"""

    def __init__(self, error_type: VideoErrorType, message: str, details: Dict[str, Any] = None,
                 video_id: str = None, user_id: str = None, operation: str = None):
        super().__init__(message)
        self.error_type = error_type
        self.message = message
        self.details = details or {}
        self.video_id = video_id
        self.user_id = user_id
        self.operation = operation

    @property
    def retryable(self) -> bool:
        return self.error_type in RETRYABLE_TYPES

    @property
    def critical(self) -> bool:
        return self.error_type in CRITICAL_TYPES

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.error_type]

    @property
    def strategy(self) -> RecoveryStrategy:
        return get_recovery_strategy(self.error_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.error_type.value,
            'message': self.message,
            'user_message': self.user_message,
            'retryable': self.retryable,
            'critical': self.critical,
            'user_action': self.strategy.user_action,
            'operation': self.operation,
            'details': self.details
        }


def get_recovery_strategy(error_type: VideoErrorType) -> RecoveryStrategy:
    return RECOVERY_STRATEGIES.get(
        error_type,
        RecoveryStrategy(False, 0, 0, 'An unexpected error occurred. Please try again')
    )


def get_retry_delay(error_type: VideoErrorType, attempt: int) -> float:
    """Delay in seconds before retry number `attempt` (1-based)"""
    strategy = get_recovery_strategy(error_type)
    return strategy.retry_delay_ms * (BACKOFF_MULTIPLIER ** max(0, attempt - 1)) / 1000.0


def classify_error(exc: Exception, operation: str = 'processing', **context) -> VideoError:
    """Map an arbitrary exception onto a VideoError"""
    if isinstance(exc, VideoError):
        exc.operation = exc.operation or operation
        for key in ('video_id', 'user_id'):
            if getattr(exc, key) is None and context.get(key) is not None:
                setattr(exc, key, context[key])
        return exc

    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()

    if isinstance(exc, (requests.Timeout, subprocess.TimeoutExpired, TimeoutError)):
        error_type = VideoErrorType.TIMEOUT_ERROR
    elif isinstance(exc, requests.ConnectionError):
        error_type = VideoErrorType.NETWORK_ERROR
    elif isinstance(exc, requests.HTTPError) and exc.response is not None:
        status = exc.response.status_code
        if status in (401, 403):
            error_type = VideoErrorType.INSUFFICIENT_PERMISSIONS
        elif status == 413:
            error_type = VideoErrorType.FILE_TOO_LARGE
        elif status >= 500:
            error_type = VideoErrorType.SERVER_ERROR
        else:
            error_type = OPERATION_ERROR_TYPES.get(operation, VideoErrorType.PROCESSING_FAILED)
    elif 'too large' in lowered:
        error_type = VideoErrorType.FILE_TOO_LARGE
    elif 'invalid data' in lowered or 'moov atom' in lowered:
        error_type = VideoErrorType.CORRUPTED_FILE
    elif 'unsupported' in lowered or 'invalid format' in lowered:
        error_type = VideoErrorType.INVALID_FORMAT
    elif 'permission' in lowered:
        error_type = VideoErrorType.INSUFFICIENT_PERMISSIONS
    elif 'quota' in lowered:
        error_type = VideoErrorType.QUOTA_EXCEEDED
    else:
        error_type = OPERATION_ERROR_TYPES.get(operation, VideoErrorType.PROCESSING_FAILED)

    return VideoError(error_type, message, details={'exception': exc.__class__.__name__},
                      operation=operation, **context)


def retry_with_backoff(fn: Callable[[], Any], error_type: VideoErrorType,
                       sleep: Callable[[float], None] = time.sleep,
                       on_retry: Callable[[int, Exception], None] = None) -> Any:
    """Call fn, retrying per the recovery strategy of error_type"""
    strategy = get_recovery_strategy(error_type)
    attempt = 0

    while True:
        try:
            return fn()
        except Exception as e:
            attempt += 1
            classified = classify_error(e)
            if not strategy.should_retry or not classified.retryable or attempt > strategy.max_retries:
                raise
            delay = get_retry_delay(error_type, attempt)
            logger.warning(f"[RETRY] {error_type.value} attempt {attempt}/{strategy.max_retries} "
                           f"in {delay:.1f}s: {e}")
            if on_retry:
                on_retry(attempt, e)
            sleep(delay)

# ==============================================================================
# PERSISTENCE & ANALYTICS
# ==============================================================================

def log_video_error(error: VideoError) -> int:
    """Persist an error; critical ones are also sent to Sentry"""
    if error.critical:
        logger.error(f"[VIDEO ERROR] {error.error_type.value}: {error.message}")
        capture_exception(error, extra={
            'error_type': error.error_type.value,
            'video_id': error.video_id,
            'operation': error.operation
        })
    else:
        logger.warning(f"[VIDEO ERROR] {error.error_type.value}: {error.message}")

    record_error(error.error_type.value)

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO video_error_logs
                (error_type, message, details, video_id, user_id, operation, retryable, critical, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            error.error_type.value, error.message, json.dumps(error.details, default=str),
            error.video_id, error.user_id, error.operation,
            int(error.retryable), int(error.critical), utc_now()
        ))
        return cursor.lastrowid


def get_error_statistics(time_range: str = '24h', user_id: str = None) -> Dict[str, Any]:
    """Aggregate logged errors over 1h/24h/7d/30d"""
    if time_range not in TIME_RANGE_HOURS:
        raise ValueError(f"Invalid time range: {time_range}")

    cutoff = to_db_time(datetime.utcnow() - timedelta(hours=TIME_RANGE_HOURS[time_range]))
    query = 'SELECT * FROM video_error_logs WHERE created_at >= ?'
    params = [cutoff]
    if user_id:
        query += ' AND user_id = ?'
        params.append(user_id)
    query += ' ORDER BY id DESC'

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(query, params)
        rows = [row_to_dict(row, ('details',)) for row in cursor.fetchall()]

    by_type: Dict[str, int] = {}
    by_operation: Dict[str, int] = {}
    for row in rows:
        by_type[row['error_type']] = by_type.get(row['error_type'], 0) + 1
        op = row['operation'] or 'unknown'
        by_operation[op] = by_operation.get(op, 0) + 1

    return {
        'time_range': time_range,
        'total': len(rows),
        'by_type': by_type,
        'by_operation': by_operation,
        'retryable_count': sum(1 for r in rows if r['retryable']),
        'critical_count': sum(1 for r in rows if r['critical']),
        'recent_errors': rows[:10]
    }
