"""
Autoposting: scheduled publishing to Instagram, TikTok and YouTube
Priority queue, exponential-backoff retries and a dead letter queue
"""

import os
import json
import time
import random
import secrets
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import requests

from database import get_db, get_setting, row_to_dict, to_db_time, from_db_time, parse_iso_datetime, utc_now
from feature_flags import is_feature_enabled
from http_client import get_http_session, is_https_url, is_safe_url
from monitoring import capture_exception, capture_message, record_autopost, record_dead_letter
from usage_limits import can_use_feature, track_usage

logger = logging.getLogger(__name__)

PLATFORMS = ('instagram', 'tiktok', 'youtube')
PRIORITIES = ('low', 'normal', 'high', 'urgent')
PRIORITY_RANK = {'low': 0, 'normal': 1, 'high': 2, 'urgent': 3}
STATUSES = ('scheduled', 'processing', 'posted', 'failed', 'cancelled', 'retrying')

MAX_CONTENT_LENGTH = 2200
DEFAULT_MAX_RETRIES = 3
MAX_RETRIES_LIMIT = 10
DEFAULT_RETRY_DELAY_MS = 30000
MIN_RETRY_DELAY_MS = 10000
MAX_RETRY_DELAY_MS = 3600000

# Upper bound on a single backoff and the jitter fraction applied to it
PLATFORM_RETRY_LIMITS = {
    'instagram': {'max_delay_ms': 600000, 'jitter': 0.1},
    'tiktok': {'max_delay_ms': 1800000, 'jitter': 0.2},
    'youtube': {'max_delay_ms': 1800000, 'jitter': 0.1},
}

PROCESS_BATCH_SIZE = int(os.getenv('AUTOPOST_BATCH_SIZE', '50'))
VERIFY_MEDIA = os.getenv('AUTOPOST_VERIFY_MEDIA', 'false').lower() == 'true'
PUBLISH_TIMEOUT = 60

JSON_FIELDS = ('media_urls', 'hashtags', 'metadata')

UPDATABLE_FIELDS = ('content', 'hashtags', 'media_urls', 'post_time', 'priority', 'max_retries', 'retry_delay')


class AutopostError(Exception):
    def __init__(self, message: str, status_code: int = 400, error_code: str = 'AUTOPOST_ERROR',
                 details: List[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or []


class PublishError(Exception):
    """Publishing failure with a classification used to pick the retry strategy"""

    def __init__(self, message: str, error_type: str = 'unknown', retryable: bool = True):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.retryable = retryable

# ==============================================================================
# VALIDATION & FORMATTING
# ==============================================================================

def _int_in_range(data: Dict, key: str, default: int, low: int, high: int, errors: List[str]) -> int:
    value = data.get(key, default)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append(f"{key} must be an integer")
        return default
    if not low <= value <= high:
        errors.append(f"{key} must be between {low} and {high}")
    return value


def validate_schedule(data: Dict[str, Any], now: datetime = None) -> Dict[str, Any]:
    """Validate a schedule request, returns the normalized fields"""
    if not isinstance(data, dict):
        raise AutopostError('Request body must be an object', 400, 'VALIDATION_ERROR')

    now = now or datetime.utcnow()
    errors = []

    platform = data.get('platform')
    if platform not in PLATFORMS:
        errors.append(f"platform must be one of: {', '.join(PLATFORMS)}")

    content = data.get('content')
    if not isinstance(content, str) or not content.strip():
        errors.append('content is required')
    elif len(content) > MAX_CONTENT_LENGTH:
        errors.append(f"content must be at most {MAX_CONTENT_LENGTH} characters")

    media_urls = data.get('media_urls')
    if not isinstance(media_urls, list) or not media_urls:
        errors.append('media_urls must be a non-empty list')
    elif not all(isinstance(u, str) and is_https_url(u) for u in media_urls):
        errors.append('media_urls must be https URLs')

    post_time = parse_iso_datetime(data.get('post_time'))
    if post_time is None:
        errors.append('post_time must be an ISO-8601 datetime')
    elif post_time <= now:
        errors.append('post_time must be in the future')

    hashtags = data.get('hashtags') or []
    if not isinstance(hashtags, list) or not all(isinstance(t, str) for t in hashtags):
        errors.append('hashtags must be a list of strings')
        hashtags = []

    priority = data.get('priority') or 'normal'
    if priority not in PRIORITIES:
        errors.append(f"priority must be one of: {', '.join(PRIORITIES)}")

    max_retries = _int_in_range(data, 'max_retries', DEFAULT_MAX_RETRIES, 0, MAX_RETRIES_LIMIT, errors)
    retry_delay = _int_in_range(data, 'retry_delay', DEFAULT_RETRY_DELAY_MS,
                                MIN_RETRY_DELAY_MS, MAX_RETRY_DELAY_MS, errors)

    if errors:
        raise AutopostError('Invalid schedule request', 400, 'VALIDATION_ERROR', errors)

    return {
        'platform': platform,
        'content': content.strip(),
        'media_urls': media_urls,
        'post_time': post_time,
        'hashtags': [t.strip() for t in hashtags if t.strip()],
        'priority': priority,
        'max_retries': max_retries,
        'retry_delay': retry_delay,
    }


def format_content_for_platform(content: str, hashtags: Iterable[str], platform: str) -> str:
    tags = ' '.join(t if t.startswith('#') else f"#{t}" for t in hashtags or [])
    if not tags:
        return content
    if platform == 'instagram':
        return f"{content}\n\n{tags}"
    if platform == 'tiktok':
        return f"{content} {tags}"
    if platform == 'youtube':
        return f"{content}\n\nTags: {tags}"
    return content

# ==============================================================================
# SOCIAL CREDENTIALS
# ==============================================================================

def save_credentials(user_id: str, platform: str, access_token: str, refresh_token: str = None,
                     expires_at: datetime = None, platform_user_id: str = None,
                     username: str = None) -> Dict[str, Any]:
    if platform not in PLATFORMS:
        raise AutopostError(f"Unsupported platform: {platform}", 400, 'INVALID_PLATFORM')
    if not access_token:
        raise AutopostError('access_token is required', 400, 'VALIDATION_ERROR')

    now = utc_now()
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO social_credentials
                (user_id, platform, access_token, refresh_token, expires_at, platform_user_id, username,
                 created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, platform) DO UPDATE SET
                access_token = excluded.access_token,
                refresh_token = excluded.refresh_token,
                expires_at = excluded.expires_at,
                platform_user_id = excluded.platform_user_id,
                username = excluded.username,
                updated_at = excluded.updated_at
        ''', (user_id, platform, access_token, refresh_token, to_db_time(expires_at),
              platform_user_id, username, now, now))

    logger.info(f"[AUTOPOST] Saved {platform} credentials for {user_id}")
    return _public_credentials(get_credentials(user_id, platform))


def get_credentials(user_id: str, platform: str) -> Optional[Dict[str, Any]]:
    """Full credential row including tokens (internal use only)"""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM social_credentials WHERE user_id = ? AND platform = ?',
                       (user_id, platform))
        return row_to_dict(cursor.fetchone())


def _public_credentials(row: Dict[str, Any]) -> Dict[str, Any]:
    expires_at = from_db_time(row['expires_at'])
    return {
        'platform': row['platform'],
        'platform_user_id': row['platform_user_id'],
        'username': row['username'],
        'expires_at': row['expires_at'],
        'expired': bool(expires_at and expires_at <= datetime.utcnow()),
        'connected_at': row['created_at'],
        'updated_at': row['updated_at'],
    }


def list_credentials(user_id: str) -> List[Dict[str, Any]]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM social_credentials WHERE user_id = ? ORDER BY platform', (user_id,))
        return [_public_credentials(row_to_dict(row)) for row in cursor.fetchall()]


def delete_credentials(user_id: str, platform: str) -> bool:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('DELETE FROM social_credentials WHERE user_id = ? AND platform = ?',
                       (user_id, platform))
        deleted = cursor.rowcount > 0
    if deleted:
        logger.info(f"[AUTOPOST] Removed {platform} credentials for {user_id}")
    return deleted


def _require_valid_credentials(user_id: str, platform: str) -> Dict[str, Any]:
    credentials = get_credentials(user_id, platform)
    if not credentials:
        raise AutopostError(f"No {platform} account connected", 400, 'CREDENTIALS_MISSING')
    expires_at = from_db_time(credentials['expires_at'])
    if expires_at and expires_at <= datetime.utcnow():
        raise AutopostError(f"{platform} credentials have expired, please reconnect", 400,
                            'CREDENTIALS_EXPIRED')
    return credentials

# ==============================================================================
# SCHEDULE
# ==============================================================================

def generate_post_id() -> str:
    return f"post_{secrets.token_hex(8)}"


def _insert_post(user_id: str, fields: Dict[str, Any], metadata: Dict = None) -> str:
    post_id = generate_post_id()
    now = utc_now()
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO autopost_schedule
                (id, user_id, platform, content, formatted_content, media_urls, hashtags, post_time,
                 status, priority, priority_rank, max_retries, retry_delay, metadata, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'scheduled', ?, ?, ?, ?, ?, ?, ?)
        ''', (post_id, user_id, fields['platform'], fields['content'],
              format_content_for_platform(fields['content'], fields['hashtags'], fields['platform']),
              json.dumps(fields['media_urls']), json.dumps(fields['hashtags']),
              to_db_time(fields['post_time']), fields['priority'], PRIORITY_RANK[fields['priority']],
              fields['max_retries'], fields['retry_delay'], json.dumps(metadata or {}), now, now))
    return post_id


def _verify_media(urls: List[str]):
    session = get_http_session()
    for url in urls:
        if not is_safe_url(url):
            raise AutopostError(f"Media host not allowed: {url}", 400, 'MEDIA_NOT_ALLOWED')
        try:
            response = session.head(url, timeout=10, allow_redirects=True)
        except requests.RequestException as e:
            raise AutopostError(f"Media URL unreachable: {url}", 400, 'MEDIA_UNREACHABLE', [str(e)])
        if response.status_code >= 400:
            raise AutopostError(f"Media URL returned {response.status_code}: {url}", 400, 'MEDIA_UNREACHABLE')


def schedule_post(user_id: str, data: Dict[str, Any], verify_media: bool = None) -> Dict[str, Any]:
    fields = validate_schedule(data)
    _require_valid_credentials(user_id, fields['platform'])

    quotas_on = is_feature_enabled('USAGE_QUOTAS')
    if quotas_on:
        check = can_use_feature(user_id, 'autoposts')
        if not check['allowed']:
            raise AutopostError('Monthly autopost limit reached', 429, 'USAGE_LIMIT_EXCEEDED',
                                [f"limit {check['limit']}, resets {check['reset_date']}"])

    if VERIFY_MEDIA if verify_media is None else verify_media:
        _verify_media(fields['media_urls'])

    post_id = _insert_post(user_id, fields)
    if quotas_on:
        track_usage(user_id, 'autoposts')

    logger.info(f"[AUTOPOST] Scheduled {post_id} on {fields['platform']} for {to_db_time(fields['post_time'])}")
    return get_scheduled_post(user_id, post_id)


def _get_post(post_id: str) -> Optional[Dict[str, Any]]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM autopost_schedule WHERE id = ?', (post_id,))
        return row_to_dict(cursor.fetchone(), JSON_FIELDS)


def get_scheduled_post(user_id: str, post_id: str) -> Dict[str, Any]:
    post = _get_post(post_id)
    if not post or post['user_id'] != user_id:
        raise AutopostError('Scheduled post not found', 404, 'NOT_FOUND')
    return post


def list_scheduled_posts(user_id: str, status: str = None, platform: str = None,
                         priority: str = None, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
    query = 'SELECT * FROM autopost_schedule WHERE user_id = ?'
    params: List[Any] = [user_id]
    for column, value in (('status', status), ('platform', platform), ('priority', priority)):
        if value:
            query += f' AND {column} = ?'
            params.append(value)
    query += ' ORDER BY priority_rank DESC, post_time ASC LIMIT ? OFFSET ?'
    params.extend([limit, offset])

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(query, params)
        return [row_to_dict(row, JSON_FIELDS) for row in cursor.fetchall()]


def update_scheduled_post(user_id: str, post_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    post = get_scheduled_post(user_id, post_id)
    if post['status'] != 'scheduled':
        raise AutopostError(f"Cannot update a post that is {post['status']}", 409, 'INVALID_STATE')

    unknown = set(updates) - set(UPDATABLE_FIELDS)
    if unknown:
        raise AutopostError('Invalid schedule update', 400, 'VALIDATION_ERROR',
                            [f"{name} cannot be updated" for name in sorted(unknown)])

    merged = {key: post[key] for key in UPDATABLE_FIELDS}
    merged['platform'] = post['platform']
    merged['post_time'] = from_db_time(post['post_time']).isoformat()
    merged.update(updates)
    fields = validate_schedule(merged)

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            UPDATE autopost_schedule SET
                content = ?, formatted_content = ?, media_urls = ?, hashtags = ?, post_time = ?,
                priority = ?, priority_rank = ?, max_retries = ?, retry_delay = ?, updated_at = ?
            WHERE id = ?
        ''', (fields['content'],
              format_content_for_platform(fields['content'], fields['hashtags'], fields['platform']),
              json.dumps(fields['media_urls']), json.dumps(fields['hashtags']),
              to_db_time(fields['post_time']), fields['priority'], PRIORITY_RANK[fields['priority']],
              fields['max_retries'], fields['retry_delay'], utc_now(), post_id))

    logger.info(f"[AUTOPOST] Updated {post_id}")
    return _get_post(post_id)


def cancel_post(user_id: str, post_id: str) -> Dict[str, Any]:
    post = get_scheduled_post(user_id, post_id)
    if post['status'] in ('posted', 'cancelled'):
        raise AutopostError(f"Cannot cancel a post that is {post['status']}", 409, 'INVALID_STATE')

    now = utc_now()
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            UPDATE autopost_schedule SET status = 'cancelled', cancelled_at = ?, next_retry_at = NULL,
                updated_at = ?
            WHERE id = ?
        ''', (now, now, post_id))

    logger.info(f"[AUTOPOST] Cancelled {post_id}")
    return _get_post(post_id)


def get_queue_stats(user_id: str, now: datetime = None) -> Dict[str, Any]:
    now_db = to_db_time(now or datetime.utcnow())

    with get_db() as conn:
        cursor = conn.cursor()

        def grouped(column: str) -> Dict[str, int]:
            cursor.execute(f'''
                SELECT {column} AS k, COUNT(*) AS c FROM autopost_schedule
                WHERE user_id = ? GROUP BY {column}
            ''', (user_id,))
            return {row['k']: row['c'] for row in cursor.fetchall()}

        by_status = grouped('status')
        by_platform = grouped('platform')
        by_priority = grouped('priority')

        cursor.execute('''
            SELECT COUNT(*) FROM autopost_schedule
            WHERE user_id = ? AND status = 'scheduled' AND post_time <= ?
        ''', (user_id, now_db))
        ready_for_processing = cursor.fetchone()[0]

        cursor.execute('''
            SELECT COUNT(*) FROM autopost_schedule
            WHERE user_id = ? AND status IN ('failed', 'retrying')
              AND next_retry_at IS NOT NULL AND next_retry_at <= ?
        ''', (user_id, now_db))
        ready_for_retry = cursor.fetchone()[0]

    return {
        'total': sum(by_status.values()),
        'by_status': {status: by_status.get(status, 0) for status in STATUSES},
        'by_platform': {platform: by_platform.get(platform, 0) for platform in PLATFORMS},
        'by_priority': {priority: by_priority.get(priority, 0) for priority in PRIORITIES},
        'ready_for_processing': ready_for_processing,
        'ready_for_retry': ready_for_retry,
    }

# ==============================================================================
# PLATFORM PUBLISHERS
# ==============================================================================

def _raise_for_publish(response: requests.Response, platform: str):
    if response.status_code < 400:
        return
    message = f"{platform} API returned {response.status_code}: {response.text[:200]}"
    if response.status_code in (401, 403):
        raise PublishError(message, 'authentication', retryable=False)
    if response.status_code == 429:
        raise PublishError(message, 'rate_limit')
    if response.status_code >= 500:
        raise PublishError(message, 'server_error')
    raise PublishError(message, 'invalid_request', retryable=False)


class PlatformPublisher(ABC):
    max_content_length = MAX_CONTENT_LENGTH

    @property
    @abstractmethod
    def platform(self) -> str: pass

    @abstractmethod
    def publish(self, post: Dict[str, Any], credentials: Dict[str, Any]) -> Dict[str, Any]:
        """Publish a post, returns {platform_post_id, url}"""

    def validate_content(self, post: Dict[str, Any]):
        text = post.get('formatted_content') or post['content']
        if len(text) > self.max_content_length:
            raise PublishError(f"Content exceeds {self.max_content_length} characters for {self.platform}",
                               'invalid_content', retryable=False)
        if not post.get('media_urls'):
            raise PublishError('No media to publish', 'invalid_content', retryable=False)

    def _post(self, url: str, **kwargs) -> Dict[str, Any]:
        try:
            response = get_http_session().post(url, timeout=PUBLISH_TIMEOUT, **kwargs)
        except requests.Timeout as e:
            raise PublishError(f"{self.platform} request timed out: {e}", 'timeout')
        except requests.RequestException as e:
            raise PublishError(f"{self.platform} request failed: {e}", 'network')
        _raise_for_publish(response, self.platform)
        return response.json() if response.content else {}


class InstagramPublisher(PlatformPublisher):
    """Instagram Graph API: create a reel container, then publish it"""
    base_url = 'https://graph.facebook.com/v19.0'

    @property
    def platform(self): return 'instagram'

    def publish(self, post, credentials):
        self.validate_content(post)
        account_id = credentials.get('platform_user_id')
        if not account_id:
            raise PublishError('Instagram account id missing from credentials', 'authentication', retryable=False)

        token = credentials['access_token']
        container = self._post(f"{self.base_url}/{account_id}/media", data={
            'media_type': 'REELS',
            'video_url': post['media_urls'][0],
            'caption': post.get('formatted_content') or post['content'],
            'access_token': token,
        })
        published = self._post(f"{self.base_url}/{account_id}/media_publish", data={
            'creation_id': container.get('id'),
            'access_token': token,
        })
        media_id = published.get('id')
        if not media_id:
            raise PublishError('Instagram did not return a media id', 'server_error')
        return {'platform_post_id': media_id, 'url': f"https://www.instagram.com/reel/{media_id}/"}


class TikTokPublisher(PlatformPublisher):
    """TikTok Content Posting API, pulling the video from its URL"""
    max_content_length = 2200
    init_url = 'https://open.tiktokapis.com/v2/post/publish/video/init/'

    @property
    def platform(self): return 'tiktok'

    def publish(self, post, credentials):
        self.validate_content(post)
        data = self._post(self.init_url, headers={
            'Authorization': f"Bearer {credentials['access_token']}",
            'Content-Type': 'application/json; charset=UTF-8',
        }, json={
            'post_info': {
                'title': post.get('formatted_content') or post['content'],
                'privacy_level': 'PUBLIC_TO_EVERYONE',
            },
            'source_info': {'source': 'PULL_FROM_URL', 'video_url': post['media_urls'][0]},
        })
        publish_id = (data.get('data') or {}).get('publish_id')
        if not publish_id:
            raise PublishError(f"TikTok did not return a publish id: {data.get('error')}", 'server_error')
        username = credentials.get('username')
        url = f"https://www.tiktok.com/@{username}" if username else None
        return {'platform_post_id': publish_id, 'url': url}


class YouTubePublisher(PlatformPublisher):
    """YouTube Data API resumable upload of the first media file"""
    max_content_length = 5000
    upload_url = 'https://www.googleapis.com/upload/youtube/v3/videos'

    @property
    def platform(self): return 'youtube'

    def publish(self, post, credentials):
        self.validate_content(post)
        media_url = post['media_urls'][0]
        if not is_safe_url(media_url):
            raise PublishError(f"Media host not allowed: {media_url}", 'invalid_content', retryable=False)

        session = get_http_session()
        headers = {'Authorization': f"Bearer {credentials['access_token']}"}
        title = post['content'].splitlines()[0][:100]

        try:
            media = session.get(media_url, timeout=PUBLISH_TIMEOUT)
            media.raise_for_status()
            start = session.post(self.upload_url, params={'uploadType': 'resumable', 'part': 'snippet,status'},
                                 headers={**headers, 'Content-Type': 'application/json'},
                                 json={
                                     'snippet': {'title': title,
                                                 'description': post.get('formatted_content') or post['content'],
                                                 'tags': [t.lstrip('#') for t in post.get('hashtags') or []]},
                                     'status': {'privacyStatus': 'public'},
                                 }, timeout=PUBLISH_TIMEOUT)
            _raise_for_publish(start, self.platform)
            upload = session.put(start.headers['Location'], data=media.content,
                                 headers={**headers, 'Content-Type': 'video/*'}, timeout=PUBLISH_TIMEOUT * 5)
            _raise_for_publish(upload, self.platform)
        except requests.Timeout as e:
            raise PublishError(f"youtube upload timed out: {e}", 'timeout')
        except requests.RequestException as e:
            raise PublishError(f"youtube upload failed: {e}", 'network')
        except KeyError:
            raise PublishError('YouTube did not return an upload location', 'server_error')

        video_id = upload.json().get('id')
        return {'platform_post_id': video_id, 'url': f"https://www.youtube.com/shorts/{video_id}"}


class DemoPublisher(PlatformPublisher):
    """Accepts every post without contacting the platform"""

    def __init__(self, platform: str):
        self._platform = platform

    @property
    def platform(self): return self._platform

    def publish(self, post, credentials):
        self.validate_content(post)
        post_id = f"demo_{secrets.token_hex(6)}"
        return {'platform_post_id': post_id, 'url': f"https://demo.clipscommerce.com/{self._platform}/{post_id}"}


PUBLISHERS = {
    'instagram': InstagramPublisher,
    'tiktok': TikTokPublisher,
    'youtube': YouTubePublisher,
}


def get_publisher(platform: str) -> PlatformPublisher:
    if platform not in PLATFORMS:
        raise AutopostError(f"Unsupported platform: {platform}", 400, 'INVALID_PLATFORM')
    if os.getenv('AUTOPOST_PROVIDER', 'live').lower() == 'demo':
        return DemoPublisher(platform)
    return PUBLISHERS[platform]()

# ==============================================================================
# RETRIES & DEAD LETTER QUEUE
# ==============================================================================

def calculate_retry_delay(retry_delay_ms: int, retry_count: int, platform: str) -> int:
    """Backoff in ms: retry_delay * 2^retry_count with jitter, capped per platform"""
    limits = PLATFORM_RETRY_LIMITS.get(platform, {'max_delay_ms': MAX_RETRY_DELAY_MS, 'jitter': 0.1})
    jitter = random.uniform(1 - limits['jitter'], 1 + limits['jitter'])
    delay = retry_delay_ms * (2 ** retry_count) * jitter
    return int(min(delay, limits['max_delay_ms']))


def _record_retry(post_id: str, attempt: int, error_message: str = None, error_type: str = None,
                  strategy: str = None, success: bool = False, processing_time_ms: int = None):
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO autopost_retry_history
                (schedule_id, retry_attempt, error_message, error_type, retry_strategy, attempted_at,
                 success, processing_time)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (post_id, attempt, error_message, error_type, strategy, utc_now(), int(success),
              processing_time_ms))


def move_to_dead_letter(post: Dict[str, Any], reason: str, last_error: str = None) -> str:
    dlq_id = f"dlq_{secrets.token_hex(8)}"
    now = utc_now()
    metadata = {
        'hashtags': post.get('hashtags') or [],
        'priority': post.get('priority'),
        'formatted_content': post.get('formatted_content'),
        'original_metadata': post.get('metadata') or {},
    }

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO autopost_dead_letter_queue
                (id, original_schedule_id, user_id, platform, content, media_urls, original_post_time,
                 failure_reason, last_error, retry_count, moved_to_dlq_at, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (dlq_id, post['id'], post['user_id'], post['platform'], post['content'],
              json.dumps(post.get('media_urls') or []), post['post_time'], reason,
              last_error or post.get('last_error'), post.get('retry_count', 0), now, json.dumps(metadata)))
        cursor.execute('''
            UPDATE autopost_schedule SET status = 'failed', failed_at = ?, next_retry_at = NULL,
                last_error = COALESCE(?, last_error), updated_at = ?
            WHERE id = ?
        ''', (now, last_error, now, post['id']))

    record_dead_letter(post['platform'], reason)
    logger.warning(f"[AUTOPOST] {post['id']} moved to dead letter queue ({reason})")
    capture_message('Autopost moved to dead letter queue', level='warning',
                    extra={'post_id': post['id'], 'platform': post['platform'], 'reason': reason})
    return dlq_id


def schedule_retry(post_id: str, error: str, error_type: str = 'unknown',
                   strategy: str = 'exponential_backoff', now: datetime = None) -> bool:
    """Schedule the next attempt; False when the post went to the DLQ instead"""
    post = _get_post(post_id)
    if not post:
        raise AutopostError('Scheduled post not found', 404, 'NOT_FOUND')

    if strategy == 'no_retry':
        move_to_dead_letter(post, error_type, error)
        return False

    if post['retry_count'] >= post['max_retries']:
        move_to_dead_letter(post, 'max_retries_exceeded', error)
        return False

    now = now or datetime.utcnow()
    delay_ms = calculate_retry_delay(post['retry_delay'], post['retry_count'], post['platform'])
    attempt = post['retry_count'] + 1
    next_retry_at = now + timedelta(milliseconds=delay_ms)

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            UPDATE autopost_schedule SET status = 'failed', retry_count = ?, last_error = ?,
                last_error_at = ?, next_retry_at = ?, failed_at = ?, updated_at = ?
            WHERE id = ?
        ''', (attempt, error, to_db_time(now), to_db_time(next_retry_at), to_db_time(now), utc_now(), post_id))

    _record_retry(post_id, attempt, error, error_type, strategy)
    logger.info(f"[AUTOPOST] {post_id} retry {attempt}/{post['max_retries']} in {delay_ms / 1000:.0f}s")
    return True


def _retry_info(post: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'retry_count': post['retry_count'],
        'max_retries': post['max_retries'],
        'retry_delay': post['retry_delay'],
        'next_retry_at': post['next_retry_at'],
        'status': post['status'],
    }


def manual_retry(user_id: str, post_id: str, error_type: str = 'manual_retry',
                 strategy: str = 'exponential_backoff') -> Dict[str, Any]:
    post = get_scheduled_post(user_id, post_id)
    if post['status'] == 'posted':
        raise AutopostError('Cannot retry a post that has already been posted', 400, 'INVALID_STATE')
    if post['status'] == 'cancelled':
        raise AutopostError('Cannot retry a cancelled post', 400, 'INVALID_STATE')

    if not schedule_retry(post_id, 'Manual retry requested', error_type, strategy):
        raise AutopostError('Post exceeded its maximum retry attempts and was moved to the dead letter queue',
                            400, 'MAX_RETRIES_EXCEEDED')

    updated = _get_post(post_id)
    return {'scheduled_post': updated, 'retry_info': _retry_info(updated)}


def bulk_retry(user_id: str, post_ids: List[str]) -> Dict[str, Any]:
    if not isinstance(post_ids, list) or not post_ids:
        raise AutopostError('At least one post id is required', 400, 'VALIDATION_ERROR')

    results = []
    for post_id in post_ids:
        try:
            info = manual_retry(user_id, post_id, error_type='bulk_retry')
            results.append({'post_id': post_id, 'success': True, 'retry_info': info['retry_info']})
        except AutopostError as e:
            results.append({'post_id': post_id, 'success': False, 'error': e.message,
                            'error_code': e.error_code})

    succeeded = sum(1 for r in results if r['success'])
    return {
        'results': results,
        'summary': {
            'total_requested': len(post_ids),
            'successfully_scheduled': succeeded,
            'failed_to_schedule': len(post_ids) - succeeded,
        }
    }


def get_retry_history(user_id: str, post_id: str) -> List[Dict[str, Any]]:
    get_scheduled_post(user_id, post_id)
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT * FROM autopost_retry_history WHERE schedule_id = ?
            ORDER BY retry_attempt ASC, id ASC
        ''', (post_id,))
        history = [row_to_dict(row) for row in cursor.fetchall()]
    for entry in history:
        entry['success'] = bool(entry['success'])
    return history


def get_retry_stats(user_id: str) -> Dict[str, Any]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT COUNT(*) FROM autopost_schedule
            WHERE user_id = ? AND status IN ('failed', 'retrying')
              AND next_retry_at IS NOT NULL
        ''', (user_id,))
        pending = cursor.fetchone()[0]

        cursor.execute('''
            SELECT COUNT(*) AS attempts, COALESCE(SUM(h.success), 0) AS successes
            FROM autopost_retry_history h JOIN autopost_schedule s ON s.id = h.schedule_id
            WHERE s.user_id = ?
        ''', (user_id,))
        row = cursor.fetchone()

        cursor.execute('''
            SELECT COUNT(*) FROM autopost_dead_letter_queue WHERE user_id = ? AND resolved_at IS NULL
        ''', (user_id,))
        dlq_size = cursor.fetchone()[0]

    attempts, successes = row['attempts'], row['successes']
    return {
        'pending_retries': pending,
        'total_retry_attempts': attempts,
        'successful_retries': successes,
        'retry_success_rate': round(successes / attempts * 100, 1) if attempts else 0.0,
        'dead_letter_queue_size': dlq_size,
    }

# ==============================================================================
# DEAD LETTER QUEUE MANAGEMENT
# ==============================================================================

def _get_dead_letter(user_id: str, dlq_id: str) -> Dict[str, Any]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM autopost_dead_letter_queue WHERE id = ? AND user_id = ?',
                       (dlq_id, user_id))
        item = row_to_dict(cursor.fetchone(), ('media_urls', 'metadata'))
    if not item:
        raise AutopostError('Dead letter item not found', 404, 'NOT_FOUND')
    return item


def list_dead_letter(user_id: str, resolved: bool = None, limit: int = 100,
                     offset: int = 0) -> Dict[str, Any]:
    query = 'SELECT * FROM autopost_dead_letter_queue WHERE user_id = ?'
    if resolved is True:
        query += ' AND resolved_at IS NOT NULL'
    elif resolved is False:
        query += ' AND resolved_at IS NULL'

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(query + ' ORDER BY moved_to_dlq_at DESC, id DESC LIMIT ? OFFSET ?',
                       (user_id, limit, offset))
        items = [row_to_dict(row, ('media_urls', 'metadata')) for row in cursor.fetchall()]

        cursor.execute(query.replace('SELECT *', 'SELECT platform, failure_reason, resolved_at'), (user_id,))
        rows = cursor.fetchall()

    by_platform: Dict[str, int] = {}
    by_reason: Dict[str, int] = {}
    for row in rows:
        by_platform[row['platform']] = by_platform.get(row['platform'], 0) + 1
        by_reason[row['failure_reason']] = by_reason.get(row['failure_reason'], 0) + 1

    return {
        'items': items,
        'stats': {
            'total': len(rows),
            'unresolved': sum(1 for row in rows if row['resolved_at'] is None),
            'by_platform': by_platform,
            'by_failure_reason': by_reason,
        }
    }


def _resolve(dlq_id: str, notes: str):
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            UPDATE autopost_dead_letter_queue SET resolved_at = ?, resolution_notes = ?
            WHERE id = ?
        ''', (utc_now(), notes, dlq_id))


def _require_unresolved(item: Dict[str, Any]):
    if item['resolved_at']:
        raise AutopostError('Dead letter item is already resolved', 409, 'ALREADY_RESOLVED')


def resolve_dead_letter(user_id: str, dlq_id: str, notes: str = '') -> Dict[str, Any]:
    item = _get_dead_letter(user_id, dlq_id)
    _require_unresolved(item)
    _resolve(dlq_id, notes or 'Resolved')
    logger.info(f"[AUTOPOST] Resolved dead letter {dlq_id}")
    return _get_dead_letter(user_id, dlq_id)


def retry_dead_letter(user_id: str, dlq_id: str, notes: str = '') -> Dict[str, Any]:
    """Reschedule a dead-lettered post immediately with high priority"""
    item = _get_dead_letter(user_id, dlq_id)
    _require_unresolved(item)

    metadata = item.get('metadata') or {}
    post_id = _insert_post(user_id, {
        'platform': item['platform'],
        'content': item['content'],
        'media_urls': item.get('media_urls') or [],
        'hashtags': metadata.get('hashtags') or [],
        'post_time': datetime.utcnow(),
        'priority': 'high',
        'max_retries': DEFAULT_MAX_RETRIES,
        'retry_delay': DEFAULT_RETRY_DELAY_MS,
    }, metadata={'dlq_retry': True, 'original_dlq_id': dlq_id})

    _resolve(dlq_id, f"{notes or 'Retried'} - Retried as post {post_id}")
    logger.info(f"[AUTOPOST] Dead letter {dlq_id} retried as {post_id}")
    return {'dead_letter': _get_dead_letter(user_id, dlq_id), 'scheduled_post': _get_post(post_id)}


def delete_dead_letter(user_id: str, dlq_id: str, notes: str = '') -> Dict[str, Any]:
    """Soft delete: the item is resolved with a DELETED note"""
    item = _get_dead_letter(user_id, dlq_id)
    _require_unresolved(item)
    _resolve(dlq_id, f"DELETED: {notes or 'No reason given'}")
    logger.info(f"[AUTOPOST] Deleted dead letter {dlq_id}")
    return _get_dead_letter(user_id, dlq_id)

# ==============================================================================
# PROCESSING
# ==============================================================================

def _due_posts(now_db: str, limit: int) -> List[Dict[str, Any]]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT * FROM autopost_schedule
            WHERE (status = 'scheduled' AND post_time <= ?)
               OR (status IN ('failed', 'retrying')
                   AND next_retry_at IS NOT NULL AND next_retry_at <= ?)
            ORDER BY priority_rank DESC, post_time ASC
            LIMIT ?
        ''', (now_db, now_db, limit))
        return [row_to_dict(row, JSON_FIELDS) for row in cursor.fetchall()]


def _claim(post: Dict[str, Any]) -> bool:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            UPDATE autopost_schedule SET status = 'processing', updated_at = ?
            WHERE id = ? AND status = ?
        ''', (utc_now(), post['id'], post['status']))
        return cursor.rowcount > 0


def publish_post(post: Dict[str, Any]) -> Dict[str, Any]:
    """Publish one claimed post and record the outcome"""
    is_retry = post['retry_count'] > 0
    started = time.time()

    try:
        credentials = get_credentials(post['user_id'], post['platform'])
        if not credentials:
            raise PublishError(f"No {post['platform']} account connected", 'authentication', retryable=False)
        result = get_publisher(post['platform']).publish(post, credentials)
    except PublishError as e:
        record_autopost(post['platform'], 'failed')
        logger.warning(f"[AUTOPOST] {post['id']} failed on {post['platform']}: {e.message}")
        strategy = 'exponential_backoff' if e.retryable else 'no_retry'
        retried = schedule_retry(post['id'], e.message, e.error_type, strategy)
        return {'post_id': post['id'], 'status': 'failed' if retried else 'dead_lettered',
                'error': e.message}
    except Exception as e:
        record_autopost(post['platform'], 'failed')
        logger.error(f"[AUTOPOST] {post['id']} crashed on {post['platform']}: {e}", exc_info=True)
        capture_exception(e, {'post_id': post['id'], 'platform': post['platform']})
        retried = schedule_retry(post['id'], str(e), 'unknown', 'exponential_backoff')
        return {'post_id': post['id'], 'status': 'failed' if retried else 'dead_lettered',
                'error': str(e)}

    elapsed_ms = int((time.time() - started) * 1000)
    now = utc_now()
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            UPDATE autopost_schedule SET status = 'posted', posted_at = ?, platform_post_id = ?,
                platform_url = ?, next_retry_at = NULL, updated_at = ?
            WHERE id = ?
        ''', (now, result.get('platform_post_id'), result.get('url'), now, post['id']))

    if is_retry:
        _record_retry(post['id'], post['retry_count'], success=True, strategy='exponential_backoff',
                      processing_time_ms=elapsed_ms)

    record_autopost(post['platform'], 'posted')
    logger.info(f"[AUTOPOST] {post['id']} posted to {post['platform']} ({result.get('platform_post_id')})")
    return {'post_id': post['id'], 'status': 'posted', 'platform_post_id': result.get('platform_post_id'),
            'url': result.get('url')}


def process_due_posts(now: datetime = None, limit: int = PROCESS_BATCH_SIZE) -> Dict[str, Any]:
    """Publish every due post and due retry, highest priority first"""
    if get_setting('autoposting_enabled', 'true').lower() == 'false':
        logger.info("[AUTOPOST] Autoposting disabled in settings, skipping run")
        return {'processed': 0, 'posted': 0, 'failed': 0, 'dead_lettered': 0, 'skipped': True, 'results': []}

    now_db = to_db_time(now or datetime.utcnow())
    results = []
    for post in _due_posts(now_db, limit):
        if not _claim(post):
            continue
        results.append(publish_post(post))

    summary = {
        'processed': len(results),
        'posted': sum(1 for r in results if r['status'] == 'posted'),
        'failed': sum(1 for r in results if r['status'] == 'failed'),
        'dead_lettered': sum(1 for r in results if r['status'] == 'dead_lettered'),
        'skipped': False,
        'results': results,
    }
    if results:
        logger.info(f"[AUTOPOST] Run complete: {summary['posted']} posted, {summary['failed']} failed, "
                    f"{summary['dead_lettered']} dead-lettered")
    return summary
