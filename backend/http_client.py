"""
Outbound HTTP for ClipsCommerce
Thread-local pooled sessions with retries, plus SSRF checks for remote media
"""

import os
import logging
import threading
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30

# Hosts we fetch user media from (leading dot = any subdomain)
ALLOWED_MEDIA_HOSTS = os.getenv(
    'ALLOWED_MEDIA_HOSTS',
    '.supabase.co,.cloudfront.net,storage.googleapis.com,.amazonaws.com,.cdninstagram.com'
).split(',')

_thread_local = threading.local()


def get_http_session() -> requests.Session:
    """Get thread-local HTTP session with connection pooling and retries"""
    if not hasattr(_thread_local, "session"):
        session = requests.Session()

        retry_strategy = Retry(
            total=3,
            connect=2,
            read=3,
            backoff_factor=0.5,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["HEAD", "GET", "POST", "PUT", "DELETE"]
        )

        adapter = HTTPAdapter(
            max_retries=retry_strategy,
            pool_connections=100,
            pool_maxsize=100,
            pool_block=False
        )

        session.mount("https://", adapter)
        session.mount("http://", adapter)

        session.request = lambda *args, **kwargs: requests.Session.request(
            session,
            *args,
            timeout=kwargs.pop('timeout', DEFAULT_TIMEOUT),
            **kwargs
        )

        _thread_local.session = session

    return _thread_local.session


def is_https_url(url) -> bool:
    if not isinstance(url, str) or not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme == 'https' and bool(parsed.netloc)


def is_safe_url(url: str, allowed_hosts=None) -> bool:
    """HTTPS only and host on the allow list"""
    if not is_https_url(url):
        logger.warning("[SSRF] Rejected non-HTTPS URL")
        return False

    host = urlparse(url).hostname or ''
    host = host.lower()
    for allowed in (allowed_hosts if allowed_hosts is not None else ALLOWED_MEDIA_HOSTS):
        allowed = allowed.strip().lower()
        if not allowed:
            continue
        if allowed.startswith('.'):
            if host.endswith(allowed) or host == allowed[1:]:
                return True
        elif host == allowed:
            return True

    logger.warning(f"[SSRF] Rejected URL with disallowed host: {host}")
    return False
