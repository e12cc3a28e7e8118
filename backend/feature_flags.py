"""
Feature flags for ClipsCommerce
Flags are read from FEATURE_<FLAG> environment variables ("true" or "1" enables)
"""

import os
import logging
from functools import wraps
from typing import Dict

from flask import jsonify

logger = logging.getLogger(__name__)

# Defaults when FEATURE_<FLAG> is unset
DEFAULT_FLAGS = {
    'USAGE_QUOTAS': True,
    'ADVANCED_ANALYTICS': True,
    'CONTENT_IDEATION': True,
    'BULK_OPERATIONS': True,
    'ERROR_ANALYTICS': True,
    'REALTIME_UPDATES': False,
    'INSTAGRAM_AUTH': False,
    'YOUTUBE_AUTH': False,
}


def is_feature_enabled(flag: str) -> bool:
    """Check a flag; unknown flags are disabled unless set in the environment"""
    flag = flag.upper()
    value = os.getenv(f'FEATURE_{flag}')
    if value is None or value == '':
        return DEFAULT_FLAGS.get(flag, False)
    return value.lower() in ('true', '1')


def get_all_flags() -> Dict[str, bool]:
    return {flag: is_feature_enabled(flag) for flag in DEFAULT_FLAGS}


def feature_error_response(flag: str) -> Dict:
    return {
        'status': 'error',
        'error': 'Feature not enabled',
        'error_code': 'FEATURE_DISABLED',
        'message': f'The {flag} feature is currently disabled. Please check back later.',
        'flag': flag
    }


def require_feature(flag: str):
    """Decorator that returns 501 while a flag is off"""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            if not is_feature_enabled(flag):
                logger.info(f"[FLAGS] Blocked request to disabled feature {flag}")
                return jsonify(feature_error_response(flag)), 501
            return f(*args, **kwargs)
        return decorated
    return decorator
