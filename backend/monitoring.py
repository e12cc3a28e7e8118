"""
Monitoring Module for ClipsCommerce API
Prometheus metrics + Sentry error tracking
"""

import os
import time
import logging
import subprocess
from functools import wraps
from typing import Dict

from flask import Flask, Blueprint, Response, request, g, jsonify
from prometheus_client import Counter, Histogram, Gauge, Info, generate_latest, CONTENT_TYPE_LATEST
import sentry_sdk
from sentry_sdk.integrations.flask import FlaskIntegration
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.redis import RedisIntegration

logger = logging.getLogger(__name__)

APP_VERSION = os.getenv('APP_VERSION', '1.0.0')

# ==============================================================================
# PROMETHEUS METRICS
# ==============================================================================

REQUEST_COUNT = Counter(
    'clipscommerce_http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code']
)

REQUEST_LATENCY = Histogram(
    'clipscommerce_http_request_duration_seconds',
    'HTTP request latency',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

VIDEO_EDIT_COUNT = Counter(
    'clipscommerce_video_edits_total',
    'Video edit jobs by final status',
    ['status']
)

VIDEO_EDIT_DURATION = Histogram(
    'clipscommerce_video_edit_duration_seconds',
    'Video edit processing duration',
    buckets=[5, 15, 30, 60, 120, 300, 600, 1200]
)

ACTIVE_EDIT_JOBS = Gauge(
    'clipscommerce_active_edit_jobs',
    'Video edit jobs currently running'
)

AI_GENERATION_COUNT = Counter(
    'clipscommerce_ai_generations_total',
    'AI content generations',
    ['provider', 'status']
)

AI_GENERATION_COST = Counter(
    'clipscommerce_ai_cost_usd_total',
    'Estimated AI spend in USD',
    ['provider']
)

AUTOPOST_PUBLISH_COUNT = Counter(
    'clipscommerce_autopost_publish_total',
    'Autopost publish attempts',
    ['platform', 'status']
)

DEAD_LETTER_COUNT = Counter(
    'clipscommerce_dead_letter_total',
    'Posts moved to the dead letter queue',
    ['platform', 'reason']
)

CACHE_OPERATIONS = Counter(
    'clipscommerce_cache_operations_total',
    'Cache operations',
    ['operation', 'result']
)

AUTH_REQUESTS = Counter(
    'clipscommerce_auth_requests_total',
    'Authentication requests',
    ['action', 'status']
)

ERROR_COUNT = Counter(
    'clipscommerce_errors_total',
    'Total errors',
    ['error_type', 'endpoint']
)

SERVICE_STATUS = Gauge(
    'clipscommerce_service_status',
    'Service availability status (1=up, 0=down)',
    ['service']
)

APP_INFO = Info('clipscommerce_app', 'Application information')

# ==============================================================================
# SENTRY ERROR TRACKING
# ==============================================================================

SENSITIVE_HEADERS = ['Authorization', 'X-API-Key', 'Cookie', 'Stripe-Signature', 'X-Cron-Secret']
SENSITIVE_KEYS = ['password', 'api_key', 'token', 'secret', 'access_token', 'refresh_token']


def init_sentry(app: Flask) -> bool:
    """Initialize Sentry error tracking"""
    sentry_dsn = os.getenv('SENTRY_DSN', '')

    if not sentry_dsn:
        logger.info("[INFO] Sentry DSN not configured")
        return False

    try:
        sentry_sdk.init(
            dsn=sentry_dsn,
            integrations=[
                FlaskIntegration(),
                CeleryIntegration(),
                RedisIntegration(),
            ],
            traces_sample_rate=float(os.getenv('SENTRY_TRACES_SAMPLE_RATE', 0.1)),
            environment=os.getenv('FLASK_ENV', 'production'),
            release=APP_VERSION,
            server_name=os.getenv('SERVER_NAME', 'clipscommerce-api'),
            send_default_pii=False,
            before_send=_sentry_before_send,
        )

        logger.info("[OK] Sentry initialized")
        return True

    except Exception as e:
        logger.error(f"[ERROR] Failed to initialize Sentry: {e}")
        return False


def _sentry_before_send(event, hint):
    """Filter sensitive data before sending to Sentry"""
    if 'request' in event and 'headers' in event['request']:
        headers = event['request']['headers']
        for header in SENSITIVE_HEADERS:
            if header in headers:
                headers[header] = '[FILTERED]'

    if 'breadcrumbs' in event:
        for breadcrumb in event['breadcrumbs'].get('values', []):
            data = breadcrumb.get('data')
            if data:
                for key in SENSITIVE_KEYS:
                    if key in data:
                        data[key] = '[FILTERED]'

    return event


def capture_exception(exception: Exception, extra: dict = None):
    """Capture exception to Sentry (no-op without a DSN)"""
    with sentry_sdk.push_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)


def capture_message(message: str, level: str = 'info', extra: dict = None):
    with sentry_sdk.push_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_message(message, level=level)

# ==============================================================================
# FLASK MIDDLEWARE
# ==============================================================================

def init_monitoring(app: Flask):
    """Initialize Sentry and request metrics for a Flask app"""
    sentry_enabled = init_sentry(app)

    APP_INFO.info({
        'version': APP_VERSION,
        'environment': os.getenv('FLASK_ENV', 'production'),
        'sentry_enabled': str(sentry_enabled)
    })

    @app.after_request
    def record_request_metrics(response):
        if hasattr(g, 'start_time'):
            duration = time.time() - g.start_time
            endpoint = request.endpoint or 'unknown'

            REQUEST_COUNT.labels(
                method=request.method,
                endpoint=endpoint,
                status_code=response.status_code
            ).inc()

            REQUEST_LATENCY.labels(
                method=request.method,
                endpoint=endpoint
            ).observe(duration)

        return response

    logger.info("[OK] Monitoring middleware initialized")


def record_error(error_type: str, endpoint: str = None):
    ERROR_COUNT.labels(error_type=error_type, endpoint=endpoint or 'background').inc()


def record_cache_operation(operation: str, result: str):
    CACHE_OPERATIONS.labels(operation=operation, result=result).inc()


def record_autopost(platform: str, status: str):
    AUTOPOST_PUBLISH_COUNT.labels(platform=platform, status=status).inc()


def record_dead_letter(platform: str, reason: str):
    DEAD_LETTER_COUNT.labels(platform=platform, reason=reason).inc()

# ==============================================================================
# METRIC DECORATORS
# ==============================================================================

def track_video_edit(f):
    """Track running edit jobs and their outcome; the wrapped call returns the final status"""
    @wraps(f)
    def decorated(*args, **kwargs):
        ACTIVE_EDIT_JOBS.inc()
        start_time = time.time()
        status = 'failed'

        try:
            result = f(*args, **kwargs)
            if isinstance(result, str):
                status = result
            return result
        finally:
            ACTIVE_EDIT_JOBS.dec()
            VIDEO_EDIT_COUNT.labels(status=status).inc()
            VIDEO_EDIT_DURATION.observe(time.time() - start_time)

    return decorated


def track_ai_generation(f):
    """Count AI generations by provider; the wrapped call returns a result dict"""
    @wraps(f)
    def decorated(*args, **kwargs):
        try:
            result = f(*args, **kwargs)
        except Exception:
            AI_GENERATION_COUNT.labels(provider='unknown', status='failed').inc()
            raise

        provider = result.get('provider', 'unknown')
        AI_GENERATION_COUNT.labels(
            provider=provider,
            status='success' if result.get('success') else 'failed'
        ).inc()
        if result.get('cost'):
            AI_GENERATION_COST.labels(provider=provider).inc(result['cost'])
        return result

    return decorated


def track_auth(action: str):
    """Decorator to track auth metrics"""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            status = 'success'

            try:
                result = f(*args, **kwargs)
                if isinstance(result, tuple) and len(result) > 1 and result[1] >= 400:
                    status = 'failed'
                return result
            except Exception:
                status = 'failed'
                raise
            finally:
                AUTH_REQUESTS.labels(action=action, status=status).inc()

        return decorated
    return decorator

# ==============================================================================
# SERVICE HEALTH TRACKING
# ==============================================================================

def update_service_status(service: str, is_healthy: bool):
    SERVICE_STATUS.labels(service=service).set(1 if is_healthy else 0)


def check_all_services() -> Dict[str, bool]:
    """Check and update status of all services"""
    services = {
        'database': _check_database(),
        'redis': _check_redis(),
        'ffmpeg': _check_ffmpeg(),
        'stripe': bool(os.getenv('STRIPE_SECRET_KEY')),
        'gemini': bool(os.getenv('GEMINI_API_KEY')),
        'openai': bool(os.getenv('OPENAI_API_KEY')),
    }

    for service, is_healthy in services.items():
        update_service_status(service, is_healthy)

    return services


def _check_database() -> bool:
    from database import check_database_health
    return check_database_health().get('healthy', False)


def _check_redis() -> bool:
    from cache import get_cache
    return get_cache().health_check().get('backend') == 'redis'


def _check_ffmpeg() -> bool:
    from video_editing import get_ffmpeg_path
    try:
        result = subprocess.run([get_ffmpeg_path(), '-version'], capture_output=True, timeout=5)
        return result.returncode == 0
    except (OSError, RuntimeError, subprocess.SubprocessError):
        return False

# ==============================================================================
# METRICS ENDPOINT BLUEPRINT
# ==============================================================================

metrics_bp = Blueprint('metrics', __name__)


@metrics_bp.route('/metrics')
def metrics():
    """Prometheus metrics endpoint"""
    check_all_services()
    return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)


@metrics_bp.route('/readiness')
def readiness():
    """Readiness probe: the database must answer"""
    services = check_all_services()

    if services['database']:
        return jsonify({'ready': True, 'services': services})
    return jsonify({
        'ready': False,
        'reason': 'Database unavailable',
        'services': services
    }), 503


@metrics_bp.route('/liveness')
def liveness():
    """Liveness probe"""
    return jsonify({
        'alive': True,
        'timestamp': time.time()
    })
