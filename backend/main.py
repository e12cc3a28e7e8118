"""
CLIPSCOMMERCE - Backend API v1
Flask server for the social-commerce dashboard

Services:
1. Video editing jobs (FFmpeg) with staged progress and typed retries
2. A/B experiments with significance testing
3. AI content ideation (Gemini -> OpenAI -> templates)
4. Scheduled autoposting with retries and a dead letter queue
5. Teams and role-based permissions
6. Plan quotas, IP throttling and Stripe billing
"""

from flask import Flask, request, jsonify, send_file, g, current_app
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from functools import wraps
import os
import hmac
import time
import uuid
import threading
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from datetime import datetime
from dotenv import load_dotenv
from typing import Optional, Dict, Any
from dataclasses import dataclass
from enum import Enum

# Load environment variables before the service modules read them
_script_dir = Path(__file__).resolve().parent
_root_dir = _script_dir.parent
_env_path = _root_dir / '.env'
if _env_path.exists():
    load_dotenv(_env_path)
else:
    # Fallback to current working directory
    load_dotenv()

from auth import auth_bp, require_auth, require_admin, optional_auth
from admin_routes import admin_bp
from subscriptions import billing_bp, BillingError
from monitoring import metrics_bp, init_monitoring, capture_exception, record_error, check_all_services
from cache import IdempotencyStore, get_cache
from database import check_database_health, get_setting, log_request, parse_iso_datetime
from feature_flags import get_all_flags, require_feature
from http_client import is_https_url
from usage_limits import protect_route, get_usage_summary, has_feature_access, cleanup_ip_throttling
from video_editing import OUTPUT_DIR, EditValidationError, validate_operations
from video_errors import VideoError, VideoErrorType, TIME_RANGE_HOURS, get_error_statistics
from video_processing import create_edit, get_edit, get_edits_for_video, edit_status_payload, get_processing_service
from experiments import (
    ExperimentError, list_experiments, create_experiment, get_experiment, delete_experiment,
    transition_experiment, record_result, calculate_results, assign_variant
)
from rbac import (
    RBACError, ROLE_HIERARCHY, require_permission, create_team, get_team, get_team_members,
    get_user_teams, add_team_member, remove_team_member, assign_role, can_assign_role,
    can_manage_user, get_user_permissions, get_user_roles, get_user_highest_role, cleanup_expired_roles
)
from ai_content import (
    GenerationRequest, MAX_PROMPT_LENGTH, sanitize_input, get_ai_service, get_content_suggestions
)
import autoposting
from autoposting import AutopostError

# ========================================================================
# FLASK APPLICATION
# ========================================================================

# === CONSTANTS ===
API_VERSION = "v1"
MAX_CONTENT_LENGTH = 16 * 1024 * 1024  # 16MB, media is passed by URL
ALLOWED_ORIGINS = os.getenv('CORS_ORIGINS', 'http://localhost:3000,http://127.0.0.1:3000').split(',')
REDIS_URL = os.getenv('REDIS_URL', 'memory://')

AUTH_RATE_LIMIT = os.getenv('AUTH_RATE_LIMIT', '5 per minute')
AI_RATE_LIMIT = os.getenv('AI_RATE_LIMIT', '5 per minute')

# 'thread' runs edits on the in-process pool, 'celery' hands them to a worker
EDIT_BACKEND = os.getenv('EDIT_BACKEND', 'thread')

SCHEDULER_INTERVAL = int(os.getenv('SCHEDULER_INTERVAL', '60'))
CLEANUP_INTERVAL = 3600

MAX_BULK_RETRY = 100
DLQ_ACTIONS = ('resolve', 'retry', 'delete')

# API paths that stay open while maintenance_mode is on
MAINTENANCE_EXEMPT = ('/api/v1/auth', '/api/v1/admin', '/api/v1/health', '/api/v1/billing/webhook')

VIDEO_ERROR_STATUS = {
    VideoErrorType.INVALID_FORMAT: 400,
    VideoErrorType.FILE_TOO_LARGE: 413,
    VideoErrorType.INSUFFICIENT_PERMISSIONS: 403,
    VideoErrorType.QUOTA_EXCEEDED: 429,
    VideoErrorType.TIMEOUT_ERROR: 504,
    VideoErrorType.NETWORK_ERROR: 502,
}

# === ENUMS ===
class ResponseStatus(Enum):
    SUCCESS = "success"
    ERROR = "error"
    PARTIAL = "partial"

# === DATA MODELS ===
@dataclass
class ApiResponse:
    """Standardized API response"""
    status: ResponseStatus
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"status": self.status.value}
        if self.data is not None:
            result["data"] = self.data
        if self.error:
            result["error"] = self.error
        if self.error_code:
            result["error_code"] = self.error_code
        if self.request_id:
            result["request_id"] = self.request_id
        return result


class ValidationError(Exception):
    """Malformed request body"""

    def __init__(self, message: str, error_code: str = 'VALIDATION_ERROR', status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code


def success_response(data: Any = None, status_code: int = 200):
    return jsonify(ApiResponse(
        status=ResponseStatus.SUCCESS,
        data=data,
        request_id=getattr(g, 'request_id', None)
    ).to_dict()), status_code


def error_response(message: str, error_code: str, status_code: int = 400, **extra):
    body = ApiResponse(
        status=ResponseStatus.ERROR,
        error=message,
        error_code=error_code,
        request_id=getattr(g, 'request_id', None)
    ).to_dict()
    body.update(extra)
    return jsonify(body), status_code

# === LOGGING SETUP ===
def setup_logging():
    """Configure production logging with rotation and request IDs"""
    log_dir = Path(os.getenv('LOG_DIR', 'logs'))
    log_dir.mkdir(parents=True, exist_ok=True)

    handlers = [logging.StreamHandler()]

    file_handler = RotatingFileHandler(
        log_dir / 'backend.log',
        maxBytes=10_000_000,  # 10MB
        backupCount=10
    )
    handlers.append(file_handler)

    log_format = '%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] - %(message)s'

    logging.basicConfig(
        level=logging.INFO,
        format=log_format,
        handlers=handlers
    )

    class RequestIdFilter(logging.Filter):
        def filter(self, record):
            try:
                from flask import has_request_context
                if has_request_context():
                    record.request_id = getattr(g, 'request_id', 'no-request-id')
                else:
                    record.request_id = 'initialization'
            except RuntimeError:
                record.request_id = 'no-context'
            return True

    for handler in logging.getLogger().handlers:
        handler.addFilter(RequestIdFilter())

    return logging.getLogger(__name__)

# Initialize logging
logger = setup_logging()

# === FLASK APP FACTORY ===
def create_app(config=None):
    """Application factory pattern for better testing and configuration"""
    app = Flask(__name__)

    app.config['JSON_SORT_KEYS'] = False
    app.config['MAX_CONTENT_LENGTH'] = MAX_CONTENT_LENGTH
    app.config['RATELIMIT_HEADERS_ENABLED'] = True
    app.config['start_time'] = time.time()
    app.config['PROPAGATE_EXCEPTIONS'] = False

    if config:
        app.config.update(config)

    CORS(app,
         origins=ALLOWED_ORIGINS,
         methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
         allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-API-Key", "Idempotency-Key"],
         expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After", "Idempotency-Replayed"],
         max_age=3600)

    limiter = Limiter(
        app=app,
        key_func=get_remote_address,
        default_limits=["200 per minute"],
        storage_uri=REDIS_URL,
        headers_enabled=True
    )

    app.config['idem_store'] = IdempotencyStore(get_cache())
    logger.info(f"[OK] Idempotency store initialized ({get_cache().backend})")

    register_middleware(app)
    register_error_handlers(app)
    init_monitoring(app)

    limiter.limit(AUTH_RATE_LIMIT)(auth_bp)
    limiter.exempt(metrics_bp)

    app.register_blueprint(auth_bp)
    logger.info("[OK] Auth blueprint registered (/api/v1/auth)")
    app.register_blueprint(admin_bp)
    logger.info("[OK] Admin blueprint registered (/api/v1/admin)")
    app.register_blueprint(billing_bp)
    logger.info("[OK] Billing blueprint registered (/api/v1/billing)")
    app.register_blueprint(metrics_bp)

    register_routes(app, limiter)

    logger.info("="*70)
    logger.info("CLIPSCOMMERCE - Backend API")
    logger.info(f"   Version: {API_VERSION}")
    logger.info(f"   Environment: {os.getenv('FLASK_ENV', 'production')}")
    logger.info(f"   Cache: {get_cache().backend}")
    logger.info(f"   Edit backend: {EDIT_BACKEND}")
    logger.info("="*70)

    return app

# === MIDDLEWARE ===
def register_middleware(app):
    """Register application middleware"""

    @app.before_request
    def before_request():
        """Attach request ID and start timer"""
        g.request_id = request.headers.get('X-Request-ID', uuid.uuid4().hex)
        g.start_time = time.time()

        logger.info(f"--> {request.method} {request.path} from {get_remote_address()}")

        if request.path.startswith('/api/') and not request.path.startswith(MAINTENANCE_EXEMPT):
            if get_setting('maintenance_mode', 'false').lower() == 'true':
                return error_response('Service is under maintenance, please try again shortly',
                                      'MAINTENANCE_MODE', 503)

    @app.after_request
    def after_request(response):
        """Add security headers and log response"""
        response.headers['X-Request-ID'] = g.get('request_id', '')

        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-XSS-Protection'] = '1; mode=block'
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
        response.headers['Content-Security-Policy'] = "default-src 'none'; frame-ancestors 'none'"

        if os.getenv('FLASK_ENV') == 'production':
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'

        if hasattr(g, 'start_time'):
            duration = time.time() - g.start_time
            logger.info(f"<-- {response.status_code} in {duration:.3f}s")

            if request.path.startswith('/api/'):
                user = g.get('current_user')
                try:
                    log_request(user.id if user else None, request.path, request.method,
                                response.status_code, duration * 1000)
                except Exception as e:
                    logger.error(f"[ERROR] Failed to log request: {e}")

        return response

# === DECORATORS ===
def track_performance(f):
    """Performance tracking decorator with request context"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        start_time = time.time()
        try:
            result = f(*args, **kwargs)
            duration = time.time() - start_time
            logger.info(f"[PERF] {f.__name__} completed in {duration:.2f}s")
            return result
        except Exception as e:
            duration = time.time() - start_time
            logger.error(f"[ERROR] {f.__name__} failed after {duration:.2f}s: {str(e)}")
            raise
    return decorated_function


def validate_request(*required_fields, **field_types):
    """Request validation decorator; the parsed body is left in g.validated_data"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not request.is_json:
                raise ValidationError("Content-Type must be application/json", 'INVALID_CONTENT_TYPE')

            data = request.get_json(silent=True)
            if not isinstance(data, dict):
                raise ValidationError("Request body must be a JSON object", 'INVALID_REQUEST')

            for field in required_fields:
                if field not in data or data[field] is None:
                    raise ValidationError(f"Missing required field: {field}", 'MISSING_FIELD')

            for field, expected_type in field_types.items():
                if field in data and data[field] is not None:
                    value = data[field]
                    # Accept int when float is expected (JavaScript sends integers)
                    if expected_type == float and isinstance(value, (int, float)) and not isinstance(value, bool):
                        data[field] = float(value)
                    elif not isinstance(value, expected_type) or \
                            (expected_type == int and isinstance(value, bool)):
                        raise ValidationError(
                            f"Invalid type for field {field}: expected {expected_type.__name__}",
                            'INVALID_TYPE'
                        )

            g.validated_data = data
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def idempotent(ttl=600):
    """Replay the first successful response for a repeated Idempotency-Key (per user)"""
    def decorator(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            idem_key = request.headers.get('Idempotency-Key')
            store = current_app.config.get('idem_store')
            if not idem_key or not store:
                return f(*args, **kwargs)

            user = g.get('current_user')
            scoped_key = f"{user.id if user else 'anon'}:{request.path}:{idem_key}"

            cached = store.get(scoped_key)
            if cached:
                logger.info(f"[Idempotent] Replaying cached response for key: {idem_key[:16]}...")
                resp = current_app.response_class(
                    response=cached['body'],
                    status=cached['status'],
                    mimetype='application/json'
                )
                resp.headers['Idempotency-Replayed'] = '1'
                for k, v in cached.get('headers', {}).items():
                    resp.headers[k] = v
                return resp

            result = f(*args, **kwargs)

            if isinstance(result, tuple):
                flask_resp, status_code = result[0], result[1] if len(result) > 1 else 200
            else:
                flask_resp = result
                status_code = getattr(result, 'status_code', 200)

            # Only cache successful responses
            if status_code in (200, 201, 202):
                body = flask_resp.get_data(as_text=True)
                hdrs = {k: v for k, v in flask_resp.headers.items()
                        if k.lower().startswith('x-') and k.lower() != 'x-request-id'}
                store.set(scoped_key, status_code, hdrs, body, ttl)
                logger.info(f"[Idempotent] Cached response for key: {idem_key[:16]}...")

            return result
        return wrapper
    return decorator

# === PATH VALIDATION ===
def safe_path_join(base: Path, *parts: str) -> Path:
    """Safely join paths preventing directory traversal"""
    base_resolved = base.resolve()
    candidate = (base / Path(*parts)).resolve()

    if base_resolved == candidate or base_resolved in candidate.parents:
        return candidate
    raise ValueError("Path traversal detected")


def json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", 'INVALID_REQUEST')
    return data


def pagination(default_limit: int = 50, max_limit: int = 200):
    limit = min(max(request.args.get('limit', default_limit, type=int), 1), max_limit)
    offset = max(request.args.get('offset', 0, type=int), 0)
    return limit, offset

# === ERROR HANDLERS ===
def register_error_handlers(app):
    """Register global and domain error handlers"""

    @app.errorhandler(400)
    def bad_request(error):
        return error_response("Bad request", "BAD_REQUEST", 400)

    @app.errorhandler(404)
    def not_found(error):
        return error_response("Resource not found", "NOT_FOUND", 404)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return error_response("Method not allowed", "METHOD_NOT_ALLOWED", 405)

    @app.errorhandler(413)
    def payload_too_large(error):
        return error_response("Request body too large", "PAYLOAD_TOO_LARGE", 413)

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        return error_response("Rate limit exceeded", "RATE_LIMIT_EXCEEDED", 429)

    @app.errorhandler(500)
    def internal_error(error):
        original = getattr(error, 'original_exception', None) or error
        logger.error(f"Internal server error: {original}")
        record_error(type(original).__name__, request.endpoint)
        capture_exception(original, {'path': request.path, 'request_id': g.get('request_id')})
        return error_response("Internal server error", "INTERNAL_ERROR", 500)

    @app.errorhandler(503)
    def service_unavailable(error):
        return error_response("Service temporarily unavailable", "SERVICE_UNAVAILABLE", 503)

    @app.errorhandler(ValidationError)
    def validation_error(error):
        return error_response(error.message, error.error_code, error.status_code)

    @app.errorhandler(EditValidationError)
    def edit_validation_error(error):
        return error_response(error.message, 'INVALID_OPERATION', 400,
                              operation_index=error.operation_index)

    @app.errorhandler(VideoError)
    def video_error(error):
        record_error(error.error_type.value, request.endpoint)
        return error_response(error.user_message, error.error_type.value,
                              VIDEO_ERROR_STATUS.get(error.error_type, 500), retryable=error.retryable)

    @app.errorhandler(ExperimentError)
    def experiment_error(error):
        return error_response(error.message, error.error_code, error.status_code)

    @app.errorhandler(AutopostError)
    def autopost_error(error):
        extra = {'details': error.details} if error.details else {}
        return error_response(error.message, error.error_code, error.status_code, **extra)

    @app.errorhandler(BillingError)
    def billing_error(error):
        return error_response(error.message, error.error_code, error.status_code)

    @app.errorhandler(RBACError)
    def rbac_error(error):
        message = str(error)
        status_code = 404 if message.endswith('not found') else 400
        return error_response(message, 'RBAC_ERROR', status_code)

# === ROUTES ===
def register_routes(app, limiter):
    """Register all application routes"""
    register_system_routes(app, limiter)
    register_video_routes(app)
    register_experiment_routes(app)
    register_team_routes(app)
    register_ai_routes(app, limiter)
    register_autopost_routes(app)


def register_system_routes(app, limiter):

    @app.route('/', methods=['GET'])
    def index():
        return success_response({'service': 'clipscommerce-api', 'version': API_VERSION})

    @app.route(f'/api/{API_VERSION}/health', methods=['GET'])
    @app.route('/health', methods=['GET'])
    @limiter.exempt
    def health_check():
        """Service, database and cache status"""
        db_health = check_database_health()
        cache_health = get_cache().health_check()
        services = check_all_services()

        all_healthy = db_health.get('healthy', False) and cache_health.get('healthy', False)

        return success_response({
            'status': 'healthy' if all_healthy else 'degraded',
            'timestamp': datetime.utcnow().isoformat(),
            'version': API_VERSION,
            'environment': os.getenv('FLASK_ENV', 'production'),
            'services': services,
            'database': db_health,
            'cache': cache_health,
            'uptime': time.time() - app.config.get('start_time', time.time())
        })

    @app.route(f'/api/{API_VERSION}/features', methods=['GET'])
    @optional_auth
    def feature_status():
        """Feature flags, plus plan access when signed in"""
        data = {'flags': get_all_flags()}
        if g.current_user:
            data['access'] = {
                feature: has_feature_access(g.current_user.id, feature)
                for feature in ('ecommerce', 'analytics', 'team_dashboard')
            }
        return success_response(data)

    @app.route(f'/api/{API_VERSION}/usage', methods=['GET'])
    @require_auth
    def usage_summary():
        return success_response(get_usage_summary(g.current_user.id))

    @app.route('/outputs/<path:filename>', methods=['GET'])
    @limiter.limit("100 per minute")
    def serve_output_file(filename):
        """Serve finished edits from OUTPUT_DIR"""
        try:
            output_path = safe_path_join(OUTPUT_DIR, filename)
        except ValueError:
            return error_response("Invalid path", "INVALID_PATH", 400)

        if not output_path.is_file():
            logger.warning(f"Output file not found: {output_path}")
            return error_response("File not found", "FILE_NOT_FOUND", 404)

        response = send_file(output_path, mimetype='video/mp4', as_attachment=False, conditional=True)
        response.headers['Accept-Ranges'] = 'bytes'
        return response

# === VIDEO EDITING ===
def dispatch_edit(edit_id: str):
    """Hand an edit to the configured backend"""
    if EDIT_BACKEND == 'celery':
        from celery_tasks import process_video_edit_task
        process_video_edit_task.delay(edit_id)
        logger.info(f"[EDIT] Sent {edit_id} to Celery")
        return
    result = get_processing_service().start_processing(edit_id)
    if not result['success']:
        logger.warning(f"[EDIT] Could not start {edit_id}: {result['error']}")


def register_video_routes(app):

    @app.route(f'/api/{API_VERSION}/videos/edit', methods=['POST'])
    @require_auth
    @idempotent()
    @validate_request('video_id', 'video_url', 'operations', video_id=str, video_url=str, operations=list)
    @protect_route('video_edits')
    @track_performance
    def create_video_edit():
        """Queue an edit job, returns 202 with the edit id"""
        if get_setting('video_editing_enabled', 'true').lower() == 'false':
            return error_response("Video editing is currently disabled", "FEATURE_DISABLED", 503)

        data = g.validated_data
        if not is_https_url(data['video_url']):
            raise ValidationError("video_url must be an https URL", 'INVALID_URL')

        max_operations = int(get_setting('max_edit_operations', '20'))
        operations = validate_operations(data['operations'], max_operations=max_operations)

        edit = create_edit(g.current_user.id, data['video_id'].strip(), data['video_url'], operations)
        dispatch_edit(edit['id'])

        return success_response({
            'edit_id': edit['id'],
            'status': edit['status'],
            'estimated_time': edit['estimated_time']
        }, 202)

    @app.route(f'/api/{API_VERSION}/videos/edit', methods=['GET'])
    @require_auth
    def get_video_edit():
        edit_id = request.args.get('edit_id')
        video_id = request.args.get('video_id')

        if edit_id:
            edit = get_edit(edit_id)
            if not edit or edit['user_id'] != g.current_user.id:
                return error_response("Edit not found", "NOT_FOUND", 404)
            return success_response(get_processing_service().get_processing_status(edit_id))

        if video_id:
            edits = get_edits_for_video(g.current_user.id, video_id)
            return success_response({'video_id': video_id, 'edits': [edit_status_payload(e) for e in edits]})

        raise ValidationError("edit_id or video_id is required", 'MISSING_PARAMETER')

    @app.route(f'/api/{API_VERSION}/videos/edit/<edit_id>/cancel', methods=['POST'])
    @require_auth
    def cancel_video_edit(edit_id):
        result = get_processing_service().cancel_processing(edit_id, g.current_user.id)
        if not result['success']:
            status_code = 404 if result['error_code'] == 'NOT_FOUND' else 409
            return error_response(result['error'], result['error_code'], status_code)
        return success_response({'edit_id': edit_id, 'status': 'cancelled'})

    @app.route(f'/api/{API_VERSION}/videos/processing/active', methods=['GET'])
    @require_auth
    def active_video_jobs():
        service = get_processing_service()
        if g.current_user.is_admin and request.args.get('all') == 'true':
            return success_response({'jobs': service.get_active_jobs()})
        return success_response({'jobs': service.get_active_jobs(g.current_user.id)})

    @app.route(f'/api/{API_VERSION}/videos/processing/stats', methods=['GET'])
    @require_auth
    def video_processing_stats():
        return success_response(get_processing_service().get_processing_stats(g.current_user.id))

    @app.route(f'/api/{API_VERSION}/videos/errors/stats', methods=['GET'])
    @require_auth
    @require_feature('ERROR_ANALYTICS')
    def video_error_stats():
        time_range = request.args.get('range', '24h')
        try:
            stats = get_error_statistics(time_range, user_id=g.current_user.id)
        except ValueError:
            raise ValidationError(f'Invalid range. Must be one of: {", ".join(TIME_RANGE_HOURS)}',
                                  'INVALID_RANGE')
        return success_response(stats)

# === EXPERIMENTS ===
def register_experiment_routes(app):
    prefix = f'/api/{API_VERSION}/experiments'

    @app.route(prefix, methods=['GET'])
    @require_auth
    def experiments_list():
        return success_response({
            'experiments': list_experiments(g.current_user.id, request.args.get('status'))
        })

    @app.route(prefix, methods=['POST'])
    @require_auth
    @idempotent()
    def experiments_create():
        experiment = create_experiment(g.current_user.id, json_body())
        return success_response(experiment, 201)

    @app.route(f'{prefix}/<experiment_id>', methods=['GET'])
    @require_auth
    def experiments_get(experiment_id):
        experiment = get_experiment(experiment_id, g.current_user.id)
        if not experiment:
            return error_response("Experiment not found", "NOT_FOUND", 404)
        return success_response(experiment)

    @app.route(f'{prefix}/<experiment_id>', methods=['DELETE'])
    @require_auth
    def experiments_delete(experiment_id):
        delete_experiment(experiment_id, g.current_user.id)
        return success_response({'experiment_id': experiment_id, 'deleted': True})

    @app.route(f'{prefix}/<experiment_id>/<any(start, pause, complete):action>', methods=['POST'])
    @require_auth
    def experiments_transition(experiment_id, action):
        return success_response(transition_experiment(experiment_id, g.current_user.id, action))

    @app.route(f'{prefix}/<experiment_id>/results', methods=['POST'])
    @require_auth
    @validate_request('variant_id', 'metric_value', variant_id=str, metric_value=float,
                      post_id=str, conversion_event=bool)
    def experiments_record(experiment_id):
        data = g.validated_data
        result_id = record_result(
            experiment_id,
            data['variant_id'],
            data['metric_value'],
            post_id=data.get('post_id'),
            conversion_event=data.get('conversion_event', False),
            user_id=g.current_user.id
        )
        return success_response({'result_id': result_id}, 201)

    @app.route(f'{prefix}/<experiment_id>/results', methods=['GET'])
    @require_auth
    def experiments_results(experiment_id):
        return success_response(calculate_results(experiment_id, g.current_user.id))

    @app.route(f'{prefix}/<experiment_id>/assign', methods=['GET'])
    @require_auth
    def experiments_assign(experiment_id):
        subject = request.args.get('subject', '').strip()
        if not subject:
            raise ValidationError("subject is required", 'MISSING_PARAMETER')

        experiment = get_experiment(experiment_id, g.current_user.id)
        if not experiment:
            return error_response("Experiment not found", "NOT_FOUND", 404)

        variant = assign_variant(experiment, subject)
        return success_response({'experiment_id': experiment_id, 'subject': subject, 'variant': variant})

# === TEAMS & RBAC ===
def register_team_routes(app):
    prefix = f'/api/{API_VERSION}/teams'

    @app.route(prefix, methods=['GET'])
    @require_auth
    def teams_list():
        return success_response({'teams': get_user_teams(g.current_user.id)})

    @app.route(prefix, methods=['POST'])
    @require_auth
    @validate_request('name', name=str, description=str)
    def teams_create():
        data = g.validated_data
        team = create_team(data['name'], g.current_user.id, data.get('description'))
        return success_response(team, 201)

    @app.route(f'{prefix}/<team_id>', methods=['GET'])
    @require_auth
    @require_permission('team:read')
    def teams_get(team_id):
        team = get_team(team_id)
        if not team:
            return error_response("Team not found", "NOT_FOUND", 404)
        team['members'] = get_team_members(team_id)
        return success_response(team)

    @app.route(f'{prefix}/<team_id>/members', methods=['POST'])
    @require_auth
    @require_permission('team:manage_members')
    @validate_request('user_id', user_id=str, role=str)
    def teams_add_member(team_id):
        data = g.validated_data
        role = data.get('role') or 'member'
        if not can_assign_role(g.current_user.id, role, team_id):
            return error_response(f"You cannot assign the {role} role", "INSUFFICIENT_PERMISSIONS", 403)

        membership = add_team_member(team_id, data['user_id'], role, added_by=g.current_user.id)
        return success_response(membership, 201)

    @app.route(f'{prefix}/<team_id>/members/<user_id>', methods=['DELETE'])
    @require_auth
    @require_permission('team:manage_members')
    def teams_remove_member(team_id, user_id):
        if user_id != g.current_user.id and not can_manage_user(g.current_user.id, user_id, team_id):
            return error_response("You cannot manage this user", "INSUFFICIENT_PERMISSIONS", 403)

        if not remove_team_member(team_id, user_id, removed_by=g.current_user.id):
            return error_response("Member not found", "NOT_FOUND", 404)
        return success_response({'team_id': team_id, 'user_id': user_id, 'removed': True})

    @app.route(f'{prefix}/<team_id>/members/<user_id>/role', methods=['PUT'])
    @require_auth
    @require_permission('team:manage_members')
    @validate_request('role', role=str, expires_at=str)
    def teams_set_role(team_id, user_id):
        data = g.validated_data
        role = data['role']
        if role not in ROLE_HIERARCHY:
            raise ValidationError(f'Invalid role. Must be one of: {", ".join(ROLE_HIERARCHY)}', 'INVALID_ROLE')
        if not can_assign_role(g.current_user.id, role, team_id) or \
                not can_manage_user(g.current_user.id, user_id, team_id):
            return error_response("You cannot assign this role", "INSUFFICIENT_PERMISSIONS", 403)

        expires_at = None
        if data.get('expires_at'):
            expires_at = parse_iso_datetime(data['expires_at'])
            if not expires_at or expires_at <= datetime.utcnow():
                raise ValidationError("expires_at must be a future ISO-8601 time", 'INVALID_EXPIRY')

        return success_response(assign_role(user_id, role, team_id=team_id,
                                            assigned_by=g.current_user.id, expires_at=expires_at))

    @app.route(f'/api/{API_VERSION}/rbac/permissions', methods=['GET'])
    @require_auth
    def rbac_permissions():
        team_id = request.args.get('team_id')
        user_id = g.current_user.id
        return success_response({
            'user_id': user_id,
            'team_id': team_id,
            'role': get_user_highest_role(user_id, team_id),
            'roles': get_user_roles(user_id),
            'permissions': get_user_permissions(user_id, team_id)
        })

# === AI CONTENT ===
def register_ai_routes(app, limiter):
    prefix = f'/api/{API_VERSION}/ai'

    @app.route(f'{prefix}/generate', methods=['POST'])
    @limiter.limit(AI_RATE_LIMIT)
    @require_auth
    @require_feature('CONTENT_IDEATION')
    @validate_request('prompt', prompt=str, max_tokens=int, temperature=float, system_prompt=str)
    @protect_route('idea_generator')
    @track_performance
    def ai_generate():
        data = g.validated_data
        prompt = sanitize_input(data['prompt'], MAX_PROMPT_LENGTH)
        if not prompt:
            raise ValidationError("prompt must not be empty", 'INVALID_PROMPT')

        generation = GenerationRequest(
            prompt=prompt,
            max_tokens=min(max(data.get('max_tokens') or 300, 1), 2000),
            temperature=min(max(data.get('temperature') if data.get('temperature') is not None else 0.8, 0.0), 2.0),
            system_prompt=sanitize_input(data['system_prompt'], MAX_PROMPT_LENGTH) if data.get('system_prompt') else None
        )
        return success_response(get_ai_service().generate_content(generation))

    @app.route(f'{prefix}/suggestions', methods=['POST'])
    @limiter.limit(AI_RATE_LIMIT)
    @require_auth
    @require_feature('CONTENT_IDEATION')
    @validate_request('topic', topic=str, platform=str)
    @track_performance
    def ai_suggestions():
        data = g.validated_data
        platform = data.get('platform') or 'instagram'
        if platform not in autoposting.PLATFORMS:
            raise ValidationError(f'Invalid platform. Must be one of: {", ".join(autoposting.PLATFORMS)}',
                                  'INVALID_PLATFORM')
        if not data['topic'].strip():
            raise ValidationError("topic must not be empty", 'INVALID_TOPIC')

        return success_response(get_content_suggestions(g.current_user.id, data['topic'], platform))

    @app.route(f'{prefix}/stats', methods=['GET'])
    @require_admin
    def ai_stats():
        return success_response(get_ai_service().get_stats())

# === AUTOPOSTING ===
def _parse_bool_arg(name: str) -> Optional[bool]:
    value = request.args.get(name)
    if value is None:
        return None
    return value.lower() in ('true', '1', 'yes')


def register_autopost_routes(app):
    prefix = f'/api/{API_VERSION}/autopost'

    @app.route(f'{prefix}/schedule', methods=['GET'])
    @require_auth
    def autopost_list():
        limit, offset = pagination()
        posts = autoposting.list_scheduled_posts(
            g.current_user.id,
            status=request.args.get('status'),
            platform=request.args.get('platform'),
            priority=request.args.get('priority'),
            limit=limit,
            offset=offset
        )
        return success_response({'posts': posts, 'limit': limit, 'offset': offset})

    @app.route(f'{prefix}/schedule', methods=['POST'])
    @require_auth
    @idempotent()
    def autopost_schedule():
        post = autoposting.schedule_post(g.current_user.id, json_body())
        return success_response(post, 201)

    @app.route(f'{prefix}/schedule/<post_id>', methods=['GET'])
    @require_auth
    def autopost_get(post_id):
        return success_response(autoposting.get_scheduled_post(g.current_user.id, post_id))

    @app.route(f'{prefix}/schedule/<post_id>', methods=['PATCH'])
    @require_auth
    def autopost_update(post_id):
        return success_response(autoposting.update_scheduled_post(g.current_user.id, post_id, json_body()))

    @app.route(f'{prefix}/schedule/<post_id>', methods=['DELETE'])
    @require_auth
    def autopost_cancel(post_id):
        return success_response(autoposting.cancel_post(g.current_user.id, post_id))

    @app.route(f'{prefix}/queue', methods=['GET'])
    @require_auth
    def autopost_queue():
        return success_response(autoposting.get_queue_stats(g.current_user.id))

    @app.route(f'{prefix}/retry', methods=['POST'])
    @require_auth
    @validate_request('post_id', post_id=str, error_type=str, strategy=str)
    def autopost_retry():
        data = g.validated_data
        result = autoposting.manual_retry(
            g.current_user.id,
            data['post_id'],
            error_type=data.get('error_type') or 'manual_retry',
            strategy=data.get('strategy') or 'exponential_backoff'
        )
        return success_response(result)

    @app.route(f'{prefix}/retry/bulk', methods=['POST'])
    @require_auth
    @require_feature('BULK_OPERATIONS')
    @validate_request('post_ids', post_ids=list)
    def autopost_bulk_retry():
        post_ids = g.validated_data['post_ids']
        if len(post_ids) > MAX_BULK_RETRY:
            raise ValidationError(f"At most {MAX_BULK_RETRY} posts can be retried at once", 'TOO_MANY_POSTS')
        if not all(isinstance(p, str) for p in post_ids):
            raise ValidationError("post_ids must be a list of strings", 'INVALID_TYPE')
        return success_response(autoposting.bulk_retry(g.current_user.id, post_ids))

    @app.route(f'{prefix}/retry/stats', methods=['GET'])
    @require_auth
    def autopost_retry_stats():
        return success_response(autoposting.get_retry_stats(g.current_user.id))

    @app.route(f'{prefix}/retry/<post_id>/history', methods=['GET'])
    @require_auth
    def autopost_retry_history(post_id):
        return success_response({
            'post_id': post_id,
            'history': autoposting.get_retry_history(g.current_user.id, post_id)
        })

    @app.route(f'{prefix}/dlq', methods=['GET'])
    @require_auth
    def autopost_dlq():
        limit, offset = pagination(default_limit=100)
        return success_response(autoposting.list_dead_letter(
            g.current_user.id, resolved=_parse_bool_arg('resolved'), limit=limit, offset=offset
        ))

    @app.route(f'{prefix}/dlq/<dlq_id>', methods=['POST'])
    @require_auth
    @validate_request('action', action=str, notes=str)
    def autopost_dlq_action(dlq_id):
        data = g.validated_data
        action = data['action']
        notes = data.get('notes') or ''

        if action == 'resolve':
            result = autoposting.resolve_dead_letter(g.current_user.id, dlq_id, notes)
        elif action == 'retry':
            result = autoposting.retry_dead_letter(g.current_user.id, dlq_id, notes)
        elif action == 'delete':
            result = autoposting.delete_dead_letter(g.current_user.id, dlq_id, notes)
        else:
            raise ValidationError(f'Invalid action. Must be one of: {", ".join(DLQ_ACTIONS)}', 'INVALID_ACTION')
        return success_response(result)

    @app.route(f'{prefix}/credentials', methods=['GET'])
    @require_auth
    def autopost_credentials_list():
        return success_response({'credentials': autoposting.list_credentials(g.current_user.id)})

    @app.route(f'{prefix}/credentials', methods=['POST'])
    @require_auth
    @validate_request('platform', 'access_token', platform=str, access_token=str, refresh_token=str,
                      expires_at=str, platform_user_id=str, username=str)
    def autopost_credentials_save():
        data = g.validated_data
        expires_at = None
        if data.get('expires_at'):
            expires_at = parse_iso_datetime(data['expires_at'])
            if not expires_at:
                raise ValidationError("expires_at must be an ISO-8601 time", 'INVALID_EXPIRY')

        credentials = autoposting.save_credentials(
            g.current_user.id,
            data['platform'],
            data['access_token'],
            refresh_token=data.get('refresh_token'),
            expires_at=expires_at,
            platform_user_id=data.get('platform_user_id'),
            username=data.get('username')
        )
        return success_response(credentials, 201)

    @app.route(f'{prefix}/credentials/<platform>', methods=['DELETE'])
    @require_auth
    def autopost_credentials_delete(platform):
        if not autoposting.delete_credentials(g.current_user.id, platform):
            return error_response("No credentials for this platform", "NOT_FOUND", 404)
        return success_response({'platform': platform, 'deleted': True})

    @app.route(f'{prefix}/cron', methods=['GET', 'POST'])
    @track_performance
    def autopost_cron():
        """Publish due posts; called by an external scheduler with the shared secret"""
        secret = os.getenv('CRON_SECRET')
        if not secret:
            return error_response("Cron endpoint is not configured", "CRON_NOT_CONFIGURED", 503)

        provided = request.headers.get('X-Cron-Secret', '')
        if not provided and request.headers.get('Authorization', '').startswith('Bearer '):
            provided = request.headers['Authorization'][7:]
        if not hmac.compare_digest(provided.encode(), secret.encode()):
            return error_response("Invalid cron secret", "UNAUTHORIZED", 401)

        summary = autoposting.process_due_posts()
        return success_response(summary)

# === APPLICATION INSTANCE ===
# Create app instance at module level for Gunicorn/Waitress
app = create_app()

# === BACKGROUND SCHEDULER ===
def run_background_scheduler():
    """Publish due posts every SCHEDULER_INTERVAL seconds and run hourly cleanups"""
    last_cleanup = 0.0
    while True:
        time.sleep(SCHEDULER_INTERVAL)

        try:
            autoposting.process_due_posts()
        except Exception as e:
            logger.error(f"[AUTOPOST] Scheduler run failed: {e}")
            capture_exception(e, {'job': 'process_due_posts'})

        if time.time() - last_cleanup >= CLEANUP_INTERVAL:
            last_cleanup = time.time()
            try:
                cleanup_ip_throttling()
                expired = cleanup_expired_roles()
                if expired:
                    logger.info(f"[CLEANUP] Deactivated {expired} expired roles")
            except Exception as e:
                logger.error(f"[CLEANUP] Error during cleanup: {e}")


def start_background_scheduler():
    scheduler_thread = threading.Thread(target=run_background_scheduler, daemon=True, name='scheduler')
    scheduler_thread.start()
    logger.info(f"[AUTOPOST] Scheduler started (runs every {SCHEDULER_INTERVAL}s)")


if os.getenv('DISABLE_SCHEDULER', 'false').lower() != 'true':
    start_background_scheduler()

# === MAIN ===
if __name__ == '__main__':
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_ENV') == 'development'

    if debug:
        print("[INFO] Running in DEVELOPMENT mode with Flask dev server")
        app.run(host='0.0.0.0', port=port, debug=True, threaded=True, use_reloader=False)
    else:
        from waitress import serve
        print("=" * 60)
        print("[INFO] Starting PRODUCTION server (Waitress)")
        print(f"[INFO] Server will be available at: http://0.0.0.0:{port}")
        print("=" * 60)
        serve(
            app,
            host='0.0.0.0',
            port=port,
            threads=8,
            connection_limit=200,
            channel_timeout=120,
            expose_tracebacks=False
        )
