"""
JWT Authentication Module for ClipsCommerce API
Access/refresh tokens, API keys and IP-throttled login
"""

import os
import re
import jwt
import secrets
from datetime import datetime, timedelta
from functools import wraps
from typing import Optional, Dict, Any, Tuple
from flask import Blueprint, request, jsonify, g
from dataclasses import dataclass
import logging

from database import (
    API_KEY_PREFIX,
    create_user as db_create_user,
    authenticate_user as db_authenticate_user,
    get_user_by_id as db_get_user_by_id,
    get_user_by_email as db_get_user_by_email,
    get_user_by_api_key as db_get_user_by_api_key,
    create_session as db_create_session,
    revoke_session as db_revoke_session,
    is_session_revoked as db_is_session_revoked,
    update_user_api_key,
    generate_api_key,
    get_setting,
    log_audit,
    init_database
)
from monitoring import track_auth
from usage_limits import get_client_ip, is_ip_throttled, record_ip_attempt

logger = logging.getLogger(__name__)

# ==============================================================================
# CONFIGURATION
# ==============================================================================

JWT_SECRET_KEY = os.getenv('JWT_SECRET_KEY', secrets.token_hex(32))
JWT_ALGORITHM = 'HS256'
JWT_ACCESS_TOKEN_EXPIRES = int(os.getenv('JWT_ACCESS_TOKEN_EXPIRES', 3600))  # 1 hour
JWT_REFRESH_TOKEN_EXPIRES = int(os.getenv('JWT_REFRESH_TOKEN_EXPIRES', 604800))  # 7 days

MIN_PASSWORD_LENGTH = 8
EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+$')

ADMIN_ROLES = ('admin', 'superadmin')

# ==============================================================================
# DATA MODELS
# ==============================================================================

@dataclass
class User:
    """Authenticated user"""
    id: str
    email: str
    name: str
    role: str = 'user'  # user, admin, superadmin
    api_key: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'email': self.email,
            'name': self.name,
            'role': self.role,
            'created_at': self.created_at
        }


@dataclass
class TokenPayload:
    """JWT Token payload"""
    user_id: str
    email: str
    role: str
    token_type: str  # 'access' or 'refresh'
    exp: datetime
    iat: datetime
    jti: str  # JWT ID for revocation

# ==============================================================================
# USER STORE
# ==============================================================================

class UserStore:
    """SQLite-backed user store returning User objects"""

    def __init__(self):
        init_database()
        self._create_default_admin()

    def _create_default_admin(self):
        """Create default admin user for initial setup"""
        admin_email = os.getenv('ADMIN_EMAIL', 'admin@clipscommerce.com')
        admin_password = os.getenv('ADMIN_PASSWORD', 'changeme123')

        if admin_email and admin_password and not self.get_user_by_email(admin_email):
            if self.create_user(admin_email, admin_password, 'Admin', 'admin'):
                logger.info(f"[OK] Default admin user created: {admin_email}")

    @staticmethod
    def _dict_to_user(data: Optional[Dict]) -> Optional[User]:
        if not data:
            return None
        return User(
            id=data['id'],
            email=data['email'],
            name=data['name'],
            role=data.get('role') or 'user',
            api_key=data.get('api_key'),
            created_at=data.get('created_at')
        )

    def create_user(self, email: str, password: str, name: str, role: str = 'user') -> Optional[User]:
        """Returns None for an invalid or already registered email"""
        if not EMAIL_PATTERN.match(email):
            return None
        return self._dict_to_user(db_create_user(email, password, name, role))

    def authenticate(self, email: str, password: str) -> Optional[User]:
        return self._dict_to_user(db_authenticate_user(email, password))

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        return self._dict_to_user(db_get_user_by_id(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._dict_to_user(db_get_user_by_email(email))

    def get_user_by_api_key(self, api_key: str) -> Optional[User]:
        return self._dict_to_user(db_get_user_by_api_key(api_key))

    def revoke_token(self, jti: str):
        db_revoke_session(jti)

    def is_token_revoked(self, jti: str) -> bool:
        return db_is_session_revoked(jti)

    def regenerate_user_api_key(self, user_id: str) -> Optional[str]:
        new_api_key = generate_api_key()
        if update_user_api_key(user_id, new_api_key):
            return new_api_key
        return None

# Global user store instance
user_store = UserStore()

# ==============================================================================
# JWT TOKEN MANAGEMENT
# ==============================================================================

def _create_token(user: User, token_type: str, lifetime: int) -> str:
    now = datetime.utcnow()
    jti = secrets.token_hex(16)
    expires_at = now + timedelta(seconds=lifetime)

    payload = {
        'user_id': user.id,
        'email': user.email,
        'role': user.role,
        'token_type': token_type,
        'exp': expires_at,
        'iat': now,
        'jti': jti
    }

    # Session record for revocation
    db_create_session(user.id, jti, token_type, expires_at)

    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def create_access_token(user: User) -> str:
    return _create_token(user, 'access', JWT_ACCESS_TOKEN_EXPIRES)


def create_refresh_token(user: User) -> str:
    return _create_token(user, 'refresh', JWT_REFRESH_TOKEN_EXPIRES)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode and validate JWT token, None when invalid, expired or revoked"""
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])

        if user_store.is_token_revoked(payload.get('jti', '')):
            return None

        return payload
    except jwt.ExpiredSignatureError:
        logger.warning("Token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {e}")
        return None


def refresh_access_token(refresh_token: str) -> Optional[Tuple[str, str]]:
    """Exchange a refresh token for a new token pair; the old one is revoked"""
    payload = decode_token(refresh_token)

    if not payload or payload.get('token_type') != 'refresh':
        return None

    user = user_store.get_user_by_id(payload['user_id'])
    if not user:
        return None

    user_store.revoke_token(payload['jti'])

    return create_access_token(user), create_refresh_token(user)


def issue_tokens(user: User) -> Dict[str, Any]:
    return {
        'user': user.to_dict(),
        'access_token': create_access_token(user),
        'refresh_token': create_refresh_token(user),
        'api_key': user.api_key,
        'expires_in': JWT_ACCESS_TOKEN_EXPIRES
    }

# ==============================================================================
# AUTHENTICATION DECORATORS
# ==============================================================================

def get_token_from_request() -> Optional[str]:
    """Extract token from request (header or query param)"""
    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        return auth_header[7:]

    api_key = request.headers.get('X-API-Key', '')
    if api_key.startswith(API_KEY_PREFIX):
        return api_key

    # Query parameter (for output downloads)
    token = request.args.get('token', '')
    if token:
        return token

    return None


def _auth_error(message: str, error_code: str, status_code: int = 401):
    return jsonify({
        'status': 'error',
        'error': message,
        'error_code': error_code
    }), status_code


def require_auth(f):
    """Decorator to require authentication"""
    @wraps(f)
    def decorated(*args, **kwargs):
        token = get_token_from_request()

        if not token:
            return _auth_error('Authentication required', 'AUTH_REQUIRED')

        if token.startswith(API_KEY_PREFIX):
            user = user_store.get_user_by_api_key(token)
            if not user:
                return _auth_error('Invalid API key', 'INVALID_API_KEY')
            g.current_user = user
            g.auth_type = 'api_key'
            g.token_payload = None
        else:
            payload = decode_token(token)
            if not payload:
                return _auth_error('Invalid or expired token', 'INVALID_TOKEN')

            if payload.get('token_type') != 'access':
                return _auth_error('Invalid token type', 'INVALID_TOKEN_TYPE')

            user = user_store.get_user_by_id(payload['user_id'])
            if not user:
                return _auth_error('User not found', 'USER_NOT_FOUND')

            g.current_user = user
            g.auth_type = 'jwt'
            g.token_payload = payload

        return f(*args, **kwargs)

    return decorated


def require_admin(f):
    """Decorator to require admin role (admin or superadmin)"""
    @wraps(f)
    @require_auth
    def decorated(*args, **kwargs):
        if not g.current_user.is_admin:
            return _auth_error('Admin access required', 'ADMIN_REQUIRED', 403)

        return f(*args, **kwargs)

    return decorated


def optional_auth(f):
    """Decorator for optional authentication (public endpoints)"""
    @wraps(f)
    def decorated(*args, **kwargs):
        token = get_token_from_request()
        g.current_user = None

        if token:
            if token.startswith(API_KEY_PREFIX):
                user = user_store.get_user_by_api_key(token)
                if user:
                    g.current_user = user
                    g.auth_type = 'api_key'
            else:
                payload = decode_token(token)
                if payload and payload.get('token_type') == 'access':
                    user = user_store.get_user_by_id(payload['user_id'])
                    if user:
                        g.current_user = user
                        g.auth_type = 'jwt'
                        g.token_payload = payload

        return f(*args, **kwargs)

    return decorated


def throttled(action: str):
    """Reject requests from an IP with too many recent failed attempts at action"""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            blocked, retry_after = is_ip_throttled(get_client_ip(), action)
            if blocked:
                logger.warning(f"[WARN] Throttled {action} from {get_client_ip()}")
                response = jsonify({
                    'status': 'error',
                    'error': 'Too many failed attempts. Please try again later.',
                    'error_code': 'IP_THROTTLED',
                    'retry_after': retry_after
                })
                response.headers['Retry-After'] = str(retry_after)
                return response, 429
            return f(*args, **kwargs)
        return decorated
    return decorator

# ==============================================================================
# AUTH BLUEPRINT
# ==============================================================================

auth_bp = Blueprint('auth', __name__, url_prefix='/api/v1/auth')


@auth_bp.route('/register', methods=['POST'])
@track_auth('register')
@throttled('register')
def register():
    """Register a new user"""
    data = request.get_json(silent=True)
    ip = get_client_ip()

    if not data:
        record_ip_attempt(ip, 'register', success=False)
        return _auth_error('Request body required', 'INVALID_REQUEST', 400)

    if get_setting('registration_enabled', 'true').lower() == 'false':
        record_ip_attempt(ip, 'register', success=False)
        return _auth_error('Registration is currently disabled', 'REGISTRATION_DISABLED', 403)

    email = str(data.get('email', '')).strip().lower()
    password = str(data.get('password', ''))
    name = str(data.get('name', '')).strip()

    if not email or not password or not name:
        record_ip_attempt(ip, 'register', success=False)
        return _auth_error('Email, password, and name are required', 'MISSING_FIELDS', 400)

    if len(password) < MIN_PASSWORD_LENGTH:
        record_ip_attempt(ip, 'register', success=False)
        return _auth_error(f'Password must be at least {MIN_PASSWORD_LENGTH} characters',
                           'WEAK_PASSWORD', 400)

    user = user_store.create_user(email, password, name)

    if not user:
        record_ip_attempt(ip, 'register', success=False)
        return _auth_error('User already exists or invalid email', 'USER_EXISTS', 409)

    record_ip_attempt(ip, 'register', success=True)
    log_audit(user.id, user.email, 'user.registered', 'user', user.id, ip_address=ip)
    logger.info(f"User registered: {email}")

    return jsonify({'status': 'success', 'data': issue_tokens(user)}), 201


@auth_bp.route('/login', methods=['POST'])
@track_auth('login')
@throttled('login')
def login():
    """Login with email and password"""
    data = request.get_json(silent=True)
    ip = get_client_ip()

    if not data:
        record_ip_attempt(ip, 'login', success=False)
        return _auth_error('Request body required', 'INVALID_REQUEST', 400)

    email = str(data.get('email', '')).strip().lower()
    password = str(data.get('password', ''))

    if not email or not password:
        record_ip_attempt(ip, 'login', success=False)
        return _auth_error('Email and password are required', 'MISSING_FIELDS', 400)

    user = user_store.authenticate(email, password)

    if not user:
        record_ip_attempt(ip, 'login', success=False)
        return _auth_error('Invalid email or password', 'INVALID_CREDENTIALS', 401)

    record_ip_attempt(ip, 'login', success=True)
    logger.info(f"User logged in: {email}")

    return jsonify({'status': 'success', 'data': issue_tokens(user)})


@auth_bp.route('/refresh', methods=['POST'])
@track_auth('refresh')
def refresh():
    """Refresh access token"""
    data = request.get_json(silent=True)

    if not data:
        return _auth_error('Request body required', 'INVALID_REQUEST', 400)

    refresh_token = data.get('refresh_token', '')
    if not refresh_token:
        return _auth_error('Refresh token required', 'MISSING_TOKEN', 400)

    result = refresh_access_token(refresh_token)
    if not result:
        return _auth_error('Invalid or expired refresh token', 'INVALID_REFRESH_TOKEN')

    new_access_token, new_refresh_token = result

    return jsonify({
        'status': 'success',
        'data': {
            'access_token': new_access_token,
            'refresh_token': new_refresh_token,
            'expires_in': JWT_ACCESS_TOKEN_EXPIRES
        }
    })


@auth_bp.route('/logout', methods=['POST'])
@require_auth
def logout():
    """Logout (revoke the presented access token)"""
    if g.token_payload:
        user_store.revoke_token(g.token_payload['jti'])

    logger.info(f"User logged out: {g.current_user.email}")

    return jsonify({
        'status': 'success',
        'message': 'Successfully logged out'
    })


@auth_bp.route('/me', methods=['GET'])
@require_auth
def get_current_user():
    return jsonify({
        'status': 'success',
        'data': {
            'user': g.current_user.to_dict(),
            'auth_type': g.auth_type
        }
    })


@auth_bp.route('/api-key/regenerate', methods=['POST'])
@require_auth
def regenerate_api_key():
    user = g.current_user
    new_api_key = user_store.regenerate_user_api_key(user.id)

    if not new_api_key:
        return _auth_error('Failed to regenerate API key', 'REGENERATE_FAILED', 500)

    log_audit(user.id, user.email, 'user.api_key_regenerated', 'user', user.id,
              ip_address=get_client_ip())
    logger.info(f"API key regenerated for user: {user.email}")

    return jsonify({
        'status': 'success',
        'data': {
            'api_key': new_api_key
        }
    })
