"""
SQLite Database Module for ClipsCommerce
Persistent storage with WAL mode for concurrent access

DEPLOYMENT:
- Mount a persistent volume at backend/data (or set DATABASE_PATH)
- All timestamps are stored as naive UTC strings: 'YYYY-MM-DD HH:MM:SS'
"""

import sqlite3
import hashlib
import secrets
import os
import json
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, List
from contextlib import contextmanager
import threading
import logging

logger = logging.getLogger(__name__)

_BACKEND_DIR = Path(__file__).parent.resolve()
_DEFAULT_DB_PATH = _BACKEND_DIR / 'data' / 'clipscommerce.db'
DB_PATH = Path(os.getenv('DATABASE_PATH', str(_DEFAULT_DB_PATH)))
API_KEY_PREFIX = 'cck_'
DB_TIME_FORMAT = '%Y-%m-%d %H:%M:%S'

# Thread-local storage for connections
_local = threading.local()

# ==============================================================================
# TIME HELPERS
# ==============================================================================

def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Format a naive UTC datetime the same way CURRENT_TIMESTAMP does"""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = (value - value.utcoffset()).replace(tzinfo=None)
    return value.strftime(DB_TIME_FORMAT)


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value[:19], DB_TIME_FORMAT)
    except ValueError:
        return parse_iso_datetime(value)


def parse_iso_datetime(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 string (with optional Z/offset) into naive UTC"""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return parsed


def utc_now() -> str:
    return to_db_time(datetime.utcnow())

# ==============================================================================
# CONNECTION MANAGEMENT
# ==============================================================================

def get_db_connection() -> sqlite3.Connection:
    """Get thread-local database connection with WAL mode for concurrency"""
    if not hasattr(_local, 'connection') or _local.connection is None:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        _local.connection = sqlite3.connect(
            str(DB_PATH),
            check_same_thread=False,
            timeout=30.0
        )
        _local.connection.row_factory = sqlite3.Row

        _local.connection.execute('PRAGMA journal_mode=WAL')
        _local.connection.execute('PRAGMA synchronous=NORMAL')
        _local.connection.execute('PRAGMA busy_timeout=30000')

        logger.info(f"[DB] Connected to {DB_PATH} (WAL mode enabled)")
    return _local.connection


def close_db_connection():
    """Close this thread's connection (worker threads call this when done)"""
    conn = getattr(_local, 'connection', None)
    if conn is not None:
        conn.close()
        _local.connection = None


@contextmanager
def get_db():
    """Context manager for database operations"""
    conn = get_db_connection()
    try:
        yield conn
        conn.commit()
    except Exception as e:
        conn.rollback()
        raise e


def row_to_dict(row: Optional[sqlite3.Row], json_fields: tuple = ()) -> Optional[Dict]:
    """Convert a row to a dict, decoding JSON text columns"""
    if row is None:
        return None
    data = dict(row)
    for name in json_fields:
        if name in data and isinstance(data[name], str):
            try:
                data[name] = json.loads(data[name])
            except ValueError:
                pass
    return data


def check_database_health() -> Dict[str, Any]:
    """Check database health and return status"""
    try:
        conn = get_db_connection()
        cursor = conn.cursor()

        cursor.execute("SELECT 1")

        cursor.execute("PRAGMA journal_mode")
        journal_mode = cursor.fetchone()[0]

        cursor.execute("PRAGMA page_count")
        page_count = cursor.fetchone()[0]

        cursor.execute("PRAGMA page_size")
        page_size = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM users")
        user_count = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM video_edits")
        edit_count = cursor.fetchone()[0]

        return {
            'healthy': True,
            'path': str(DB_PATH),
            'journal_mode': journal_mode,
            'size_mb': round((page_count * page_size) / (1024 * 1024), 2),
            'user_count': user_count,
            'edit_count': edit_count
        }
    except Exception as e:
        logger.error(f"[DB] Health check failed: {e}")
        return {
            'healthy': False,
            'error': str(e),
            'path': str(DB_PATH)
        }


def backup_database(backup_path: str = None) -> Optional[str]:
    """Create a backup of the database using SQLite's online backup API"""
    try:
        if backup_path is None:
            timestamp = datetime.utcnow().strftime('%Y%m%d_%H%M%S')
            backup_path = str(DB_PATH.parent / f"clipscommerce_backup_{timestamp}.db")

        source = get_db_connection()
        dest = sqlite3.connect(backup_path)
        source.backup(dest)
        dest.close()

        logger.info(f"[DB] Backup created: {backup_path}")
        return backup_path
    except Exception as e:
        logger.error(f"[DB] Backup failed: {e}")
        return None

# ==============================================================================
# SCHEMA
# ==============================================================================

TABLES = [
    'users', 'sessions', 'video_edits', 'video_error_logs', 'usage_tracking',
    'ip_throttling', 'teams', 'user_roles', 'ab_experiments', 'experiment_results',
    'user_subscriptions', 'social_credentials', 'autopost_schedule',
    'autopost_retry_history', 'autopost_dead_letter_queue', 'audit_logs',
    'request_logs', 'system_settings'
]

DEFAULT_SETTINGS = [
    ('maintenance_mode', 'false', 'Enable maintenance mode'),
    ('registration_enabled', 'true', 'Allow new user registration'),
    ('video_editing_enabled', 'true', 'Enable the video editor'),
    ('autoposting_enabled', 'true', 'Enable scheduled publishing'),
    ('max_edit_operations', '20', 'Maximum operations per edit request'),
]


def init_database():
    """Initialize database tables"""
    with get_db() as conn:
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE NOT NULL,
                name TEXT NOT NULL,
                password_hash TEXT NOT NULL,
                role TEXT DEFAULT 'user',
                api_key TEXT UNIQUE,
                stripe_customer_id TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                last_login TIMESTAMP,
                is_active INTEGER DEFAULT 1
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                token_jti TEXT UNIQUE NOT NULL,
                token_type TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                expires_at TIMESTAMP NOT NULL,
                revoked INTEGER DEFAULT 0,
                FOREIGN KEY (user_id) REFERENCES users(id)
            )
        ''')

        # Video edit jobs
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS video_edits (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                video_id TEXT NOT NULL,
                video_url TEXT,
                operations TEXT NOT NULL,
                status TEXT DEFAULT 'queued',
                progress INTEGER DEFAULT 0,
                stage TEXT,
                output_url TEXT,
                error TEXT,
                error_type TEXT,
                retry_count INTEGER DEFAULT 0,
                estimated_time TEXT,
                processing_time_seconds REAL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                started_at TIMESTAMP,
                completed_at TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (user_id) REFERENCES users(id)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS video_error_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                error_type TEXT NOT NULL,
                message TEXT,
                details TEXT,
                video_id TEXT,
                user_id TEXT,
                operation TEXT,
                retryable INTEGER DEFAULT 0,
                critical INTEGER DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        # Monthly feature usage (period = YYYY-MM)
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS usage_tracking (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                feature TEXT NOT NULL,
                period TEXT NOT NULL,
                usage_count INTEGER DEFAULT 0,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(user_id, feature, period)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS ip_throttling (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ip_address TEXT NOT NULL,
                action TEXT NOT NULL,
                attempts INTEGER DEFAULT 0,
                success_count INTEGER DEFAULT 0,
                window_start TIMESTAMP NOT NULL,
                last_attempt TIMESTAMP NOT NULL,
                UNIQUE(ip_address, action)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS teams (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                owner_id TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (owner_id) REFERENCES users(id)
            )
        ''')

        # team_id '' means an organisation-wide role
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS user_roles (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                role TEXT NOT NULL,
                team_id TEXT NOT NULL DEFAULT '',
                assigned_by TEXT,
                assigned_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                expires_at TIMESTAMP,
                is_active INTEGER DEFAULT 1,
                UNIQUE(user_id, team_id)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS ab_experiments (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                platform TEXT NOT NULL,
                target_metric TEXT NOT NULL,
                variants TEXT NOT NULL,
                status TEXT DEFAULT 'draft',
                minimum_sample_size INTEGER DEFAULT 100,
                confidence_level REAL DEFAULT 0.95,
                duration_days INTEGER DEFAULT 7,
                prior_alpha REAL DEFAULT 1,
                prior_beta REAL DEFAULT 1,
                winner_variant_id TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                started_at TIMESTAMP,
                ends_at TIMESTAMP,
                completed_at TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS experiment_results (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                experiment_id TEXT NOT NULL,
                variant_id TEXT NOT NULL,
                post_id TEXT,
                metric_value REAL NOT NULL,
                conversion_event INTEGER DEFAULT 0,
                recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (experiment_id) REFERENCES ab_experiments(id)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS user_subscriptions (
                user_id TEXT PRIMARY KEY,
                tier TEXT DEFAULT 'free',
                status TEXT DEFAULT 'active',
                stripe_customer_id TEXT,
                stripe_subscription_id TEXT,
                stripe_price_id TEXT,
                current_period_end TIMESTAMP,
                cancel_at_period_end INTEGER DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS social_credentials (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                platform TEXT NOT NULL,
                access_token TEXT NOT NULL,
                refresh_token TEXT,
                expires_at TIMESTAMP,
                platform_user_id TEXT,
                username TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(user_id, platform)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS autopost_schedule (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                platform TEXT NOT NULL,
                content TEXT NOT NULL,
                formatted_content TEXT,
                media_urls TEXT NOT NULL,
                hashtags TEXT,
                post_time TIMESTAMP NOT NULL,
                status TEXT DEFAULT 'scheduled',
                priority TEXT DEFAULT 'normal',
                priority_rank INTEGER DEFAULT 1,
                retry_count INTEGER DEFAULT 0,
                max_retries INTEGER DEFAULT 3,
                retry_delay INTEGER DEFAULT 30000,
                next_retry_at TIMESTAMP,
                last_error TEXT,
                last_error_at TIMESTAMP,
                platform_post_id TEXT,
                platform_url TEXT,
                posted_at TIMESTAMP,
                failed_at TIMESTAMP,
                cancelled_at TIMESTAMP,
                metadata TEXT DEFAULT '{}',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS autopost_retry_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                schedule_id TEXT NOT NULL,
                retry_attempt INTEGER NOT NULL,
                error_message TEXT,
                error_type TEXT,
                retry_strategy TEXT,
                attempted_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                success INTEGER DEFAULT 0,
                processing_time INTEGER,
                FOREIGN KEY (schedule_id) REFERENCES autopost_schedule(id)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS autopost_dead_letter_queue (
                id TEXT PRIMARY KEY,
                original_schedule_id TEXT,
                user_id TEXT NOT NULL,
                platform TEXT NOT NULL,
                content TEXT NOT NULL,
                media_urls TEXT,
                original_post_time TIMESTAMP NOT NULL,
                failure_reason TEXT NOT NULL,
                last_error TEXT,
                retry_count INTEGER DEFAULT 0,
                moved_to_dlq_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                resolved_at TIMESTAMP,
                resolution_notes TEXT,
                metadata TEXT DEFAULT '{}'
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS audit_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT,
                user_email TEXT,
                action TEXT NOT NULL,
                target_type TEXT,
                target_id TEXT,
                details TEXT,
                ip_address TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS request_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT,
                endpoint TEXT NOT NULL,
                method TEXT NOT NULL,
                status_code INTEGER,
                duration_ms REAL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS system_settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                description TEXT,
                updated_by TEXT,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        # Indexes
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_users_email ON users(email)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_sessions_jti ON sessions(token_jti)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_video_edits_user ON video_edits(user_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_video_edits_video ON video_edits(video_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_video_edits_status ON video_edits(status)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_video_error_logs_created ON video_error_logs(created_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_user_roles_user ON user_roles(user_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_experiments_user ON ab_experiments(user_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_experiment_results_exp ON experiment_results(experiment_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_autopost_status_priority ON autopost_schedule(status, priority_rank)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_autopost_next_retry ON autopost_schedule(next_retry_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_autopost_retry_schedule ON autopost_retry_history(schedule_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_dlq_user ON autopost_dead_letter_queue(user_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_audit_logs_created ON audit_logs(created_at)')

        for key, value, desc in DEFAULT_SETTINGS:
            cursor.execute('''
                INSERT OR IGNORE INTO system_settings (key, value, description)
                VALUES (?, ?, ?)
            ''', (key, value, desc))

        logger.info("[DB] Database initialized successfully")


def reset_database():
    """Delete every row and re-seed default settings (test helper)"""
    with get_db() as conn:
        cursor = conn.cursor()
        for table in TABLES:
            cursor.execute(f'DELETE FROM {table}')
        for key, value, desc in DEFAULT_SETTINGS:
            cursor.execute('''
                INSERT OR IGNORE INTO system_settings (key, value, description)
                VALUES (?, ?, ?)
            ''', (key, value, desc))

# ==============================================================================
# USER OPERATIONS
# ==============================================================================

USER_COLUMNS = 'id, email, name, role, api_key, stripe_customer_id, created_at, last_login'


def hash_password(password: str) -> str:
    """Hash password with salt"""
    salt = os.getenv('PASSWORD_SALT', 'clipscommerce-salt')
    return hashlib.sha256(f"{password}{salt}".encode()).hexdigest()


def generate_user_id(email: str) -> str:
    """Generate deterministic user ID from email"""
    return hashlib.sha256(email.lower().encode()).hexdigest()[:16]


def generate_api_key() -> str:
    return f"{API_KEY_PREFIX}{secrets.token_hex(32)}"


def create_user(email: str, password: str, name: str, role: str = 'user') -> Optional[Dict]:
    """Create a new user, returns None if the email is taken"""
    user_id = generate_user_id(email)
    api_key = generate_api_key()

    with get_db() as conn:
        cursor = conn.cursor()
        try:
            cursor.execute('''
                INSERT INTO users (id, email, name, password_hash, role, api_key, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            ''', (user_id, email.lower(), name, hash_password(password), role, api_key, utc_now()))
        except sqlite3.IntegrityError:
            return None

    return get_user_by_id(user_id)


def authenticate_user(email: str, password: str) -> Optional[Dict]:
    """Authenticate user with email and password"""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(f'''
            SELECT {USER_COLUMNS}
            FROM users
            WHERE email = ? AND password_hash = ? AND is_active = 1
        ''', (email.lower(), hash_password(password)))

        row = cursor.fetchone()
        if row:
            cursor.execute('UPDATE users SET last_login = ? WHERE id = ?', (utc_now(), row['id']))
            return dict(row)
        return None


def get_user_by_id(user_id: str) -> Optional[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(f'SELECT {USER_COLUMNS} FROM users WHERE id = ? AND is_active = 1', (user_id,))
        return row_to_dict(cursor.fetchone())


def get_user_by_api_key(api_key: str) -> Optional[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(f'SELECT {USER_COLUMNS} FROM users WHERE api_key = ? AND is_active = 1', (api_key,))
        return row_to_dict(cursor.fetchone())


def get_user_by_email(email: str) -> Optional[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(f'SELECT {USER_COLUMNS} FROM users WHERE email = ? AND is_active = 1', (email.lower(),))
        return row_to_dict(cursor.fetchone())


def get_user_by_stripe_customer(customer_id: str) -> Optional[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(f'SELECT {USER_COLUMNS} FROM users WHERE stripe_customer_id = ?', (customer_id,))
        return row_to_dict(cursor.fetchone())


def get_all_users(limit: int = 100, offset: int = 0) -> List[Dict]:
    """List users with their subscription tier"""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT u.id, u.email, u.name, u.role, u.created_at, u.last_login, u.is_active,
                   COALESCE(s.tier, 'free') AS tier
            FROM users u
            LEFT JOIN user_subscriptions s ON s.user_id = u.id
            ORDER BY u.created_at DESC
            LIMIT ? OFFSET ?
        ''', (limit, offset))
        return [dict(row) for row in cursor.fetchall()]


def count_users() -> int:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT COUNT(*) FROM users WHERE is_active = 1')
        return cursor.fetchone()[0]


def update_user_role(user_id: str, new_role: str) -> bool:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('UPDATE users SET role = ? WHERE id = ?', (new_role, user_id))
        return cursor.rowcount > 0


def update_user_api_key(user_id: str, new_api_key: str) -> bool:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('UPDATE users SET api_key = ? WHERE id = ?', (new_api_key, user_id))
        return cursor.rowcount > 0


def set_stripe_customer_id(user_id: str, customer_id: str) -> bool:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('UPDATE users SET stripe_customer_id = ? WHERE id = ?', (customer_id, user_id))
        return cursor.rowcount > 0

# ==============================================================================
# SESSION OPERATIONS
# ==============================================================================

def create_session(user_id: str, token_jti: str, token_type: str, expires_at: datetime) -> bool:
    """Record an issued token so it can be revoked"""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO sessions (id, user_id, token_jti, token_type, created_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (secrets.token_hex(8), user_id, token_jti, token_type, utc_now(), to_db_time(expires_at)))
        return True


def revoke_session(token_jti: str) -> bool:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('UPDATE sessions SET revoked = 1 WHERE token_jti = ?', (token_jti,))
        return cursor.rowcount > 0


def is_session_revoked(token_jti: str) -> bool:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT revoked FROM sessions WHERE token_jti = ?', (token_jti,))
        row = cursor.fetchone()
        return bool(row['revoked']) if row else False

# ==============================================================================
# REQUEST LOGS
# ==============================================================================

def log_request(user_id: Optional[str], endpoint: str, method: str, status_code: int, duration_ms: float):
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO request_logs (user_id, endpoint, method, status_code, duration_ms, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (user_id, endpoint, method, status_code, duration_ms, utc_now()))

# ==============================================================================
# AUDIT LOGS
# ==============================================================================

def log_audit(user_id: Optional[str], user_email: Optional[str], action: str, target_type: str = None,
              target_id: str = None, details: Any = None, ip_address: str = None) -> int:
    """Append an audit record, returns its id"""
    if details is not None and not isinstance(details, str):
        details = json.dumps(details, default=str)

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO audit_logs (user_id, user_email, action, target_type, target_id, details, ip_address, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (user_id, user_email, action, target_type, target_id, details, ip_address, utc_now()))
        return cursor.lastrowid


def _audit_filters(user_id: str = None, action: str = None):
    clauses, params = [], []
    if user_id:
        clauses.append('user_id = ?')
        params.append(user_id)
    if action:
        clauses.append('action = ?')
        params.append(action)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ''
    return where, params


def get_audit_logs(limit: int = 100, offset: int = 0, user_id: str = None, action: str = None) -> List[Dict]:
    where, params = _audit_filters(user_id, action)
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(f'''
            SELECT * FROM audit_logs {where}
            ORDER BY id DESC
            LIMIT ? OFFSET ?
        ''', params + [limit, offset])
        return [row_to_dict(row, ('details',)) for row in cursor.fetchall()]


def get_audit_log_count(user_id: str = None, action: str = None) -> int:
    where, params = _audit_filters(user_id, action)
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(f'SELECT COUNT(*) FROM audit_logs {where}', params)
        return cursor.fetchone()[0]

# ==============================================================================
# SYSTEM SETTINGS
# ==============================================================================

def get_all_settings() -> Dict[str, Any]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT key, value, description, updated_at FROM system_settings ORDER BY key')
        return {row['key']: dict(row) for row in cursor.fetchall()}


def get_setting(key: str, default: str = None) -> Optional[str]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT value FROM system_settings WHERE key = ?', (key,))
        row = cursor.fetchone()
        return row['value'] if row else default


def update_setting(key: str, value: str, updated_by: str = None) -> bool:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            UPDATE system_settings SET value = ?, updated_by = ?, updated_at = ?
            WHERE key = ?
        ''', (str(value), updated_by, utc_now(), key))
        return cursor.rowcount > 0

# ==============================================================================
# ADMIN STATS & EXPORT
# ==============================================================================

def _count_by(cursor, table: str, column: str) -> Dict[str, int]:
    cursor.execute(f'SELECT {column} AS k, COUNT(*) AS c FROM {table} GROUP BY {column}')
    return {row['k']: row['c'] for row in cursor.fetchall()}


def get_admin_stats() -> Dict:
    """Dashboard statistics across every subsystem"""
    with get_db() as conn:
        cursor = conn.cursor()

        cursor.execute('SELECT COUNT(*) FROM users WHERE is_active = 1')
        total_users = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM users WHERE created_at >= datetime('now', '-7 days')")
        new_users_week = cursor.fetchone()[0]

        cursor.execute('SELECT COUNT(*) FROM autopost_dead_letter_queue WHERE resolved_at IS NULL')
        dlq_unresolved = cursor.fetchone()[0]

        cursor.execute('SELECT COUNT(*) FROM ab_experiments')
        total_experiments = cursor.fetchone()[0]

        subscriptions = _count_by(cursor, 'user_subscriptions', 'tier')
        subscriptions['free'] = subscriptions.get('free', 0) + max(
            0, total_users - sum(subscriptions.values()))

        return {
            'users': {
                'total': total_users,
                'new_this_week': new_users_week
            },
            'video_edits': _count_by(cursor, 'video_edits', 'status'),
            'experiments': {
                'total': total_experiments,
                'by_status': _count_by(cursor, 'ab_experiments', 'status')
            },
            'subscriptions': subscriptions,
            'autoposts': _count_by(cursor, 'autopost_schedule', 'status'),
            'dead_letter_unresolved': dlq_unresolved
        }


EXPORT_QUERIES = {
    'users': '''
        SELECT u.id, u.email, u.name, u.role, u.created_at, u.last_login,
               COALESCE(s.tier, 'free') AS tier
        FROM users u LEFT JOIN user_subscriptions s ON s.user_id = u.id
        ORDER BY u.created_at DESC
    ''',
    'edits': '''
        SELECT id, user_id, video_id, status, progress, output_url, error_type,
               processing_time_seconds, created_at, completed_at
        FROM video_edits ORDER BY created_at DESC
    ''',
    'autoposts': '''
        SELECT id, user_id, platform, status, priority, post_time, retry_count,
               last_error, posted_at, created_at
        FROM autopost_schedule ORDER BY created_at DESC
    ''',
    'audit_logs': '''
        SELECT id, user_id, user_email, action, target_type, target_id, ip_address, created_at
        FROM audit_logs ORDER BY id DESC
    ''',
}


def export_table_data(export_type: str) -> List[Dict]:
    """Rows for an admin export, raises KeyError for an unknown type"""
    query = EXPORT_QUERIES[export_type]
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(query)
        return [dict(row) for row in cursor.fetchall()]
