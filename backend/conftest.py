"""
Shared pytest fixtures for the ClipsCommerce backend

Environment is pinned before any app module is imported: the database, output
and log directories live in a temp dir, the cache runs in memory and the
background scheduler stays off.
"""

import os
import tempfile

_TMP = tempfile.mkdtemp(prefix='clipscommerce-test-')

os.environ['DATABASE_PATH'] = os.path.join(_TMP, 'test.db')
os.environ['OUTPUT_DIR'] = os.path.join(_TMP, 'outputs')
os.environ['TEMP_DIR'] = os.path.join(_TMP, 'tmp')
os.environ['LOG_DIR'] = os.path.join(_TMP, 'logs')
os.environ['REDIS_URL'] = 'memory://'
os.environ['CELERY_BROKER_URL'] = 'memory://'
os.environ['CELERY_RESULT_BACKEND'] = 'cache+memory://'
os.environ['JWT_SECRET_KEY'] = 'test-secret-key'
os.environ['DISABLE_SCHEDULER'] = 'true'
os.environ['AUTOPOST_PROVIDER'] = 'demo'
os.environ['EDIT_BACKEND'] = 'thread'
os.environ['ADMIN_EMAIL'] = 'admin@example.com'
os.environ['ADMIN_PASSWORD'] = 'adminpass123'
os.environ['CRON_SECRET'] = 'cron-test-secret'
os.environ['GEMINI_API_KEY'] = ''
os.environ['OPENAI_API_KEY'] = ''
os.environ['STRIPE_SECRET_KEY'] = ''
os.environ['SENTRY_DSN'] = ''

import pytest


@pytest.fixture(scope='session')
def app():
    import main
    application = main.create_app({'TESTING': True, 'RATELIMIT_ENABLED': False})
    return application


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def clean_state():
    from auth import user_store
    from cache import get_cache
    from database import reset_database

    reset_database()
    get_cache().clear()
    user_store._create_default_admin()
    yield


@pytest.fixture
def user():
    from auth import user_store
    return user_store.create_user('creator@example.com', 'password123', 'Creator')


@pytest.fixture
def other_user():
    from auth import user_store
    return user_store.create_user('other@example.com', 'password123', 'Other')


@pytest.fixture
def admin_user():
    from auth import user_store
    return user_store.get_user_by_email(os.environ['ADMIN_EMAIL'])


def _bearer(user):
    from auth import create_access_token
    return {'Authorization': f'Bearer {create_access_token(user)}'}


@pytest.fixture
def auth_headers(user):
    return _bearer(user)


@pytest.fixture
def other_headers(other_user):
    return _bearer(other_user)


@pytest.fixture
def admin_headers(admin_user):
    return _bearer(admin_user)


@pytest.fixture
def set_tier():
    """Put a user on a paid plan"""
    from database import get_db, utc_now

    def _set(user_id, tier, status='active'):
        with get_db() as conn:
            conn.execute('''
                INSERT INTO user_subscriptions (user_id, tier, status, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET tier = excluded.tier, status = excluded.status
            ''', (user_id, tier, status, utc_now()))
    return _set
