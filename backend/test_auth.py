"""Tests for registration, login, tokens and API keys"""

from auth import create_refresh_token, decode_token, user_store
from database import get_audit_logs, update_setting


def register(client, email='new@example.com', password='password123', name='New Creator'):
    return client.post('/api/v1/auth/register', json={'email': email, 'password': password, 'name': name})


def test_register_returns_tokens(client):
    response = register(client)
    assert response.status_code == 201
    data = response.get_json()['data']
    assert data['user']['email'] == 'new@example.com'
    assert data['user']['role'] == 'user'
    assert data['api_key'].startswith('cck_')
    assert decode_token(data['access_token'])['token_type'] == 'access'
    assert get_audit_logs(action='user.registered')[0]['user_email'] == 'new@example.com'


def test_register_validation(client):
    assert register(client, password='short').get_json()['error_code'] == 'WEAK_PASSWORD'
    assert register(client, name='').get_json()['error_code'] == 'MISSING_FIELDS'
    assert client.post('/api/v1/auth/register').status_code == 400

    register(client)
    response = register(client)
    assert response.status_code == 409
    assert response.get_json()['error_code'] == 'USER_EXISTS'


def test_register_disabled_by_setting(client):
    update_setting('registration_enabled', 'false')
    response = register(client)
    assert response.status_code == 403
    assert response.get_json()['error_code'] == 'REGISTRATION_DISABLED'


def test_login(client, user):
    response = client.post('/api/v1/auth/login', json={'email': 'Creator@Example.com', 'password': 'password123'})
    assert response.status_code == 200
    assert response.get_json()['data']['user']['id'] == user.id


def test_login_errors(client, user):
    unknown = client.post('/api/v1/auth/login', json={'email': 'nobody@example.com', 'password': 'password123'})
    wrong = client.post('/api/v1/auth/login', json={'email': user.email, 'password': 'wrongpass1'})
    assert unknown.status_code == wrong.status_code == 401
    assert unknown.get_json()['error'] == wrong.get_json()['error']
    assert wrong.get_json()['error_code'] == 'INVALID_CREDENTIALS'


def test_every_login_attempt_is_counted(client, user):
    assert client.post('/api/v1/auth/login').status_code == 400
    client.post('/api/v1/auth/login', json={'email': user.email})
    for _ in range(3):
        response = client.post('/api/v1/auth/login', json={'email': user.email, 'password': 'password123'})
        assert response.status_code == 200

    response = client.post('/api/v1/auth/login', json={'email': user.email, 'password': 'password123'})
    assert response.status_code == 429


def test_repeated_failures_throttle_login(client, user):
    for _ in range(5):
        client.post('/api/v1/auth/login', json={'email': user.email, 'password': 'wrongpass1'})

    response = client.post('/api/v1/auth/login', json={'email': user.email, 'password': 'password123'})
    assert response.status_code == 429
    assert response.get_json()['error_code'] == 'IP_THROTTLED'
    assert int(response.headers['Retry-After']) > 0


def test_me_requires_auth(client, auth_headers):
    assert client.get('/api/v1/auth/me').get_json()['error_code'] == 'AUTH_REQUIRED'
    assert client.get('/api/v1/auth/me', headers={'Authorization': 'Bearer junk'}).status_code == 401

    response = client.get('/api/v1/auth/me', headers=auth_headers)
    assert response.get_json()['data']['auth_type'] == 'jwt'


def test_refresh_rotates_tokens(client, user):
    refresh_token = create_refresh_token(user)
    response = client.post('/api/v1/auth/refresh', json={'refresh_token': refresh_token})
    assert response.status_code == 200
    assert response.get_json()['data']['access_token']

    reused = client.post('/api/v1/auth/refresh', json={'refresh_token': refresh_token})
    assert reused.status_code == 401


def test_refresh_token_cannot_authenticate(client, user):
    headers = {'Authorization': f'Bearer {create_refresh_token(user)}'}
    response = client.get('/api/v1/auth/me', headers=headers)
    assert response.get_json()['error_code'] == 'INVALID_TOKEN_TYPE'


def test_logout_revokes_token(client, auth_headers):
    assert client.post('/api/v1/auth/logout', headers=auth_headers).status_code == 200
    assert client.get('/api/v1/auth/me', headers=auth_headers).status_code == 401


def test_api_key_authentication(client, user):
    response = client.get('/api/v1/auth/me', headers={'X-API-Key': user.api_key})
    assert response.get_json()['data']['auth_type'] == 'api_key'

    assert client.get('/api/v1/auth/me', headers={'X-API-Key': 'cck_invalid'}).status_code == 401


def test_regenerate_api_key(client, user, auth_headers):
    response = client.post('/api/v1/auth/api-key/regenerate', headers=auth_headers)
    new_key = response.get_json()['data']['api_key']
    assert new_key != user.api_key
    assert user_store.get_user_by_api_key(new_key).id == user.id
    assert user_store.get_user_by_api_key(user.api_key) is None
