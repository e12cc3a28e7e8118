"""Tests for the admin API"""

from database import get_audit_logs, get_setting, get_user_by_id
from rbac import get_user_roles
from video_errors import VideoError, VideoErrorType, log_video_error


def test_admin_required(client, auth_headers):
    response = client.get('/api/v1/admin/stats', headers=auth_headers)
    assert response.status_code == 403
    assert response.get_json()['error_code'] == 'ADMIN_REQUIRED'
    assert client.get('/api/v1/admin/stats').status_code == 401


def test_stats(client, user, admin_headers):
    response = client.get('/api/v1/admin/stats', headers=admin_headers)
    data = response.get_json()['data']
    assert data['users']['total'] == 2
    assert data['subscriptions']['free'] == 2
    assert data['dead_letter_unresolved'] == 0


def test_list_users(client, user, admin_headers):
    response = client.get('/api/v1/admin/users?limit=1', headers=admin_headers)
    data = response.get_json()['data']
    assert data['total'] == 2
    assert data['limit'] == 1
    assert len(data['users']) == 1
    assert data['users'][0]['tier'] == 'free'


# ============================================================
# ROLES
# ============================================================

def test_change_system_role(client, user, admin_headers):
    response = client.put(f'/api/v1/admin/users/{user.id}/role', json={'role': 'admin'}, headers=admin_headers)
    assert response.status_code == 200
    assert get_user_by_id(user.id)['role'] == 'admin'
    assert get_audit_logs(action='user.role_changed')[0]['target_id'] == user.id


def test_change_role_errors(client, user, admin_user, admin_headers):
    url = f'/api/v1/admin/users/{user.id}/role'
    assert client.put(url, json={}, headers=admin_headers).get_json()['error_code'] == 'MISSING_ROLE'
    assert client.put(url, json={'role': 'superadmin'}, headers=admin_headers).get_json()['error_code'] == 'INVALID_ROLE'

    response = client.put(f'/api/v1/admin/users/{admin_user.id}/role', json={'role': 'user'}, headers=admin_headers)
    assert response.get_json()['error_code'] == 'SELF_ROLE_CHANGE'

    response = client.put('/api/v1/admin/users/missing/role', json={'role': 'user'}, headers=admin_headers)
    assert response.status_code == 404
    assert response.get_json()['error_code'] == 'USER_NOT_FOUND'


def test_change_team_role(client, user, admin_headers):
    url = f'/api/v1/admin/users/{user.id}/role'
    response = client.put(url, json={'role': 'manager', 'team_id': 'team_1'}, headers=admin_headers)
    assert response.status_code == 200
    assert [(r['role'], r['team_id']) for r in get_user_roles(user.id)] == [('manager', 'team_1')]
    assert get_user_by_id(user.id)['role'] == 'user'

    response = client.put(url, json={'role': 'owner', 'team_id': 'team_1'}, headers=admin_headers)
    assert response.get_json()['error_code'] == 'INVALID_ROLE'


# ============================================================
# SETTINGS & AUDIT
# ============================================================

def test_settings(client, admin_headers):
    settings = client.get('/api/v1/admin/settings', headers=admin_headers).get_json()['data']
    assert 'maintenance_mode' in str(settings)

    response = client.put('/api/v1/admin/settings/autoposting_enabled', json={'value': False}, headers=admin_headers)
    assert response.status_code == 200
    assert get_setting('autoposting_enabled') == 'false'

    response = client.put('/api/v1/admin/settings/max_edit_operations', json={'value': 5}, headers=admin_headers)
    assert response.status_code == 200
    assert get_setting('max_edit_operations') == '5'


def test_setting_errors(client, admin_headers):
    response = client.put('/api/v1/admin/settings/unknown_key', json={'value': 'x'}, headers=admin_headers)
    assert response.status_code == 404
    assert response.get_json()['error_code'] == 'SETTING_NOT_FOUND'

    response = client.put('/api/v1/admin/settings/maintenance_mode', json={}, headers=admin_headers)
    assert response.get_json()['error_code'] == 'MISSING_VALUE'


def test_audit_logs_filtered(client, admin_headers):
    client.put('/api/v1/admin/settings/maintenance_mode', json={'value': True}, headers=admin_headers)
    client.put('/api/v1/admin/settings/maintenance_mode', json={'value': False}, headers=admin_headers)
    client.post('/api/v1/admin/cache/clear', headers=admin_headers)

    response = client.get('/api/v1/admin/audit-logs?action=setting.updated', headers=admin_headers)
    data = response.get_json()['data']
    assert data['total'] == 2
    assert {log['action'] for log in data['logs']} == {'setting.updated'}


# ============================================================
# ERRORS, CACHE, EXPORT
# ============================================================

def test_error_stats(client, user, admin_headers):
    log_video_error(VideoError(VideoErrorType.NETWORK_ERROR, 'timeout', user_id=user.id, operation='download'))

    response = client.get('/api/v1/admin/errors/stats?range=7d', headers=admin_headers)
    assert response.status_code == 200
    assert response.get_json()['data']['by_operation'] == {'download': 1}

    response = client.get('/api/v1/admin/errors/stats?range=1y', headers=admin_headers)
    assert response.get_json()['error_code'] == 'INVALID_RANGE'


def test_cache_endpoints(client, admin_headers):
    from cache import get_cache

    get_cache().set('warm', 1)
    stats = client.get('/api/v1/admin/cache/stats', headers=admin_headers).get_json()['data']
    assert stats['health']['healthy']

    cleared = client.post('/api/v1/admin/cache/clear', headers=admin_headers).get_json()['data']['cleared']
    assert cleared >= 1
    assert get_cache().get('warm') is None


def test_export_json_and_csv(client, user, admin_headers):
    response = client.get('/api/v1/admin/export/users', headers=admin_headers)
    body = response.get_json()
    assert body['total'] == 2
    assert {row['email'] for row in body['data']} == {'admin@example.com', user.email}

    response = client.get('/api/v1/admin/export/users?format=csv', headers=admin_headers)
    assert response.mimetype == 'text/csv'
    assert 'attachment; filename=users_' in response.headers['Content-Disposition']
    lines = response.get_data(as_text=True).strip().splitlines()
    assert lines[0].startswith('id,email,name,role')
    assert len(lines) == 3

    assert get_audit_logs(action='export.users')[0]['details']


def test_export_errors(client, admin_headers):
    assert client.get('/api/v1/admin/export/secrets', headers=admin_headers).get_json()['error_code'] == \
        'INVALID_EXPORT_TYPE'
    assert client.get('/api/v1/admin/export/users?format=xml', headers=admin_headers).get_json()['error_code'] == \
        'INVALID_FORMAT'
