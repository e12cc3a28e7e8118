"""API tests for the routes registered in main"""

from datetime import datetime, timedelta

import pytest

import main
from database import get_db, to_db_time, update_setting
from video_editing import OUTPUT_DIR
from video_processing import get_edit


def edit_payload(**overrides):
    payload = {
        'video_id': 'vid_1',
        'video_url': 'https://cdn.example.com/raw.mp4',
        'operations': [{'type': 'trim', 'parameters': {'start_time': 0, 'end_time': 5}}],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def dispatched(monkeypatch):
    """Edit ids handed to the processing backend"""
    ids = []
    monkeypatch.setattr(main, 'dispatch_edit', ids.append)
    return ids


def post_edit(client, headers, **overrides):
    return client.post('/api/v1/videos/edit', json=edit_payload(**overrides), headers=headers)


# ============================================================
# SYSTEM
# ============================================================

def test_index_and_health(client):
    assert client.get('/').get_json()['data']['service'] == 'clipscommerce-api'

    response = client.get('/api/v1/health')
    data = response.get_json()['data']
    assert response.status_code == 200
    assert data['status'] == 'healthy'
    assert data['database']['healthy']
    assert client.get('/health').status_code == 200


def test_security_headers_and_request_id(client):
    response = client.get('/', headers={'X-Request-ID': 'req-123'})
    assert response.headers['X-Request-ID'] == 'req-123'
    assert response.headers['X-Frame-Options'] == 'DENY'
    assert response.headers['X-Content-Type-Options'] == 'nosniff'
    assert response.get_json()['request_id'] == 'req-123'


def test_unknown_route(client):
    response = client.get('/api/v1/nope')
    assert response.status_code == 404
    assert response.get_json()['error_code'] == 'NOT_FOUND'


def test_features(client, auth_headers):
    data = client.get('/api/v1/features').get_json()['data']
    assert data['flags']['USAGE_QUOTAS'] is True
    assert 'access' not in data

    data = client.get('/api/v1/features', headers=auth_headers).get_json()['data']
    assert set(data['access']) == {'ecommerce', 'analytics', 'team_dashboard'}


def test_usage_summary(client, auth_headers):
    data = client.get('/api/v1/usage', headers=auth_headers).get_json()['data']
    assert data['tier'] == 'free'
    assert data['features']['video_edits'] == {'used': 0, 'limit': 3, 'percentage': 0, 'unlimited': False}


def test_maintenance_mode(client, auth_headers):
    update_setting('maintenance_mode', 'true')

    response = client.get('/api/v1/usage', headers=auth_headers)
    assert response.status_code == 503
    assert response.get_json()['error_code'] == 'MAINTENANCE_MODE'

    assert client.get('/api/v1/auth/me', headers=auth_headers).status_code == 200
    assert client.get('/api/v1/health').status_code == 200
    assert client.get('/').status_code == 200


def test_outputs(client):
    target = OUTPUT_DIR / 'user1' / 'clip.mp4'
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(b'\x00\x00\x00\x18ftypmp42')

    response = client.get('/outputs/user1/clip.mp4')
    assert response.status_code == 200
    assert response.mimetype == 'video/mp4'
    assert response.headers['Accept-Ranges'] == 'bytes'

    response = client.get('/outputs/user1/missing.mp4')
    assert response.get_json()['error_code'] == 'FILE_NOT_FOUND'


def test_outputs_reject_traversal():
    with pytest.raises(ValueError):
        main.safe_path_join(OUTPUT_DIR, '..', 'secrets.txt')
    assert main.safe_path_join(OUTPUT_DIR, 'a', 'b.mp4') == (OUTPUT_DIR / 'a' / 'b.mp4').resolve()


# ============================================================
# VIDEO EDITS
# ============================================================

def test_create_edit(client, user, auth_headers, dispatched):
    response = post_edit(client, auth_headers)
    assert response.status_code == 202
    data = response.get_json()['data']
    assert data['status'] == 'queued'
    assert data['estimated_time'] == '1-2 minutes'
    assert dispatched == [data['edit_id']]
    assert get_edit(data['edit_id'])['user_id'] == user.id


def test_create_edit_validation(client, auth_headers, dispatched):
    response = post_edit(client, auth_headers, video_url='http://cdn.example.com/raw.mp4')
    assert response.get_json()['error_code'] == 'INVALID_URL'

    response = post_edit(client, auth_headers, operations=[
        {'type': 'rotate', 'parameters': {'degrees': 90}},
        {'type': 'trim', 'parameters': {'start_time': 5, 'end_time': 1}},
    ])
    body = response.get_json()
    assert response.status_code == 400
    assert body['error_code'] == 'INVALID_OPERATION'
    assert body['operation_index'] == 1
    assert body['error'].startswith('Operation 1:')

    response = client.post('/api/v1/videos/edit', json={'video_id': 'v'}, headers=auth_headers)
    assert response.get_json()['error_code'] == 'MISSING_FIELD'

    response = client.post('/api/v1/videos/edit', data='video', headers=auth_headers)
    assert response.get_json()['error_code'] == 'INVALID_CONTENT_TYPE'

    response = post_edit(client, auth_headers, operations='trim')
    assert response.get_json()['error_code'] == 'INVALID_TYPE'
    assert dispatched == []


def test_edit_quota(client, auth_headers, dispatched):
    for _ in range(3):
        assert post_edit(client, auth_headers).status_code == 202

    response = post_edit(client, auth_headers)
    assert response.status_code == 429
    assert response.get_json()['error_code'] == 'USAGE_LIMIT_EXCEEDED'
    assert len(dispatched) == 3


def test_failed_validation_does_not_use_quota(client, auth_headers, dispatched):
    for _ in range(4):
        post_edit(client, auth_headers, video_url='http://insecure.example.com/a.mp4')
    used = client.get('/api/v1/usage', headers=auth_headers).get_json()['data']['features']['video_edits']['used']
    assert used == 0


def test_idempotent_replay(client, auth_headers, dispatched):
    headers = dict(auth_headers, **{'Idempotency-Key': 'edit-once'})
    first = post_edit(client, headers)
    second = post_edit(client, headers)

    assert second.status_code == 202
    assert second.headers['Idempotency-Replayed'] == '1'
    assert second.get_json()['data']['edit_id'] == first.get_json()['data']['edit_id']
    assert len(dispatched) == 1


def test_editing_disabled(client, auth_headers, dispatched):
    update_setting('video_editing_enabled', 'false')
    response = post_edit(client, auth_headers)
    assert response.status_code == 503
    assert response.get_json()['error_code'] == 'FEATURE_DISABLED'


def test_max_operations_setting(client, auth_headers, dispatched):
    update_setting('max_edit_operations', '1')
    rotate = {'type': 'rotate', 'parameters': {'degrees': 90}}
    response = post_edit(client, auth_headers, operations=[rotate, rotate])
    assert response.get_json()['error_code'] == 'INVALID_OPERATION'


def test_get_edit(client, auth_headers, other_headers, dispatched):
    edit_id = post_edit(client, auth_headers).get_json()['data']['edit_id']

    data = client.get(f'/api/v1/videos/edit?edit_id={edit_id}', headers=auth_headers).get_json()['data']
    assert data['edit_id'] == edit_id
    assert data['progress'] == 0

    response = client.get(f'/api/v1/videos/edit?edit_id={edit_id}', headers=other_headers)
    assert response.status_code == 404

    data = client.get('/api/v1/videos/edit?video_id=vid_1', headers=auth_headers).get_json()['data']
    assert [e['edit_id'] for e in data['edits']] == [edit_id]

    response = client.get('/api/v1/videos/edit', headers=auth_headers)
    assert response.get_json()['error_code'] == 'MISSING_PARAMETER'


def test_cancel_edit(client, auth_headers, other_headers, dispatched):
    edit_id = post_edit(client, auth_headers).get_json()['data']['edit_id']

    assert client.post(f'/api/v1/videos/edit/{edit_id}/cancel', headers=other_headers).status_code == 404
    response = client.post(f'/api/v1/videos/edit/{edit_id}/cancel', headers=auth_headers)
    assert response.get_json()['data']['status'] == 'cancelled'

    response = client.post(f'/api/v1/videos/edit/{edit_id}/cancel', headers=auth_headers)
    assert response.status_code == 409
    assert response.get_json()['error_code'] == 'INVALID_STATE'


def test_processing_views(client, auth_headers, dispatched):
    post_edit(client, auth_headers)
    jobs = client.get('/api/v1/videos/processing/active', headers=auth_headers).get_json()['data']['jobs']
    assert len(jobs) == 1

    stats = client.get('/api/v1/videos/processing/stats', headers=auth_headers).get_json()['data']
    assert stats['queued'] == 1
    assert stats['total'] == 1

    response = client.get('/api/v1/videos/errors/stats?range=2w', headers=auth_headers)
    assert response.get_json()['error_code'] == 'INVALID_RANGE'


def test_error_analytics_flag(client, auth_headers, monkeypatch):
    monkeypatch.setenv('FEATURE_ERROR_ANALYTICS', 'false')
    response = client.get('/api/v1/videos/errors/stats', headers=auth_headers)
    assert response.status_code == 501


# ============================================================
# EXPERIMENTS
# ============================================================

EXPERIMENT = {
    'name': 'Caption test',
    'platform': 'instagram',
    'target_metric': 'engagement_rate',
    'variants': [
        {'id': 'a', 'name': 'Control', 'content': 'Plain', 'weight': 0.5},
        {'id': 'b', 'name': 'Emoji', 'content': 'Fun', 'weight': 0.5},
    ],
}


def test_experiment_flow(client, auth_headers):
    response = client.post('/api/v1/experiments', json=EXPERIMENT, headers=auth_headers)
    assert response.status_code == 201
    experiment_id = response.get_json()['data']['id']

    response = client.post(f'/api/v1/experiments/{experiment_id}/results',
                           json={'variant_id': 'a', 'metric_value': 3}, headers=auth_headers)
    assert response.status_code == 409

    response = client.post(f'/api/v1/experiments/{experiment_id}/start', headers=auth_headers)
    assert response.get_json()['data']['status'] == 'running'

    response = client.post(f'/api/v1/experiments/{experiment_id}/results',
                           json={'variant_id': 'a', 'metric_value': 3}, headers=auth_headers)
    assert response.status_code == 201

    results = client.get(f'/api/v1/experiments/{experiment_id}/results', headers=auth_headers).get_json()['data']
    assert results['total_samples'] == 1

    response = client.get(f'/api/v1/experiments/{experiment_id}/assign?subject=viewer-9', headers=auth_headers)
    assert response.get_json()['data']['variant']['id'] in ('a', 'b')

    listed = client.get('/api/v1/experiments?status=running', headers=auth_headers).get_json()['data']
    assert [e['id'] for e in listed['experiments']] == [experiment_id]


def test_experiment_errors(client, auth_headers, other_headers):
    response = client.post('/api/v1/experiments', json=dict(EXPERIMENT, variants=[]), headers=auth_headers)
    assert response.status_code == 400

    experiment_id = client.post('/api/v1/experiments', json=EXPERIMENT, headers=auth_headers).get_json()['data']['id']
    assert client.get(f'/api/v1/experiments/{experiment_id}', headers=other_headers).status_code == 404
    assert client.post(f'/api/v1/experiments/{experiment_id}/stop', headers=auth_headers).status_code == 404

    response = client.get(f'/api/v1/experiments/{experiment_id}/assign', headers=auth_headers)
    assert response.get_json()['error_code'] == 'MISSING_PARAMETER'

    response = client.delete(f'/api/v1/experiments/{experiment_id}', headers=auth_headers)
    assert response.get_json()['data']['deleted'] is True


# ============================================================
# TEAMS
# ============================================================

def test_team_flow(client, other_user, auth_headers, other_headers):
    response = client.post('/api/v1/teams', json={'name': 'Studio'}, headers=auth_headers)
    assert response.status_code == 201
    team_id = response.get_json()['data']['id']

    response = client.get(f'/api/v1/teams/{team_id}', headers=other_headers)
    assert response.status_code == 403
    assert response.get_json()['required'] == 'team:read'

    response = client.post(f'/api/v1/teams/{team_id}/members', json={'user_id': other_user.id},
                           headers=auth_headers)
    assert response.status_code == 201

    team = client.get(f'/api/v1/teams/{team_id}', headers=other_headers).get_json()['data']
    assert {m['role'] for m in team['members']} == {'admin', 'member'}
    assert [t['id'] for t in client.get('/api/v1/teams', headers=other_headers).get_json()['data']['teams']] == \
        [team_id]

    permissions = client.get(f'/api/v1/rbac/permissions?team_id={team_id}', headers=other_headers).get_json()['data']
    assert permissions['role'] == 'member'
    assert 'team:manage_members' not in permissions['permissions']

    response = client.delete(f'/api/v1/teams/{team_id}/members/{other_user.id}', headers=auth_headers)
    assert response.get_json()['data']['removed'] is True


def test_team_role_changes(client, other_user, auth_headers):
    team_id = client.post('/api/v1/teams', json={'name': 'Studio'}, headers=auth_headers).get_json()['data']['id']
    client.post(f'/api/v1/teams/{team_id}/members', json={'user_id': other_user.id}, headers=auth_headers)
    url = f'/api/v1/teams/{team_id}/members/{other_user.id}/role'

    response = client.put(url, json={'role': 'owner'}, headers=auth_headers)
    assert response.get_json()['error_code'] == 'INVALID_ROLE'

    past = (datetime.utcnow() - timedelta(days=1)).isoformat()
    response = client.put(url, json={'role': 'manager', 'expires_at': past}, headers=auth_headers)
    assert response.get_json()['error_code'] == 'INVALID_EXPIRY'

    response = client.put(url, json={'role': 'manager'}, headers=auth_headers)
    assert response.get_json()['data']['role'] == 'manager'


def test_add_unknown_member(client, auth_headers):
    team_id = client.post('/api/v1/teams', json={'name': 'Studio'}, headers=auth_headers).get_json()['data']['id']
    response = client.post(f'/api/v1/teams/{team_id}/members', json={'user_id': 'ghost'}, headers=auth_headers)
    assert response.status_code == 404
    assert response.get_json()['error_code'] == 'RBAC_ERROR'


# ============================================================
# AUTOPOSTING
# ============================================================

@pytest.fixture
def connected_headers(client, user, auth_headers, set_tier):
    set_tier(user.id, 'pro')
    response = client.post('/api/v1/autopost/credentials',
                           json={'platform': 'instagram', 'access_token': 'ig-token', 'username': 'shop'},
                           headers=auth_headers)
    assert response.status_code == 201
    return auth_headers


def schedule_payload(**overrides):
    payload = {
        'platform': 'instagram',
        'content': 'Restock alert',
        'media_urls': ['https://cdn.example.com/clip.mp4'],
        'post_time': (datetime.utcnow() + timedelta(hours=1)).isoformat() + 'Z',
    }
    payload.update(overrides)
    return payload


def test_credentials(client, connected_headers):
    credentials = client.get('/api/v1/autopost/credentials', headers=connected_headers).get_json()['data']
    assert credentials['credentials'][0]['username'] == 'shop'
    assert 'access_token' not in credentials['credentials'][0]

    response = client.post('/api/v1/autopost/credentials',
                           json={'platform': 'myspace', 'access_token': 't'}, headers=connected_headers)
    assert response.get_json()['error_code'] == 'INVALID_PLATFORM'

    assert client.delete('/api/v1/autopost/credentials/instagram', headers=connected_headers).status_code == 200
    assert client.delete('/api/v1/autopost/credentials/instagram', headers=connected_headers).status_code == 404


def test_schedule_and_manage(client, connected_headers):
    response = client.post('/api/v1/autopost/schedule', json=schedule_payload(), headers=connected_headers)
    assert response.status_code == 201
    post_id = response.get_json()['data']['id']

    posts = client.get('/api/v1/autopost/schedule?status=scheduled', headers=connected_headers).get_json()['data']
    assert [p['id'] for p in posts['posts']] == [post_id]
    assert client.get(f'/api/v1/autopost/schedule/{post_id}', headers=connected_headers).status_code == 200

    response = client.patch(f'/api/v1/autopost/schedule/{post_id}', json={'content': 'Back in stock'},
                            headers=connected_headers)
    assert response.get_json()['data']['content'].startswith('Back in stock')

    queue = client.get('/api/v1/autopost/queue', headers=connected_headers).get_json()['data']
    assert queue is not None

    response = client.delete(f'/api/v1/autopost/schedule/{post_id}', headers=connected_headers)
    assert response.status_code == 200


def test_schedule_requires_credentials(client, user, auth_headers, set_tier):
    set_tier(user.id, 'pro')
    response = client.post('/api/v1/autopost/schedule', json=schedule_payload(), headers=auth_headers)
    assert response.get_json()['error_code'] == 'CREDENTIALS_MISSING'


def test_dlq_routes(client, connected_headers):
    data = client.get('/api/v1/autopost/dlq?resolved=false', headers=connected_headers).get_json()['data']
    assert data['items'] == []

    response = client.post('/api/v1/autopost/dlq/1', json={'action': 'explode'}, headers=connected_headers)
    assert response.get_json()['error_code'] == 'INVALID_ACTION'


def test_bulk_retry_limits(client, connected_headers, monkeypatch):
    response = client.post('/api/v1/autopost/retry/bulk', json={'post_ids': ['p'] * 101},
                           headers=connected_headers)
    assert response.get_json()['error_code'] == 'TOO_MANY_POSTS'

    response = client.post('/api/v1/autopost/retry/bulk', json={'post_ids': [1, 2]}, headers=connected_headers)
    assert response.get_json()['error_code'] == 'INVALID_TYPE'

    monkeypatch.setenv('FEATURE_BULK_OPERATIONS', 'false')
    response = client.post('/api/v1/autopost/retry/bulk', json={'post_ids': ['p']}, headers=connected_headers)
    assert response.status_code == 501


def test_retry_stats(client, connected_headers):
    response = client.get('/api/v1/autopost/retry/stats', headers=connected_headers)
    assert response.status_code == 200


def test_cron(client, connected_headers):
    post_id = client.post('/api/v1/autopost/schedule', json=schedule_payload(),
                          headers=connected_headers).get_json()['data']['id']
    with get_db() as conn:
        conn.execute('UPDATE autopost_schedule SET post_time = ? WHERE id = ?',
                     (to_db_time(datetime.utcnow() - timedelta(minutes=1)), post_id))

    assert client.post('/api/v1/autopost/cron', headers={'X-Cron-Secret': 'wrong'}).status_code == 401
    assert client.post('/api/v1/autopost/cron').status_code == 401

    response = client.post('/api/v1/autopost/cron', headers={'X-Cron-Secret': 'cron-test-secret'})
    assert response.status_code == 200
    summary = response.get_json()['data']
    assert summary['posted'] == 1
    assert summary['results'][0]['post_id'] == post_id

    response = client.get('/api/v1/autopost/cron', headers={'Authorization': 'Bearer cron-test-secret'})
    assert response.get_json()['data']['processed'] == 0


def test_cron_not_configured(client, monkeypatch):
    monkeypatch.delenv('CRON_SECRET')
    response = client.post('/api/v1/autopost/cron', headers={'X-Cron-Secret': 'x'})
    assert response.status_code == 503
