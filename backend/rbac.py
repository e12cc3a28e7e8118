"""
Role-based access control for ClipsCommerce
Roles are held per team (team_id '' = organisation-wide) in user_roles
"""

import secrets
import logging
from datetime import datetime
from functools import wraps
from typing import Dict, Iterable, List, Optional

from flask import g, jsonify, request

from cache import get_cache
from database import get_db, get_user_by_id, log_audit, row_to_dict, to_db_time, utc_now

logger = logging.getLogger(__name__)

ADMIN = 'admin'
MANAGER = 'manager'
MEMBER = 'member'

# Highest first
ROLE_HIERARCHY = [ADMIN, MANAGER, MEMBER]

SYSTEM_ADMIN_ROLES = ('admin', 'superadmin')

PERMISSION_GROUPS = {
    'user': ['create', 'read', 'update', 'delete', 'invite'],
    'team': ['create', 'read', 'update', 'delete', 'manage_members'],
    'billing': ['read', 'update', 'cancel', 'export'],
    'client': ['create', 'read', 'update', 'delete', 'export', 'bulk_operations'],
    'analytics': ['read', 'export', 'advanced'],
    'system': ['settings', 'audit_logs', 'monitoring'],
    'api': ['read', 'write', 'admin'],
}

ALL_PERMISSIONS = [f"{group}:{action}" for group, actions in PERMISSION_GROUPS.items() for action in actions]

ROLE_PERMISSIONS = {
    ADMIN: list(ALL_PERMISSIONS),
    MANAGER: [
        'user:read', 'user:invite',
        'team:read', 'team:update', 'team:manage_members',
        'billing:read',
        'client:create', 'client:read', 'client:update', 'client:delete',
        'client:export', 'client:bulk_operations',
        'analytics:read', 'analytics:export', 'analytics:advanced',
        'api:read', 'api:write',
    ],
    MEMBER: [
        'user:read',
        'team:read',
        'client:create', 'client:read', 'client:update',
        'analytics:read',
        'api:read',
    ],
}

PERMISSION_CACHE_TTL = 600


class RBACError(ValueError):
    """Invalid role operation"""


def role_rank(role: Optional[str]) -> int:
    """Index in the hierarchy, lower is stronger; unknown roles rank last"""
    return ROLE_HIERARCHY.index(role) if role in ROLE_HIERARCHY else len(ROLE_HIERARCHY)


def _team_key(team_id: Optional[str]) -> str:
    return team_id or ''


def is_system_admin(user_id: str) -> bool:
    user = get_user_by_id(user_id)
    return bool(user and user.get('role') in SYSTEM_ADMIN_ROLES)

# ==============================================================================
# ROLE ASSIGNMENT
# ==============================================================================

def assign_role(user_id: str, role: str, team_id: str = None, assigned_by: str = None,
                expires_at: datetime = None) -> Dict:
    """Give user_id a role in a team (or organisation-wide), replacing any previous one"""
    if role not in ROLE_HIERARCHY:
        raise RBACError(f"Unknown role: {role}")

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO user_roles (user_id, role, team_id, assigned_by, assigned_at, expires_at, is_active)
            VALUES (?, ?, ?, ?, ?, ?, 1)
            ON CONFLICT(user_id, team_id) DO UPDATE SET
                role = excluded.role,
                assigned_by = excluded.assigned_by,
                assigned_at = excluded.assigned_at,
                expires_at = excluded.expires_at,
                is_active = 1
        ''', (user_id, role, _team_key(team_id), assigned_by, utc_now(), to_db_time(expires_at)))

    get_cache().invalidate_user_cache(user_id)
    log_audit(assigned_by, None, 'role.assigned', 'user', user_id,
              {'role': role, 'team_id': team_id, 'expires_at': to_db_time(expires_at)})
    logger.info(f"[RBAC] Assigned role {role} to user {user_id} (team={team_id or 'org'})")

    return {'user_id': user_id, 'role': role, 'team_id': team_id, 'expires_at': to_db_time(expires_at)}


def remove_role(user_id: str, team_id: str = None, removed_by: str = None) -> bool:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('DELETE FROM user_roles WHERE user_id = ? AND team_id = ?',
                       (user_id, _team_key(team_id)))
        removed = cursor.rowcount > 0

    if removed:
        get_cache().invalidate_user_cache(user_id)
        log_audit(removed_by, None, 'role.removed', 'user', user_id, {'team_id': team_id})
        logger.info(f"[RBAC] Removed role from user {user_id} (team={team_id or 'org'})")
    return removed


def get_user_roles(user_id: str, team_id: str = None) -> List[Dict]:
    """Active, unexpired roles; with team_id, that team's role plus organisation-wide ones"""
    query = '''
        SELECT * FROM user_roles
        WHERE user_id = ? AND is_active = 1
          AND (expires_at IS NULL OR expires_at > ?)
    '''
    params = [user_id, utc_now()]
    if team_id is not None:
        query += " AND team_id IN (?, '')"
        params.append(team_id)

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(query, params)
        roles = []
        for row in cursor.fetchall():
            data = row_to_dict(row)
            data['team_id'] = data['team_id'] or None
            roles.append(data)
        return roles


def get_user_highest_role(user_id: str, team_id: str = None) -> Optional[str]:
    roles = [r['role'] for r in get_user_roles(user_id, team_id)]
    if not roles:
        return None
    return min(roles, key=role_rank)

# ==============================================================================
# PERMISSION CHECKS
# ==============================================================================

def _compute_permissions(user_id: str, team_id: str = None) -> List[str]:
    if is_system_admin(user_id):
        return list(ALL_PERMISSIONS)

    granted = set()
    for role in get_user_roles(user_id, team_id):
        granted.update(ROLE_PERMISSIONS.get(role['role'], []))
    return [p for p in ALL_PERMISSIONS if p in granted]


def get_user_permissions(user_id: str, team_id: str = None) -> List[str]:
    cache = get_cache()

    if team_id is None:
        cached = cache.get_cached_user_permissions(user_id)
        if cached is not None:
            return cached
        permissions = _compute_permissions(user_id)
        cache.cache_user_permissions(user_id, permissions, PERMISSION_CACHE_TTL)
        return permissions

    key = f"permissions:{user_id}:{team_id}"
    return cache.get_or_set(key, lambda: _compute_permissions(user_id, team_id),
                            ttl=PERMISSION_CACHE_TTL,
                            tags=[f"user:{user_id}", f"team:{team_id}"])


def has_permission(user_id: str, permission: str, team_id: str = None) -> bool:
    return permission in get_user_permissions(user_id, team_id)


def has_any_permission(user_id: str, permissions: Iterable[str], team_id: str = None) -> bool:
    held = set(get_user_permissions(user_id, team_id))
    return any(p in held for p in permissions)


def has_all_permissions(user_id: str, permissions: Iterable[str], team_id: str = None) -> bool:
    held = set(get_user_permissions(user_id, team_id))
    return all(p in held for p in permissions)


def can_manage_user(manager_id: str, target_user_id: str, team_id: str = None) -> bool:
    """Manager must rank at or above the target and hold user:update"""
    if is_system_admin(manager_id):
        return True

    manager_role = get_user_highest_role(manager_id, team_id)
    target_role = get_user_highest_role(target_user_id, team_id)
    if not manager_role or not target_role:
        return False

    return role_rank(manager_role) <= role_rank(target_role) and \
        has_permission(manager_id, 'user:update', team_id)


def can_assign_role(assigner_id: str, target_role: str, team_id: str = None) -> bool:
    if target_role not in ROLE_HIERARCHY:
        return False
    if is_system_admin(assigner_id):
        return True

    assigner_role = get_user_highest_role(assigner_id, team_id)
    if not assigner_role:
        return False
    if target_role == ADMIN:
        return assigner_role == ADMIN
    if target_role == MANAGER:
        return assigner_role in (ADMIN, MANAGER)
    return True


def get_users_by_role(role: str, team_id: str = None) -> List[str]:
    query = '''
        SELECT DISTINCT user_id FROM user_roles
        WHERE role = ? AND is_active = 1 AND (expires_at IS NULL OR expires_at > ?)
    '''
    params = [role, utc_now()]
    if team_id is not None:
        query += ' AND team_id = ?'
        params.append(team_id)

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(query, params)
        return [row['user_id'] for row in cursor.fetchall()]


def cleanup_expired_roles() -> int:
    """Deactivate roles past their expiry"""
    now = utc_now()
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT DISTINCT user_id FROM user_roles
            WHERE is_active = 1 AND expires_at IS NOT NULL AND expires_at <= ?
        ''', (now,))
        affected = [row['user_id'] for row in cursor.fetchall()]
        cursor.execute('''
            UPDATE user_roles SET is_active = 0
            WHERE is_active = 1 AND expires_at IS NOT NULL AND expires_at <= ?
        ''', (now,))
        cleaned = cursor.rowcount

    cache = get_cache()
    for user_id in affected:
        cache.invalidate_user_cache(user_id)

    logger.info(f"[RBAC] Cleaned up {cleaned} expired roles")
    return cleaned

# ==============================================================================
# TEAMS
# ==============================================================================

def create_team(name: str, owner_id: str, description: str = None) -> Dict:
    if not name or not name.strip():
        raise RBACError("Team name is required")

    team_id = f"team_{secrets.token_hex(6)}"
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO teams (id, name, description, owner_id, created_at)
            VALUES (?, ?, ?, ?, ?)
        ''', (team_id, name.strip(), description, owner_id, utc_now()))

    assign_role(owner_id, ADMIN, team_id=team_id, assigned_by=owner_id)
    logger.info(f"[RBAC] Created team {name} with ID {team_id}")
    return get_team(team_id)


def get_team(team_id: str) -> Optional[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM teams WHERE id = ?', (team_id,))
        return row_to_dict(cursor.fetchone())


def get_team_members(team_id: str) -> List[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT r.user_id, u.email, u.name, r.role, r.assigned_at, r.expires_at
            FROM user_roles r JOIN users u ON u.id = r.user_id
            WHERE r.team_id = ? AND r.is_active = 1
              AND (r.expires_at IS NULL OR r.expires_at > ?)
            ORDER BY r.assigned_at
        ''', (team_id, utc_now()))
        members = [dict(row) for row in cursor.fetchall()]
    return sorted(members, key=lambda m: role_rank(m['role']))


def get_user_teams(user_id: str) -> List[Dict]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            SELECT * FROM teams
            WHERE owner_id = ?
               OR id IN (SELECT team_id FROM user_roles WHERE user_id = ? AND is_active = 1 AND team_id != '')
            ORDER BY created_at
        ''', (user_id, user_id))
        return [dict(row) for row in cursor.fetchall()]


def add_team_member(team_id: str, user_id: str, role: str = MEMBER, added_by: str = None) -> Dict:
    if not get_team(team_id):
        raise RBACError("Team not found")
    if not get_user_by_id(user_id):
        raise RBACError("User not found")
    return assign_role(user_id, role, team_id=team_id, assigned_by=added_by)


def remove_team_member(team_id: str, user_id: str, removed_by: str = None) -> bool:
    team = get_team(team_id)
    if not team:
        raise RBACError("Team not found")
    if team['owner_id'] == user_id:
        raise RBACError("The team owner cannot be removed")

    removed = remove_role(user_id, team_id=team_id, removed_by=removed_by)
    get_cache().invalidate_team_cache(team_id)
    return removed

# ==============================================================================
# DECORATOR
# ==============================================================================

def _request_team_id(view_kwargs) -> Optional[str]:
    if view_kwargs.get('team_id'):
        return view_kwargs['team_id']
    data = request.get_json(silent=True) or {}
    return data.get('team_id') or request.args.get('team_id')


def require_permission(permission: str):
    """Decorator; apply after require_auth"""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            user = getattr(g, 'current_user', None)
            if not user:
                return jsonify({
                    'status': 'error',
                    'error': 'Authentication required',
                    'error_code': 'AUTH_REQUIRED'
                }), 401

            team_id = _request_team_id(kwargs)
            if not has_permission(user.id, permission, team_id):
                logger.info(f"[RBAC] {user.id} denied {permission} (team={team_id or 'org'})")
                return jsonify({
                    'status': 'error',
                    'error': 'Insufficient permissions',
                    'error_code': 'INSUFFICIENT_PERMISSIONS',
                    'required': permission
                }), 403

            return f(*args, **kwargs)
        return decorated
    return decorator
