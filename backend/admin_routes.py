"""
Admin Routes for ClipsCommerce
System administration API endpoints
"""

import io
import csv
import logging
from datetime import datetime

from flask import Blueprint, Response, request, jsonify, g

from auth import require_admin
from cache import get_cache
from database import (
    get_admin_stats,
    get_all_users,
    count_users,
    get_user_by_id,
    update_user_role,
    log_audit,
    get_audit_logs,
    get_audit_log_count,
    get_all_settings,
    update_setting,
    EXPORT_QUERIES,
    export_table_data
)
from rbac import RBACError, ROLE_HIERARCHY, assign_role, get_user_roles
from usage_limits import get_client_ip
from video_errors import TIME_RANGE_HOURS, get_error_statistics

logger = logging.getLogger(__name__)

admin_bp = Blueprint('admin', __name__, url_prefix='/api/v1/admin')

# Roles an admin may grant on the users table; superadmin is provisioned out of band
SYSTEM_ROLES = ('user', 'admin')

MAX_PAGE_SIZE = 500


def _error(message: str, error_code: str, status_code: int = 400):
    return jsonify({
        'status': 'error',
        'error': message,
        'error_code': error_code
    }), status_code


def _pagination():
    limit = min(max(request.args.get('limit', 100, type=int), 1), MAX_PAGE_SIZE)
    offset = max(request.args.get('offset', 0, type=int), 0)
    return limit, offset


def _audit(action: str, target_type: str = None, target_id: str = None, details=None):
    log_audit(g.current_user.id, g.current_user.email, action, target_type, target_id,
              details, ip_address=get_client_ip())

# ==============================================================================
# DASHBOARD STATS
# ==============================================================================

@admin_bp.route('/stats', methods=['GET'])
@require_admin
def get_stats():
    return jsonify({
        'status': 'success',
        'data': get_admin_stats()
    })

# ==============================================================================
# USER MANAGEMENT
# ==============================================================================

@admin_bp.route('/users', methods=['GET'])
@require_admin
def list_users():
    limit, offset = _pagination()
    users = get_all_users(limit=limit, offset=offset)
    return jsonify({
        'status': 'success',
        'data': {
            'users': users,
            'total': count_users(),
            'limit': limit,
            'offset': offset
        }
    })


@admin_bp.route('/users/<user_id>/role', methods=['PUT'])
@require_admin
def change_user_role(user_id):
    """Change a user's system role, or their team role when team_id is given"""
    data = request.get_json(silent=True) or {}
    new_role = data.get('role')

    if not new_role:
        return _error('Role is required', 'MISSING_ROLE')

    if user_id == g.current_user.id:
        return _error('Cannot change your own role', 'SELF_ROLE_CHANGE')

    if not get_user_by_id(user_id):
        return _error('User not found', 'USER_NOT_FOUND', 404)

    if 'team_id' in data:
        if new_role not in ROLE_HIERARCHY:
            return _error(f'Invalid role. Must be one of: {", ".join(ROLE_HIERARCHY)}', 'INVALID_ROLE')
        try:
            assign_role(user_id, new_role, team_id=data.get('team_id'), assigned_by=g.current_user.id)
        except RBACError as e:
            return _error(str(e), 'INVALID_ROLE')
        logger.info(f"[RBAC] Admin {g.current_user.email} set {user_id} to {new_role} "
                    f"(team={data.get('team_id') or 'org'})")
        return jsonify({
            'status': 'success',
            'data': {'user_id': user_id, 'roles': get_user_roles(user_id)},
            'message': f'Role updated to {new_role}'
        })

    if new_role not in SYSTEM_ROLES:
        return _error(f'Invalid role. Must be one of: {", ".join(SYSTEM_ROLES)}', 'INVALID_ROLE')

    if not update_user_role(user_id, new_role):
        return _error('Failed to update role', 'UPDATE_FAILED', 500)

    get_cache().invalidate_user_cache(user_id)
    _audit('user.role_changed', 'user', user_id, {'role': new_role})
    logger.info(f"Admin {g.current_user.email} changed role of {user_id} to {new_role}")

    return jsonify({
        'status': 'success',
        'data': {'user_id': user_id, 'role': new_role},
        'message': f'Role updated to {new_role}'
    })

# ==============================================================================
# AUDIT LOGS
# ==============================================================================

@admin_bp.route('/audit-logs', methods=['GET'])
@require_admin
def list_audit_logs():
    limit, offset = _pagination()
    user_id = request.args.get('user_id')
    action = request.args.get('action')

    return jsonify({
        'status': 'success',
        'data': {
            'logs': get_audit_logs(limit=limit, offset=offset, user_id=user_id, action=action),
            'total': get_audit_log_count(user_id=user_id, action=action),
            'limit': limit,
            'offset': offset
        }
    })

# ==============================================================================
# SYSTEM SETTINGS
# ==============================================================================

@admin_bp.route('/settings', methods=['GET'])
@require_admin
def list_settings():
    return jsonify({
        'status': 'success',
        'data': get_all_settings()
    })


@admin_bp.route('/settings/<key>', methods=['PUT'])
@require_admin
def modify_setting(key):
    data = request.get_json(silent=True) or {}
    value = data.get('value')

    if value is None:
        return _error('Value is required', 'MISSING_VALUE')

    if isinstance(value, bool):
        value = 'true' if value else 'false'

    if not update_setting(key, str(value), updated_by=g.current_user.id):
        return _error('Setting not found', 'SETTING_NOT_FOUND', 404)

    _audit('setting.updated', 'setting', key, {'value': str(value)})
    return jsonify({
        'status': 'success',
        'message': f'Setting {key} updated'
    })

# ==============================================================================
# ERRORS & CACHE
# ==============================================================================

@admin_bp.route('/errors/stats', methods=['GET'])
@require_admin
def error_stats():
    time_range = request.args.get('range', '24h')
    try:
        stats = get_error_statistics(time_range)
    except ValueError:
        return _error(f'Invalid range. Must be one of: {", ".join(TIME_RANGE_HOURS)}', 'INVALID_RANGE')
    return jsonify({'status': 'success', 'data': stats})


@admin_bp.route('/cache/stats', methods=['GET'])
@require_admin
def cache_stats():
    cache = get_cache()
    return jsonify({
        'status': 'success',
        'data': {
            'stats': cache.get_stats(),
            'health': cache.health_check()
        }
    })


@admin_bp.route('/cache/clear', methods=['POST'])
@require_admin
def cache_clear():
    cleared = get_cache().clear()
    _audit('cache.cleared', 'cache', None, {'entries': cleared})
    logger.info(f"[CACHE] Cleared {cleared} entries by {g.current_user.email}")
    return jsonify({
        'status': 'success',
        'data': {'cleared': cleared}
    })

# ==============================================================================
# DATA EXPORT
# ==============================================================================

def _rows_to_csv(rows) -> str:
    buffer = io.StringIO()
    if rows:
        writer = csv.DictWriter(buffer, fieldnames=list(rows[0].keys()))
        writer.writeheader()
        writer.writerows(rows)
    return buffer.getvalue()


@admin_bp.route('/export/<export_type>', methods=['GET'])
@require_admin
def export_data(export_type):
    """Export users, edits, autoposts or audit logs as JSON or CSV"""
    if export_type not in EXPORT_QUERIES:
        return _error(f'Invalid export type. Must be one of: {", ".join(EXPORT_QUERIES)}',
                      'INVALID_EXPORT_TYPE')

    export_format = request.args.get('format', 'json').lower()
    if export_format not in ('json', 'csv'):
        return _error('Invalid format. Must be json or csv', 'INVALID_FORMAT')

    rows = export_table_data(export_type)
    _audit(f'export.{export_type}', 'export', None, {'rows': len(rows), 'format': export_format})

    if export_format == 'csv':
        filename = f"{export_type}_{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}.csv"
        return Response(
            _rows_to_csv(rows),
            mimetype='text/csv',
            headers={'Content-Disposition': f'attachment; filename={filename}'}
        )

    return jsonify({
        'status': 'success',
        'data': rows,
        'total': len(rows)
    })
