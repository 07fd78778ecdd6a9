"""
Check lock API endpoints.

This module provides REST API endpoints terminals use to coordinate edits
on shared checks:
- POST /checks/<check_id>/lock - Acquire or renew a lock
- POST /checks/<check_id>/unlock - Release a lock
- GET /checks/<check_id>/lock - Inspect the current lock
- POST /workstations/<holder_id>/release-locks - Release all locks of a terminal

All endpoints are prefixed with /api/v1 when registered with the app.
Locks are advisory leases; a denied acquire returns 409 with the
current holder.
"""

from flask import current_app, jsonify, request

from edge_hub.routes import locks_bp


def _lock_manager():
    return current_app.config['LOCK_MANAGER']


@locks_bp.route('/checks/<check_id>/lock', methods=['POST'])
def acquire_lock(check_id):
    """
    Acquire or renew the lock on a check.

    Request Body:
        {
            "holder_id": "ws-1",
            "employee_id": "emp-7",
            "duration_seconds": 300
        }

    Returns:
        200: Lock held by the caller
            {"success": true, "lock": {...}}
        400: Missing holder_id or invalid duration
        409: Check locked by another terminal
            {"success": false, "error": "...", "lock": {...}}
    """
    data = request.get_json(silent=True) or {}

    holder_id = data.get('holder_id')
    if not holder_id or not isinstance(holder_id, str):
        return jsonify({
            'success': False,
            'error': 'holder_id is required'
        }), 400

    duration = data.get('duration_seconds')
    if duration is not None and (not isinstance(duration, int) or duration < 1):
        return jsonify({
            'success': False,
            'error': 'duration_seconds must be a positive integer'
        }), 400

    manager = _lock_manager()
    acquired = manager.acquire(
        check_id,
        holder_id,
        employee_id=data.get('employee_id'),
        duration_seconds=duration,
    )
    info = manager.get_lock_info(check_id)

    if not acquired:
        return jsonify({
            'success': False,
            'error': 'Check is locked by another workstation',
            'lock': info['lock'],
        }), 409

    return jsonify({
        'success': True,
        'lock': info['lock'],
    })


@locks_bp.route('/checks/<check_id>/unlock', methods=['POST'])
def release_lock(check_id):
    """
    Release a lock held by the caller.

    Request Body:
        {"holder_id": "ws-1"}

    Returns:
        200: {"success": true, "released": true|false}
        400: Missing holder_id
    """
    data = request.get_json(silent=True) or {}

    holder_id = data.get('holder_id')
    if not holder_id:
        return jsonify({
            'success': False,
            'error': 'holder_id is required'
        }), 400

    released = _lock_manager().release(check_id, holder_id)
    return jsonify({
        'success': True,
        'released': released,
    })


@locks_bp.route('/checks/<check_id>/lock', methods=['GET'])
def get_lock(check_id):
    """Current live lock on a check: {"locked": bool, "lock": {...}|null}."""
    return jsonify(_lock_manager().get_lock_info(check_id))


@locks_bp.route('/workstations/<holder_id>/release-locks', methods=['POST'])
def release_workstation_locks(holder_id):
    released = _lock_manager().release_all(holder_id)
    return jsonify({
        'success': True,
        'released_count': released,
    })
