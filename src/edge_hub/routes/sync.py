"""
Sync queue API endpoints.

- POST /sync/queue - Queue a local change for upload
- GET /sync/queue/status - Queue counts
- GET /sync/queue/stranded - Rows that used up their attempts
- POST /sync/queue/<id>/reset - Make a stranded row eligible again

All endpoints are prefixed with /api/v1 when registered with the app.
Changes are persisted before the response is sent, so a 201 means the
change will be uploaded eventually.
"""

import base64
import binascii

from flask import current_app, jsonify, request

from edge_hub.routes import sync_bp
from edge_hub.services import SyncQueueError


def _sync_queue():
    return current_app.config['SYNC_QUEUE']


@sync_bp.route('/queue', methods=['POST'])
def enqueue_change():
    """
    Queue a local change.

    Request Body:
        {
            "entity_type": "check",
            "entity_id": "chk-42",
            "action": "update",
            "payload": {...},
            "priority": 1,
            "payload_encoding": "base64"   (optional; payload is then binary)
        }

    Returns:
        201: {"success": true, "operation": {...}}
        400: Missing or invalid fields
    """
    data = request.get_json(silent=True)

    if not data:
        return jsonify({
            'success': False,
            'error': 'Request body is required'
        }), 400

    for key in ('entity_type', 'entity_id', 'action'):
        if not data.get(key):
            return jsonify({
                'success': False,
                'error': f'{key} is required'
            }), 400

    priority = data.get('priority', 0)
    if not isinstance(priority, int):
        return jsonify({
            'success': False,
            'error': 'priority must be an integer'
        }), 400

    payload = data.get('payload')
    if data.get('payload_encoding') == 'base64':
        try:
            payload = base64.b64decode(payload or '', validate=True)
        except (binascii.Error, TypeError, ValueError):
            return jsonify({
                'success': False,
                'error': 'payload is not valid base64'
            }), 400

    try:
        operation = _sync_queue().enqueue(
            data['entity_type'],
            str(data['entity_id']),
            data['action'],
            payload,
            priority=priority,
        )
    except SyncQueueError as e:
        return jsonify({
            'success': False,
            'error': str(e)
        }), 400

    return jsonify({
        'success': True,
        'operation': operation.to_dict(),
    }), 201


@sync_bp.route('/queue/status', methods=['GET'])
def queue_status():
    return jsonify(_sync_queue().get_queue_status())


@sync_bp.route('/queue/stranded', methods=['GET'])
def stranded_operations():
    """
    List stranded rows.

    Query Parameters:
        limit: Maximum rows to return (default 100)
    """
    limit = request.args.get('limit', 100, type=int)
    queue = _sync_queue()
    return jsonify({
        'count': queue.get_stranded_count(),
        'operations': [op.to_dict() for op in queue.get_stranded(limit)],
    })


@sync_bp.route('/queue/<int:operation_id>/reset', methods=['POST'])
def reset_operation(operation_id):
    """
    Reset a stranded row so it is retried.

    Returns:
        200: {"success": true, "operation": {...}}
        404: Row not found
        409: Row is not stranded
    """
    try:
        operation = _sync_queue().reset_stranded(operation_id)
    except SyncQueueError as e:
        return jsonify({
            'success': False,
            'error': e.message
        }), 409

    if operation is None:
        return jsonify({
            'success': False,
            'error': 'Queue entry not found'
        }), 404

    return jsonify({
        'success': True,
        'operation': operation.to_dict(),
    })
