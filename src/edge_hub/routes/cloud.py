"""
Relay endpoint for control plane push messages.

- POST /cloud/messages - Deliver one pushed message to its handlers

The message relay (websocket bridge) forwards every message it receives
from the control plane here as {"type": "...", "payload": {...}}.
All endpoints are prefixed with /api/v1 when registered with the app.
"""

from flask import current_app, jsonify, request

from edge_hub.routes import cloud_bp


@cloud_bp.route('/messages', methods=['POST'])
def receive_message():
    """
    Dispatch a pushed message.

    Returns:
        202: {"success": true, "handled": <handler count>}
        400: Missing message type
    """
    message = request.get_json(silent=True)

    if not message or not isinstance(message, dict) or not message.get('type'):
        return jsonify({
            'success': False,
            'error': 'Message type is required'
        }), 400

    cloud = current_app.config['CLOUD_CONNECTION']
    handled = cloud.handle_message(message)

    return jsonify({
        'success': True,
        'handled': handled,
    }), 202
