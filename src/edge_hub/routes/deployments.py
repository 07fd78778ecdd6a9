"""
Deployment API endpoints.

- GET /deployments/installed - Installed package manifest
- GET /deployments/status - Orchestrator state and recent status events
- POST /deployments/check - Poll the control plane for pending deployments now

All endpoints are prefixed with /api/v1 when registered with the app.
"""

from flask import current_app, jsonify, request

from edge_hub.routes import deployments_bp


@deployments_bp.route('/installed', methods=['GET'])
def installed_packages():
    runtime = current_app.config['DEPLOYMENT_RUNTIME']
    return jsonify({
        'packages': runtime.orchestrator.installed_packages(),
    })


@deployments_bp.route('/status', methods=['GET'])
def deployment_status():
    """
    Deployment state for local dashboards.

    Query Parameters:
        limit: Number of recent status events (default 50)
    """
    limit = request.args.get('limit', 50, type=int)
    runtime = current_app.config['DEPLOYMENT_RUNTIME']
    status_log = current_app.config['STATUS_LOG']
    return jsonify({
        'orchestrator': runtime.get_status(),
        'latest_by_target': status_log.latest_by_target(),
        'recent': status_log.recent(limit),
    })


@deployments_bp.route('/check', methods=['POST'])
def check_deployments():
    """
    Trigger an immediate pending deployment check.

    Returns:
        202: Check scheduled
        503: Deployment runtime not running
    """
    runtime = current_app.config['DEPLOYMENT_RUNTIME']
    if not runtime.is_running:
        return jsonify({
            'success': False,
            'error': 'Deployment runtime is not running'
        }), 503

    runtime.check_now()
    return jsonify({
        'success': True,
        'message': 'Deployment check scheduled'
    }), 202
