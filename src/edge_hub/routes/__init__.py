"""
API Route Blueprints for the Store Edge Hub.

This module defines and exports Flask blueprints for the local hub API:
- locks_bp: Check lock endpoints used by terminals
- sync_bp: Sync queue endpoints (enqueue, status, stranded rows)
- deployments_bp: Installed packages and deployment status
- cloud_bp: Relay endpoint for messages pushed by the control plane

Each blueprint is registered with the /api/v1 prefix by the app factory.
"""

from flask import Blueprint

# Check locks blueprint
# Routes live under /checks and /workstations, so no blueprint prefix
locks_bp = Blueprint('locks', __name__)

# Sync queue blueprint
sync_bp = Blueprint('sync', __name__, url_prefix='/sync')

# Deployments blueprint
deployments_bp = Blueprint('deployments', __name__, url_prefix='/deployments')

# Cloud message relay blueprint
cloud_bp = Blueprint('cloud', __name__, url_prefix='/cloud')

# Import route handlers to register them with blueprints
# These imports must come AFTER blueprint definitions to avoid circular imports
from edge_hub.routes import locks  # noqa: F401, E402
from edge_hub.routes import sync  # noqa: F401, E402
from edge_hub.routes import deployments  # noqa: F401, E402
from edge_hub.routes import cloud  # noqa: F401, E402

__all__ = ['locks_bp', 'sync_bp', 'deployments_bp', 'cloud_bp']
