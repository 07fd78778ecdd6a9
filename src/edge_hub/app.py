"""
Flask Application Factory for the Store Edge Hub.

This module provides the create_app() factory function that creates and
configures the Flask application. It initializes:
- SQLAlchemy database connection (SQLite under storage_path)
- Services (sync queue, check locks, cloud connection, deployments)
- Blueprint registration
- Deployment runtime thread and background job scheduler
- Logging configuration

Usage:
    # Development
    python -m edge_hub.app

    # Production
    gunicorn -w 1 -b 0.0.0.0:3001 'edge_hub.app:create_app()'

Only one hub process may run per site: the sync queue, locks and the
deployment scheduler state all assume a single writer.
"""

import atexit
import logging
import os
from typing import Any, Dict, Optional

from flask import Flask

from edge_hub import __version__
from edge_hub.config import load_config
from edge_hub.models import db
from edge_hub.scheduler import init_scheduler, list_jobs, register_jobs, shutdown_scheduler
from edge_hub.services.check_locks import CheckLockManager
from edge_hub.services.cloud_connection import CloudConnection
from edge_hub.services.deployment import DeploymentOrchestrator, SchedulerState
from edge_hub.services.deployment_runtime import DeploymentRuntime
from edge_hub.services.status_bus import RecentStatusLog, StatusBus, ZmqStatusPublisher
from edge_hub.services.sync_queue import SyncQueueManager
from edge_hub.services.transaction_sync import TransactionSync


def create_app(
    config_path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Flask:
    """
    Create and configure the Flask application.

    Args:
        config_path: Optional path to configuration file.
                    If None, uses /etc/edge-hub/config.json
        overrides: Flask config values applied before services start
                   (e.g., {'TESTING': True}); TESTING disables the
                   scheduler and the deployment runtime thread

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__)

    config = load_config(config_path)

    os.makedirs(config.storage_path, exist_ok=True)
    os.makedirs(config.packages_path, exist_ok=True)
    os.makedirs(config.log_path, exist_ok=True)

    app.config['SQLALCHEMY_DATABASE_URI'] = f'sqlite:///{config.db_path}'
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['HUB_CONFIG'] = config
    if overrides:
        app.config.update(overrides)

    db.init_app(app)

    with app.app_context():
        db.create_all()

    _configure_logging(app, config.log_path)

    _init_services(app)

    _register_blueprints(app)

    _start_background_work(app)

    @app.route('/health')
    def health_check():
        """Basic health check endpoint."""
        runtime = app.config['DEPLOYMENT_RUNTIME']
        return {
            'status': 'healthy',
            'service': 'edge-hub',
            'version': __version__,
            'deployment_runtime': runtime.is_running,
            'scheduler': list_jobs(),
        }

    return app


def _configure_logging(app: Flask, log_path: str) -> None:
    """
    Configure application logging.

    Args:
        app: Flask application instance
        log_path: Directory path for log files
    """
    package_logger = logging.getLogger('edge_hub')

    try:
        log_file = os.path.join(log_path, 'hub.log')
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        app.logger.addHandler(file_handler)
        package_logger.addHandler(file_handler)
    except (OSError, PermissionError):
        # Log path not writable (dev environment), skip file logging
        pass

    app.logger.setLevel(logging.INFO)
    package_logger.setLevel(logging.INFO)


def _init_services(app: Flask) -> None:
    """
    Build the service graph and store it in app.config.

    Keys: CLOUD_CONNECTION, SYNC_QUEUE, TRANSACTION_SYNC, LOCK_MANAGER,
    STATUS_BUS, STATUS_LOG, STATUS_PUBLISHER, DEPLOYMENT_RUNTIME.
    Services already present in app.config (e.g., test doubles) are kept.
    """
    config = app.config['HUB_CONFIG']

    cloud = app.config.get('CLOUD_CONNECTION') or CloudConnection(
        config.cloud_url,
        host_id=config.host_id,
        token=config.host_token or None,
        timeout=config.request_timeout_seconds,
    )
    app.config['CLOUD_CONNECTION'] = cloud

    sync_queue = SyncQueueManager(
        backoff_seconds=config.sync_backoff_seconds,
        max_attempts=config.sync_max_attempts,
    )
    app.config['SYNC_QUEUE'] = sync_queue
    app.config['TRANSACTION_SYNC'] = TransactionSync(
        sync_queue, cloud, batch_size=config.sync_batch_size,
    )
    app.config['LOCK_MANAGER'] = CheckLockManager(
        default_duration_seconds=config.lock_duration_seconds,
    )

    status_bus = StatusBus()
    status_log = RecentStatusLog()
    status_bus.subscribe(status_log)
    app.config['STATUS_BUS'] = status_bus
    app.config['STATUS_LOG'] = status_log

    app.config['STATUS_PUBLISHER'] = None
    if config.status_pub_port and not app.config.get('TESTING', False):
        publisher = ZmqStatusPublisher(config.status_pub_port)
        status_bus.subscribe(publisher)
        app.config['STATUS_PUBLISHER'] = publisher
        atexit.register(publisher.close)

    orchestrator = DeploymentOrchestrator(
        cloud,
        packages_path=config.packages_path,
        install_root=config.install_root,
        host_id=config.host_id,
        status_bus=status_bus,
        state=SchedulerState(
            initial_delay=config.deployment_initial_retry_seconds,
            max_delay=config.deployment_max_retry_seconds,
        ),
    )
    runtime = DeploymentRuntime(orchestrator)
    runtime.register_cloud_handlers(cloud)
    app.config['DEPLOYMENT_RUNTIME'] = runtime


def _register_blueprints(app: Flask) -> None:
    """
    Register API blueprints with the application under /api/v1.

    Args:
        app: Flask application instance
    """
    from edge_hub.routes import cloud_bp, deployments_bp, locks_bp, sync_bp

    for blueprint in (locks_bp, sync_bp, deployments_bp, cloud_bp):
        app.register_blueprint(blueprint, url_prefix=_prefix(blueprint))
        app.logger.info(f'Registered {blueprint.name} blueprint')


def _prefix(blueprint) -> str:
    return '/api/v1' + (blueprint.url_prefix or '')


def _start_background_work(app: Flask) -> None:
    """
    Start the deployment runtime and the background job scheduler.

    Skipped in testing mode or when SCHEDULER_ENABLED is False.

    Args:
        app: Flask application instance
    """
    if app.config.get('TESTING', False):
        app.logger.info('Background work disabled in testing mode')
        return

    if app.config.get('SCHEDULER_ENABLED') is False:
        app.logger.info('Background work explicitly disabled')
        return

    runtime = app.config['DEPLOYMENT_RUNTIME']
    runtime.start()
    atexit.register(runtime.stop)

    try:
        scheduler = init_scheduler(start=False)
        register_jobs(scheduler, app)
        scheduler.start()
        app.logger.info('Background scheduler started')

        atexit.register(lambda: shutdown_scheduler(wait=False))

    except Exception as e:
        app.logger.error(f'Failed to initialize scheduler: {e}')


if __name__ == '__main__':
    # Development server
    application = create_app()
    hub_config = application.config['HUB_CONFIG']
    application.run(
        host='0.0.0.0',
        port=hub_config.port,
        debug=False,
    )
