"""
Deployment Runtime - hosts the orchestrator beside the Flask app.

Flask request threads and APScheduler jobs are synchronous, while the
DeploymentOrchestrator is asyncio-based. The runtime owns a private event
loop running in one daemon thread and exposes thread-safe entry points
that hand work over to that loop.

Example:
    runtime = DeploymentRuntime(orchestrator)
    runtime.register_cloud_handlers(cloud)
    runtime.start()          # starts the loop and runs an initial poll
    runtime.check_now()      # from any thread
"""

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Any, Dict, Optional

from edge_hub.services.cloud_connection import CloudConnection
from edge_hub.services.deployment import DeploymentOrchestrator, DeploymentTask


logger = logging.getLogger(__name__)


DEPLOYMENT_AVAILABLE = 'DEPLOYMENT_AVAILABLE'
DEPLOYMENT_CHECK = 'DEPLOYMENT_CHECK'


class DeploymentRuntime:
    """Runs a DeploymentOrchestrator on a dedicated event loop thread."""

    def __init__(self, orchestrator: DeploymentOrchestrator):
        self.orchestrator = orchestrator
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._started = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.call_soon(self._started.set)
        self._loop.run_forever()

        # Let in-flight work observe cancellation before closing
        pending = asyncio.all_tasks(self._loop)
        for task in pending:
            task.cancel()
        if pending:
            self._loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        self._loop.close()

    def start(self, initial_check: bool = True) -> None:
        """
        Start the loop thread.

        Args:
            initial_check: Poll for pending deployments right away
        """
        if self.is_running:
            return

        self._loop = asyncio.new_event_loop()
        self._started.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name='deployment-runtime', daemon=True,
        )
        self._thread.start()
        self._started.wait(timeout=5)
        logger.info("Deployment runtime started")

        if initial_check:
            self.check_now()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the loop and join its thread. Running deployments are cancelled."""
        if not self.is_running:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Deployment runtime stopped")

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if not self.is_running:
            raise RuntimeError('Deployment runtime is not running')
        return self._loop

    def submit(self, task: DeploymentTask) -> Future:
        """
        Submit a task from any thread.

        Returns:
            Future resolving to True if the task was queued
        """
        async def _submit() -> bool:
            return self.orchestrator.submit(task)

        return asyncio.run_coroutine_threadsafe(_submit(), self._require_loop())

    def submit_message(self, payload: Dict[str, Any]) -> Future:
        async def _submit() -> bool:
            return self.orchestrator.submit_message(payload)

        return asyncio.run_coroutine_threadsafe(_submit(), self._require_loop())

    def check_now(self) -> Future:
        """
        Poll the control plane for pending deployments.

        Returns:
            Future resolving to the number of tasks queued
        """
        return asyncio.run_coroutine_threadsafe(
            self.orchestrator.check_pending_deployments(), self._require_loop(),
        )

    def get_status(self) -> Dict[str, Any]:
        """Orchestrator state, read on the loop thread when it is running."""
        if not self.is_running:
            return {'running': False, **self.orchestrator.get_status()}

        async def _status() -> Dict[str, Any]:
            return self.orchestrator.get_status()

        status = asyncio.run_coroutine_threadsafe(_status(), self._loop).result(timeout=5)
        return {'running': True, **status}

    def register_cloud_handlers(self, cloud: CloudConnection) -> None:
        """Bind DEPLOYMENT_AVAILABLE and DEPLOYMENT_CHECK pushes to this runtime."""

        def on_deployment_available(payload: Any) -> None:
            target_id = payload.get('targetId') if isinstance(payload, dict) else None
            logger.info(f"Received deployment notification: {target_id}")
            self.submit_message(payload)

        def on_deployment_check(payload: Any) -> None:
            logger.info("Cloud requested deployment check")
            self.check_now()

        cloud.on_message(DEPLOYMENT_AVAILABLE, on_deployment_available)
        cloud.on_message(DEPLOYMENT_CHECK, on_deployment_check)

    def __repr__(self) -> str:
        return f"DeploymentRuntime(running={self.is_running})"
