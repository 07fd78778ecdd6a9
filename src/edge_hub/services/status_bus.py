"""
Deployment status events and their fan-out.

Every phase of a deployment is announced as a DeploymentStatus event on a
StatusBus. Observers are called synchronously in registration order and a
failing observer never stops delivery to the others.

Two observers ship with the hub:
- RecentStatusLog keeps the last events in memory for the REST status view
- ZmqStatusPublisher re-broadcasts events on a ZeroMQ PUB socket so that
  local UIs on the store LAN can follow installs live
"""

import json
import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

import zmq

from edge_hub.models import utcnow


logger = logging.getLogger(__name__)


STATUS_EVENT_TYPE = 'deployment_status'

StatusCallback = Callable[['DeploymentStatus'], None]


@dataclass
class DeploymentStatus:
    """One status event for one deployment target."""
    status: str
    target_id: str
    deployment_id: str
    package_name: str
    package_version: str
    message: str
    progress: Optional[int] = None
    log_output: Optional[str] = None
    timestamp: str = field(default_factory=lambda: utcnow().isoformat() + 'Z')
    type: str = STATUS_EVENT_TYPE

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class StatusBus:
    """Synchronous publish/subscribe channel for DeploymentStatus events."""

    def __init__(self):
        self._subscribers: List[StatusCallback] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: StatusCallback) -> None:
        """
        Register an observer.

        Args:
            callback: Called with every published DeploymentStatus
        """
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: StatusCallback) -> bool:
        with self._lock:
            try:
                self._subscribers.remove(callback)
                return True
            except ValueError:
                return False

    def publish(self, event: DeploymentStatus) -> None:
        """
        Deliver an event to all observers in registration order.

        Args:
            event: Status event to deliver
        """
        with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Status observer {callback!r} failed: {e}")

    def __len__(self) -> int:
        return len(self._subscribers)


class RecentStatusLog:
    """Bounded in-memory history of status events."""

    def __init__(self, maxlen: int = 100):
        self._events = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def __call__(self, event: DeploymentStatus) -> None:
        with self._lock:
            self._events.append(event)

    def recent(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Get the most recent events, newest last.

        Args:
            limit: Maximum number of events to return

        Returns:
            List of event dicts
        """
        with self._lock:
            events = list(self._events)
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return [event.to_dict() for event in events]

    def latest_by_target(self) -> Dict[str, Dict[str, Any]]:
        """Latest event per target id."""
        with self._lock:
            events = list(self._events)
        return {event.target_id: event.to_dict() for event in events}


class ZmqStatusPublisher:
    """Publishes status events on a ZeroMQ PUB socket (topic 'deployment_status')."""

    def __init__(self, port: int, context: Optional[zmq.Context] = None):
        """
        Bind the publisher socket.

        Args:
            port: TCP port to bind on all interfaces
            context: Optional ZeroMQ context (a new one is created if None)
        """
        self.port = port
        self._owns_context = context is None
        self.context = context or zmq.Context()
        self.socket = self.context.socket(zmq.PUB)
        self.socket.bind(f"tcp://*:{port}")
        # PUB sockets are not thread-safe; events may come from several threads
        self._lock = threading.Lock()

        logger.info(f"Status publisher started on port {port}")

    def __call__(self, event: DeploymentStatus) -> None:
        with self._lock:
            self.socket.send_string(f"{STATUS_EVENT_TYPE} {event.to_json()}")

    def close(self) -> None:
        """Close the publisher."""
        self.socket.close(linger=0)
        if self._owns_context:
            self.context.term()
        logger.info("Status publisher closed")
