"""
Sync Queue Manager - durable outbound queue of local changes.

Locally originated state changes are written to the sync_queue table and
uploaded later by TransactionSync. This service owns the queue semantics:

- enqueue never deduplicates; every change is its own row
- dequeue_pending only returns rows that are eligible now, highest
  priority first, then oldest first
- each failed upload pushes the row back linearly: the n-th failure waits
  n * backoff_seconds before the row is eligible again
- a row is deleted only after the control plane confirmed it
- rows that used up max_attempts are stranded and only visible through
  get_stranded / get_stranded_count

Delivery is at-least-once. A crash between upload and delete re-sends the
row, so the control plane must treat uploads idempotently.

Example:
    queue = SyncQueueManager(backoff_seconds=30)
    queue.enqueue('check', 'chk-42', 'update', {'total': 1250}, priority=1)

    for op in queue.dequeue_pending(10):
        ...
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from edge_hub.models import db, utcnow
from edge_hub.models.sync_queue import (
    DEFAULT_MAX_ATTEMPTS,
    PAYLOAD_BINARY,
    PAYLOAD_JSON,
    PAYLOAD_TEXT,
    QueuedOperation,
)
from edge_hub.services import SyncQueueError


logger = logging.getLogger(__name__)


DEFAULT_BACKOFF_SECONDS = 30


def serialize_payload(payload: Any) -> Tuple[bytes, str]:
    """
    Turn a payload into stored bytes plus the format needed to read it back.

    Bytes are stored untouched, strings as UTF-8 text and everything else
    as JSON. None becomes an empty JSON payload.
    """
    if payload is None:
        return b'', PAYLOAD_JSON
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload), PAYLOAD_BINARY
    if isinstance(payload, str):
        return payload.encode('utf-8'), PAYLOAD_TEXT
    return json.dumps(payload, default=str).encode('utf-8'), PAYLOAD_JSON


class SyncQueueManager:
    """
    Durable FIFO-with-priority queue over the sync_queue table.

    All methods must run inside a Flask application context.
    """

    def __init__(
        self,
        backoff_seconds: int = DEFAULT_BACKOFF_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the queue manager.

        Args:
            backoff_seconds: Linear backoff unit between attempts
            max_attempts: Attempts assigned to newly queued rows
            clock: Returns the current naive UTC time (injectable for tests)
        """
        self.backoff_seconds = backoff_seconds
        self.max_attempts = max_attempts
        self._clock = clock

    def enqueue(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        payload: Any,
        priority: int = 0,
    ) -> QueuedOperation:
        """
        Persist a new change for upload.

        Args:
            entity_type: Kind of business record
            entity_id: Identifier of the record
            action: Change kind
            payload: Opaque record data (str, bytes or JSON-serializable)
            priority: Higher values are uploaded first

        Returns:
            The created QueuedOperation
        """
        if not entity_type or not action:
            raise SyncQueueError(
                'entity_type and action are required',
                {'entity_type': entity_type, 'action': action},
            )

        payload_bytes, payload_format = serialize_payload(payload)
        now = self._clock()
        operation = QueuedOperation(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            payload=payload_bytes,
            payload_format=payload_format,
            priority=priority,
            attempts=0,
            max_attempts=self.max_attempts,
            next_attempt_at=now,
            created_at=now,
        )
        db.session.add(operation)
        db.session.commit()

        logger.debug(f"Queued {entity_type}:{entity_id} {action} as #{operation.id}")
        return operation

    def dequeue_pending(self, limit: int = 10) -> List[QueuedOperation]:
        """
        Get rows eligible for upload now, without changing them.

        Args:
            limit: Maximum number of rows to return

        Returns:
            Rows ordered by priority desc, created_at asc, id asc
        """
        now = self._clock()
        return QueuedOperation.query.filter(
            QueuedOperation.attempts < QueuedOperation.max_attempts,
            db.or_(
                QueuedOperation.next_attempt_at.is_(None),
                QueuedOperation.next_attempt_at <= now,
            ),
        ).order_by(
            QueuedOperation.priority.desc(),
            QueuedOperation.created_at.asc(),
            QueuedOperation.id.asc(),
        ).limit(limit).all()

    def mark_attempt(self, operation_id: int, error: Optional[str] = None) -> Optional[QueuedOperation]:
        """
        Record a failed upload attempt and schedule the next one.

        Args:
            operation_id: Queue row id
            error: Error description to store

        Returns:
            The updated row, or None if it no longer exists
        """
        operation = db.session.get(QueuedOperation, operation_id)
        if operation is None:
            logger.warning(f"mark_attempt on missing queue row #{operation_id}")
            return None

        now = self._clock()
        operation.attempts += 1
        operation.last_attempt_at = now
        operation.next_attempt_at = now + timedelta(
            seconds=operation.attempts * self.backoff_seconds
        )
        operation.error_message = error
        db.session.commit()

        if operation.is_stranded:
            logger.error(
                f"Queue row #{operation.id} ({operation.entity_type}:{operation.entity_id}) "
                f"stranded after {operation.attempts} attempts: {error}"
            )
        else:
            logger.warning(
                f"Upload of #{operation.id} failed (attempt {operation.attempts}), "
                f"next try at {operation.next_attempt_at.isoformat()}: {error}"
            )
        return operation

    def remove(self, operation_id: int) -> bool:
        """
        Delete a row after the control plane confirmed it.

        Returns:
            True if a row was deleted
        """
        deleted = QueuedOperation.query.filter_by(id=operation_id).delete()
        db.session.commit()
        return deleted > 0

    def get_stranded(self, limit: int = 100) -> List[QueuedOperation]:
        """Rows that used up their attempts, oldest first."""
        return QueuedOperation.query.filter(
            QueuedOperation.attempts >= QueuedOperation.max_attempts,
        ).order_by(
            QueuedOperation.created_at.asc(),
            QueuedOperation.id.asc(),
        ).limit(limit).all()

    def get_stranded_count(self) -> int:
        return QueuedOperation.query.filter(
            QueuedOperation.attempts >= QueuedOperation.max_attempts,
        ).count()

    def get_pending_count(self) -> int:
        """Number of rows still eligible for automatic retries."""
        return QueuedOperation.query.filter(
            QueuedOperation.attempts < QueuedOperation.max_attempts,
        ).count()

    def reset_stranded(self, operation_id: int) -> Optional[QueuedOperation]:
        """
        Make a stranded row eligible again (operator action).

        Args:
            operation_id: Queue row id

        Returns:
            The reset row, or None if it does not exist

        Raises:
            SyncQueueError: If the row is not stranded
        """
        operation = db.session.get(QueuedOperation, operation_id)
        if operation is None:
            return None
        if not operation.is_stranded:
            raise SyncQueueError(
                'Queue row is not stranded',
                {'id': operation_id, 'attempts': operation.attempts},
            )

        operation.attempts = 0
        operation.next_attempt_at = self._clock()
        operation.error_message = None
        db.session.commit()

        logger.info(f"Queue row #{operation_id} reset for retry")
        return operation

    def get_queue_status(self) -> Dict[str, Any]:
        """
        Summarize the queue for monitoring.

        Returns:
            Dict with pending, eligible and stranded counts plus the
            creation time of the oldest pending row
        """
        now = self._clock()
        pending = QueuedOperation.query.filter(
            QueuedOperation.attempts < QueuedOperation.max_attempts,
        )
        eligible = pending.filter(
            db.or_(
                QueuedOperation.next_attempt_at.is_(None),
                QueuedOperation.next_attempt_at <= now,
            ),
        ).count()
        oldest = pending.order_by(QueuedOperation.created_at.asc()).first()

        return {
            'pending': pending.count(),
            'eligible': eligible,
            'stranded': self.get_stranded_count(),
            'oldest_created_at': oldest.created_at.isoformat() if oldest else None,
        }

    def __repr__(self) -> str:
        return (
            f"SyncQueueManager(backoff_seconds={self.backoff_seconds}, "
            f"max_attempts={self.max_attempts})"
        )
