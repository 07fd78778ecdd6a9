"""
Transaction Sync Service - uploads the sync queue to the control plane.

This module provides the TransactionSync worker that drains the durable
sync queue in small batches. It handles:
- Uploading eligible queue rows as POST /api/sync/transactions
- Deleting rows once the control plane accepted them
- Recording failed attempts so the queue applies its linear backoff
- Convenience enqueuers for checks, payments and time entries

The worker is driven by the background scheduler every
sync_interval_seconds (5 by default).

Example:
    from edge_hub.services.transaction_sync import TransactionSync

    sync = TransactionSync(queue, cloud, batch_size=10)
    sync.queue_check('chk-42', {'total': 1250})
    result = sync.process_queue()
"""

import logging
from typing import Any, Dict

from edge_hub.models import utcnow
from edge_hub.models.sync_queue import PAYLOAD_BINARY, QueuedOperation
from edge_hub.services.cloud_connection import CloudConnection
from edge_hub.services.sync_queue import SyncQueueManager


logger = logging.getLogger(__name__)


SYNC_ENDPOINT = '/api/sync/transactions'

# Default number of rows uploaded per cycle
DEFAULT_BATCH_SIZE = 10


class TransactionSync:
    """
    Uploads queued local changes and reconciles the queue with the result.

    Attributes:
        queue: SyncQueueManager owning the rows
        cloud: CloudConnection used for uploads
        batch_size: Maximum rows uploaded per cycle
    """

    def __init__(
        self,
        queue: SyncQueueManager,
        cloud: CloudConnection,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self.queue = queue
        self.cloud = cloud
        self.batch_size = batch_size

    def queue_check(self, check_id: str, data: Any, action: str = 'upsert') -> QueuedOperation:
        """Queue a check change. Checks go ahead of other records."""
        return self.queue.enqueue('check', check_id, action, data, priority=1)

    def queue_payment(self, payment_id: str, data: Any, action: str = 'create') -> QueuedOperation:
        """Queue a payment. Payments have the highest priority."""
        return self.queue.enqueue('payment', payment_id, action, data, priority=2)

    def queue_time_entry(self, entry_id: str, data: Any, action: str = 'upsert') -> QueuedOperation:
        return self.queue.enqueue('time_entry', entry_id, action, data, priority=0)

    def upload_operation(self, operation: QueuedOperation) -> bool:
        """
        Upload a single queue row.

        On success the row is deleted. On any failure the attempt is
        recorded and the row stays queued.

        Args:
            operation: Row to upload

        Returns:
            True if the control plane accepted the row
        """
        body = {
            'type': operation.entity_type,
            'action': operation.action,
            'entityId': operation.entity_id,
        }
        if operation.payload_format == PAYLOAD_BINARY:
            body['data'] = operation.payload_text()
            body['dataEncoding'] = 'base64'
        else:
            body['data'] = operation.payload_data()

        try:
            self.cloud.post(SYNC_ENDPOINT, data=body)
        except Exception as e:
            self.queue.mark_attempt(operation.id, error=str(e))
            return False

        logger.debug(
            f"Synced {operation.entity_type}:{operation.entity_id} ({operation.action})"
        )
        self.queue.remove(operation.id)
        return True

    def process_queue(self) -> Dict[str, Any]:
        """
        Upload one batch of eligible rows.

        Returns:
            Dictionary with processing results:
            - processed: Number of rows attempted
            - succeeded: Number accepted and removed
            - failed: Number left queued for retry
            - skipped: True when the hub has no credentials yet
        """
        result = {
            'processed': 0,
            'succeeded': 0,
            'failed': 0,
            'skipped': False,
            'started_at': utcnow().isoformat(),
        }

        if not self.cloud.is_configured:
            logger.debug("Cloud credentials not configured, skipping sync cycle")
            result['skipped'] = True
            return result

        operations = self.queue.dequeue_pending(self.batch_size)
        if not operations:
            return result

        logger.info(f"Uploading {len(operations)} queued operations")

        for operation in operations:
            result['processed'] += 1
            if self.upload_operation(operation):
                result['succeeded'] += 1
            else:
                result['failed'] += 1

        logger.info(
            f"Sync cycle completed: {result['succeeded']} succeeded, "
            f"{result['failed']} failed out of {result['processed']} processed"
        )
        return result

    def __repr__(self) -> str:
        return f"TransactionSync(batch_size={self.batch_size})"
