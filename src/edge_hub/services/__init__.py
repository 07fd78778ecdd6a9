"""
Service layer for the Store Edge Hub.

This module provides services for:
- Control plane communication (CloudConnection)
- Durable outbound sync queue and its upload worker
- Advisory check locks shared by terminals
- Package deployment (download, verify, extract, install, report)

Base exception classes are defined here for consistent error handling
across all services.

Example:
    from edge_hub.services import CloudClientError
    from edge_hub.services.cloud_connection import CloudConnection

    try:
        cloud.post('/api/sync/transactions', body)
    except CloudClientError as e:
        logger.error(f"Upload failed: {e}")
"""

from typing import Optional


class ServiceError(Exception):
    """
    Base exception for all service layer errors.

    All service-specific exceptions should inherit from this class
    to allow catching any service error with a single except clause.
    """

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class CloudClientError(ServiceError):
    """
    Exception raised when control plane communication fails.

    This includes network errors, authentication failures,
    timeout errors, and unexpected API responses. Callers treat the
    whole family as transient and retry through backoff or cooldown.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code
        self.response_body = response_body


class CloudAuthenticationError(CloudClientError):
    """
    Exception raised when the control plane rejects the host token.
    """

    pass


class CloudTimeoutError(CloudClientError):
    """
    Exception raised when a control plane request times out.
    """

    pass


class CloudConnectionError(CloudClientError):
    """
    Exception raised when connection to the control plane fails.

    This indicates network-level failures such as
    DNS resolution failures or connection refused.
    """

    pass


class SyncQueueError(ServiceError):
    """
    Exception raised for invalid sync queue operations.
    """

    pass


class DeploymentError(ServiceError):
    """
    Exception raised when a deployment task fails.

    Raised for unknown actions, extraction failures and file system
    errors. Caught at the orchestrator worker boundary and reported
    as a failed status.
    """

    pass


class PackageIntegrityError(DeploymentError):
    """
    Exception raised when a downloaded package does not match its checksum.
    """

    def __init__(self, message: str, expected: str, actual: str):
        super().__init__(message, {'expected': expected, 'actual': actual})
        self.expected = expected
        self.actual = actual


class ScriptExecutionError(DeploymentError):
    """
    Exception raised when an install script exits with a non-zero code.

    Carries the exit code and the captured output so the failure
    status can include the full log.
    """

    def __init__(self, message: str, exit_code: int, log_output: str = ''):
        super().__init__(message, {'exit_code': exit_code})
        self.exit_code = exit_code
        self.log_output = log_output


# Import services as they are created
from edge_hub.services.cloud_connection import CloudConnection  # noqa: E402
from edge_hub.services.sync_queue import SyncQueueManager  # noqa: E402
from edge_hub.services.check_locks import CheckLockManager  # noqa: E402
from edge_hub.services.transaction_sync import TransactionSync  # noqa: E402

__all__ = [
    # Exception classes
    'ServiceError',
    'CloudClientError',
    'CloudAuthenticationError',
    'CloudTimeoutError',
    'CloudConnectionError',
    'SyncQueueError',
    'DeploymentError',
    'PackageIntegrityError',
    'ScriptExecutionError',
    # Service classes
    'CloudConnection',
    'SyncQueueManager',
    'CheckLockManager',
    'TransactionSync',
]
