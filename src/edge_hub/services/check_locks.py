"""
Check Lock Manager - advisory locks on shared checks.

A terminal calls acquire() before mutating a check and release() when it
is done. Locks are leases: they expire after duration_seconds and are
never renewed automatically, so an edit session that outlives its lease
silently loses exclusivity. Expired rows are purged lazily on acquire.

Contention is reported as a boolean, not an exception.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError

from edge_hub.models import db, utcnow
from edge_hub.models.check_lock import CheckLock


logger = logging.getLogger(__name__)


DEFAULT_LOCK_DURATION_SECONDS = 300


class CheckLockManager:
    """Acquire, release and inspect check locks. Needs an app context."""

    def __init__(
        self,
        default_duration_seconds: int = DEFAULT_LOCK_DURATION_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.default_duration_seconds = default_duration_seconds
        self._clock = clock

    def _purge_expired(self, now: datetime) -> int:
        purged = CheckLock.query.filter(CheckLock.expires_at < now).delete()
        if purged:
            logger.debug(f"Purged {purged} expired check locks")
        return purged

    def acquire(
        self,
        check_id: str,
        holder_id: str,
        employee_id: Optional[str] = None,
        duration_seconds: Optional[int] = None,
        lock_type: str = 'active',
    ) -> bool:
        """
        Take or renew the lock on a check.

        Args:
            check_id: Check to lock
            holder_id: Terminal requesting the lock
            employee_id: Employee operating the terminal
            duration_seconds: Lease length (defaults to the manager's default)
            lock_type: Kind of lock

        Returns:
            True if the caller now holds the lock, False if another
            terminal holds a live lock on the check
        """
        if duration_seconds is None:
            duration_seconds = self.default_duration_seconds

        now = self._clock()
        expires_at = now + timedelta(seconds=duration_seconds)

        self._purge_expired(now)

        lock = db.session.get(CheckLock, check_id)
        if lock is not None and lock.holder_id != holder_id:
            db.session.commit()
            logger.info(f"Check {check_id} is locked by {lock.holder_id}, denied to {holder_id}")
            return False

        if lock is None:
            lock = CheckLock(check_id=check_id, holder_id=holder_id)
            db.session.add(lock)

        lock.employee_id = employee_id
        lock.lock_type = lock_type
        lock.acquired_at = now
        lock.expires_at = expires_at

        try:
            db.session.commit()
        except IntegrityError:
            # Another writer inserted the same check_id first
            db.session.rollback()
            logger.info(f"Lost lock race on check {check_id} for {holder_id}")
            return False

        logger.debug(f"Check {check_id} locked by {holder_id} until {expires_at.isoformat()}")
        return True

    def release(self, check_id: str, holder_id: str) -> bool:
        """
        Release a lock held by the given terminal.

        Returns:
            True if a lock was deleted
        """
        deleted = CheckLock.query.filter_by(check_id=check_id, holder_id=holder_id).delete()
        db.session.commit()
        return deleted > 0

    def release_all(self, holder_id: str) -> int:
        """
        Release every lock held by one terminal (e.g., on sign-out).

        Returns:
            Number of locks deleted
        """
        deleted = CheckLock.query.filter_by(holder_id=holder_id).delete()
        db.session.commit()
        if deleted:
            logger.info(f"Released {deleted} check locks held by {holder_id}")
        return deleted

    def get(self, check_id: str) -> Optional[CheckLock]:
        """Return the live lock on a check, or None if unlocked or expired."""
        lock = db.session.get(CheckLock, check_id)
        if lock is None or lock.is_expired(self._clock()):
            return None
        return lock

    def get_lock_info(self, check_id: str) -> Dict[str, Any]:
        lock = self.get(check_id)
        return {
            'locked': lock is not None,
            'lock': lock.to_dict() if lock else None,
        }
