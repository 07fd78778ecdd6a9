"""
CheckLock database model for advisory locks on shared checks.

Many terminals may open the same in-flight check. A terminal takes a
lease here before mutating it; the lease expires on its own after a
fixed duration and is never renewed.
"""

from edge_hub.models import db, utcnow


class CheckLock(db.Model):
    """
    Lease held by one terminal on one check.

    Attributes:
        check_id: Locked check (primary key, so at most one row per check)
        holder_id: Terminal (workstation) holding the lock
        employee_id: Employee operating the holder terminal
        lock_type: Kind of lock, 'active' for edit sessions
        acquired_at: When the lease was taken or last renewed
        expires_at: When the lease lapses
    """
    __tablename__ = 'check_locks'

    check_id = db.Column(db.String(128), primary_key=True)
    holder_id = db.Column(db.String(128), nullable=False, index=True)
    employee_id = db.Column(db.String(128), nullable=True)
    lock_type = db.Column(db.String(32), nullable=False, default='active')
    acquired_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)

    def is_expired(self, now=None) -> bool:
        """Check whether the lease has lapsed at the given time."""
        return self.expires_at < (now or utcnow())

    def to_dict(self):
        return {
            'check_id': self.check_id,
            'holder_id': self.holder_id,
            'employee_id': self.employee_id,
            'lock_type': self.lock_type,
            'acquired_at': self.acquired_at.isoformat() if self.acquired_at else None,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
        }

    def __repr__(self):
        return f'<CheckLock {self.check_id} held by {self.holder_id}>'
