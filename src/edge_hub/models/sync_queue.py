"""
QueuedOperation database model for the durable outbound sync queue.

Locally originated changes (checks, payments, time entries) are persisted
here before any upload attempt and stay until the control plane confirms
them. Rows are hard-deleted on success; there is no "sent" state.

Eligibility for upload is gated by next_attempt_at, and a row whose
attempts reached max_attempts is stranded: it is no longer dequeued but
remains visible for inspection.
"""

import base64
import json

from edge_hub.models import db, utcnow


DEFAULT_MAX_ATTEMPTS = 10

# How the stored payload bytes are read back
PAYLOAD_JSON = 'json'
PAYLOAD_TEXT = 'text'
PAYLOAD_BINARY = 'binary'


class QueuedOperation(db.Model):
    """
    A pending upload of one local state change.

    Attributes:
        id: Primary key (monotonic, used as ordering tie-breaker)
        entity_type: Kind of business record ('check', 'payment', ...)
        entity_id: Identifier of the record within its type
        action: Change kind ('create', 'update', 'delete', ...)
        payload: Opaque record bytes (UTF-8 text, JSON or raw binary)
        payload_format: PAYLOAD_JSON, PAYLOAD_TEXT or PAYLOAD_BINARY
        priority: Higher values are uploaded first
        attempts: Number of failed upload attempts (only increases)
        max_attempts: Attempts after which the row is stranded
        last_attempt_at: When the last upload attempt was made
        next_attempt_at: Row is not eligible before this time
        error_message: Last upload error
        created_at: When the change was queued
    """
    __tablename__ = 'sync_queue'

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(64), nullable=False, index=True)
    entity_id = db.Column(db.String(128), nullable=False)
    action = db.Column(db.String(32), nullable=False)
    payload = db.Column(db.LargeBinary, nullable=False, default=b'')
    payload_format = db.Column(db.String(16), nullable=False, default=PAYLOAD_JSON)

    priority = db.Column(db.Integer, nullable=False, default=0)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    max_attempts = db.Column(db.Integer, nullable=False, default=DEFAULT_MAX_ATTEMPTS)

    last_attempt_at = db.Column(db.DateTime, nullable=True)
    next_attempt_at = db.Column(db.DateTime, nullable=True, index=True)
    error_message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    @property
    def is_stranded(self) -> bool:
        """True once the row has used up its attempts."""
        return self.attempts >= self.max_attempts

    def payload_data(self):
        """
        Read the payload back in the form it was queued.

        Returns:
            Parsed JSON value, str for text payloads, bytes for binary
            payloads, or None when the payload is empty
        """
        if not self.payload:
            return None
        if self.payload_format == PAYLOAD_BINARY:
            return bytes(self.payload)
        text = bytes(self.payload).decode('utf-8')
        if self.payload_format == PAYLOAD_TEXT:
            return text
        return json.loads(text)

    def payload_text(self):
        """Payload as a JSON-safe string (base64 for binary payloads)."""
        if self.payload_format == PAYLOAD_BINARY:
            return base64.b64encode(self.payload or b'').decode('ascii')
        return bytes(self.payload or b'').decode('utf-8')

    def to_dict(self):
        """
        Serialize model to dictionary for JSON responses.

        Returns:
            dict: Queue entry including retry state
        """
        return {
            'id': self.id,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'action': self.action,
            'payload': self.payload_text(),
            'payload_format': self.payload_format,
            'priority': self.priority,
            'attempts': self.attempts,
            'max_attempts': self.max_attempts,
            'last_attempt_at': self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            'next_attempt_at': self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            'error_message': self.error_message,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return (
            f'<QueuedOperation {self.id} {self.entity_type}:{self.entity_id} '
            f'{self.action} attempts={self.attempts}>'
        )
