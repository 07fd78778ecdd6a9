"""
SQLAlchemy database models for the Store Edge Hub.

This module provides the database foundation including:
- Base: DeclarativeBase for all models to inherit from
- db: SQLAlchemy instance for database operations
- utcnow: naive UTC timestamp used for every stored datetime

Example:
    from edge_hub.models import db, QueuedOperation

    pending = QueuedOperation.query.count()
"""

from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    All models should inherit from db.Model which uses this Base class.
    """
    pass


# SQLAlchemy database instance
db = SQLAlchemy(model_class=Base)


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (SQLite stores no offset)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Models are imported after db is defined to avoid circular imports
from edge_hub.models.sync_queue import QueuedOperation  # noqa: E402
from edge_hub.models.check_lock import CheckLock  # noqa: E402

__all__ = ['db', 'Base', 'utcnow', 'QueuedOperation', 'CheckLock']
