"""
Base model classes for the invitation pipeline.

Provides the SQLAlchemy declarative base, a UTC clock and the
timestamp mixin shared by the tables.
"""
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""
    type_annotation_map = {
        dict[str, Any]: JSON,
    }


class TimestampMixin:
    """
    Mixin that adds created_at and updated_at timestamps to models.

    Timestamps are stamped client-side (microsecond precision keeps the
    newest-first listing stable) with a server default as backstop.
    """
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False
    )
