"""
Aggregate invitation counters.

A single row keyed "global". Counters are only ever changed with
atomic column increments inside the transaction of the transition
that caused them.
"""
from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, utcnow


STATS_ROW_ID = "global"


class SystemStats(Base):
    """Process-wide invitation counters."""
    __tablename__ = "system_stats"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=STATS_ROW_ID)
    total_invites: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_invites: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_invites: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow
    )

    def __repr__(self):
        return (
            f"<SystemStats(total={self.total_invites}, success={self.successful_invites}, "
            f"failed={self.failed_invites})>"
        )
