"""
Invitation attempt model.

One row per support conversation. The unique conversation_id is the
only concurrency control: a second insert for the same conversation
fails and falls back to reading the existing row.
"""
import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Integer, String, Text, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin


class InvitationStatus(str, enum.Enum):
    """Invitation attempt lifecycle."""
    PENDING = "pending"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({InvitationStatus.SUCCESS, InvitationStatus.FAILED})
ACTIVE_STATUSES = frozenset({InvitationStatus.PENDING, InvitationStatus.RETRYING})


class InvitationAttempt(Base, TimestampMixin):
    """Review invitation attempt for a single conversation."""
    __tablename__ = "invitation_attempts"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    conversation_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True
    )
    contact_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(320), nullable=False, default="")
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    agent_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[InvitationStatus] = mapped_column(
        SQLEnum(InvitationStatus, native_enum=False, length=20),
        nullable=False,
        default=InvitationStatus.PENDING,
        index=True
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_invitation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    response_log: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return (
            f"<InvitationAttempt(conversation_id={self.conversation_id}, "
            f"status={self.status}, retry_count={self.retry_count})>"
        )
