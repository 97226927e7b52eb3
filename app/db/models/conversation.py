"""
Conversation Model - per-user lifecycle state
"""
from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
)

from app.core.clock import utcnow
from app.db.database import Base


class Conversation(Base):
    """
    One ongoing interaction with a user.

    ``close_at`` and ``close_job_id`` are set together, and only while the
    conversation is ``waiting_close``; the CHECK constraint below rejects any
    write that breaks this.
    """

    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    state = Column(String(30), nullable=False, default="idle")
    # Tagged variant, see app.state_machine.context
    context = Column(JSON, nullable=False, default=lambda: {"kind": "idle"})

    close_at = Column(DateTime, nullable=True)
    close_job_id = Column(String(64), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "state IN ('idle', 'awaiting_confirmation', 'awaiting_batch_item', "
            "'waiting_close', 'closed')",
            name="valid_state",
        ),
        CheckConstraint(
            "(state = 'waiting_close' AND close_at IS NOT NULL AND close_job_id IS NOT NULL) "
            "OR (state <> 'waiting_close' AND close_at IS NULL AND close_job_id IS NULL)",
            name="close_fields_match_state",
        ),
        # sweep lookups
        Index("ix_conversations_state_close_at", "state", "close_at"),
        Index("ix_conversations_state_updated_at", "state", "updated_at"),
    )
