"""End-user reactions on assistant messages.

Written by the chat feedback endpoint (one row per message and user;
clearing a reaction deletes the row).  The training pipeline only reads
these rows to decide which assistant messages become training examples.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from staytune.database import Base


class FeedbackReaction(StrEnum):
    LIKE = "like"
    DISLIKE = "dislike"


class MessageFeedback(Base):
    __tablename__ = "message_feedback"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    message_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    reaction: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        comment="like | dislike",
    )
    reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    comment: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_message_feedback_message_user"),
        Index("ix_message_feedback_message_reaction", "message_id", "reaction"),
    )

    def __repr__(self) -> str:
        return f"<MessageFeedback id={self.id} message={self.message_id} reaction={self.reaction}>"
