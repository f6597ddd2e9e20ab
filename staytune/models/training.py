"""Training example persistence model.

One row per supervised example derived from tenant feedback: the user
turn that prompted an assistant answer, the liked answer itself, a score,
and the bookkeeping of its upload to the tenant's knowledge store.

All reads MUST filter on tenant_id - it is the isolation boundary.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import DateTime, Float, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from staytune.database import Base, JSONType


class ExampleSource(StrEnum):
    """Where a training example came from."""

    CONVERSATION = "conversation"
    CONVERSATION_SUMMARY = "conversation_summary"


class VectorStatus(StrEnum):
    """Upload state of an example in the tenant knowledge store.

    Transitions::

        pending -> uploading -> uploaded
                             -> failed -> uploading (retry)

    ``uploaded`` only goes away through a vector reset.
    """

    PENDING = "pending"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    FAILED = "failed"


class TrainingExample(Base):
    __tablename__ = "training_examples"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    source: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=ExampleSource.CONVERSATION.value,
        comment="conversation | conversation_summary",
    )

    # Unique: re-collecting the same message updates instead of duplicating
    message_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("messages.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )

    input_text: Mapped[str] = mapped_column(Text, nullable=False)
    output_text: Mapped[str] = mapped_column(Text, nullable=False)
    score: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Serialized ExampleMetadata (known fields plus a scalar extension map)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
    )

    # Status stored as VARCHAR (avoids enum migration pain)
    vector_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=VectorStatus.PENDING.value,
        server_default=VectorStatus.PENDING.value,
    )
    vector_file_id: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        comment="Knowledge-store attachment id returned by the provider",
    )
    vector_uploaded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        # Vector sync batch query: pending/failed rows for a tenant
        Index("ix_training_examples_tenant_vector_status", "tenant_id", "vector_status"),
    )

    def __init__(self, **kwargs: Any) -> None:
        """Initialize with Python-level defaults.

        mapped_column(default=...) only fires on INSERT, so set the same
        defaults here to make new objects usable before the first flush.
        """
        kwargs.setdefault("id", uuid.uuid4())
        kwargs.setdefault("source", ExampleSource.CONVERSATION.value)
        kwargs.setdefault("vector_status", VectorStatus.PENDING.value)
        kwargs.setdefault("metadata_", {})
        now = datetime.now(UTC)
        kwargs.setdefault("created_at", now)
        kwargs.setdefault("updated_at", now)
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return (
            f"<TrainingExample id={self.id} "
            f"tenant={self.tenant_id} "
            f"message={self.message_id} "
            f"vector_status={self.vector_status!r}>"
        )
