"""Fine-tune job and fine-tuned model persistence.

FineTuneJob rows track one attempt to specialize a model for a tenant,
from dataset upload through the provider's remote job.  FineTuneModel
rows are the models those jobs produced; at most one per (tenant,
provider) is active and that one is what chat requests use.

Both "at most one" rules are backed by partial unique indexes so that
concurrent schedulers or activations on different instances cannot
violate them.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from staytune.database import Base, JSONType


class FineTuneStatus(StrEnum):
    """Lifecycle of a fine-tune job.

    Lifecycle::

        pending -> uploading -> running -> succeeded
                                        -> failed
        pending -> canceled  (no training data)
        (any step) -> failed
    """

    PENDING = "pending"
    UPLOADING = "uploading"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


#: Statuses that still count as "in flight" for a tenant.
IN_FLIGHT_STATUSES = (
    FineTuneStatus.PENDING,
    FineTuneStatus.UPLOADING,
    FineTuneStatus.RUNNING,
)

TERMINAL_STATUSES = (
    FineTuneStatus.SUCCEEDED,
    FineTuneStatus.FAILED,
    FineTuneStatus.CANCELED,
)

_IN_FLIGHT_SQL = text("status IN ('pending', 'uploading', 'running')")
_ACTIVE_SQL = text("status = 'active'")


class FineTuneModelStatus(StrEnum):
    ACTIVE = "active"
    RETIRED = "retired"


class FineTuneJob(Base):
    __tablename__ = "fine_tune_jobs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Owning tenant - all queries must filter on this column",
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="openai")

    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=FineTuneStatus.PENDING.value,
        server_default=FineTuneStatus.PENDING.value,
        comment="pending | uploading | running | succeeded | failed | canceled",
    )

    dataset_file_id: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        comment="Provider file id of the uploaded dataset; kept even when later steps fail",
    )
    remote_job_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    base_model: Mapped[str | None] = mapped_column(String(200), nullable=True)
    resulting_model: Mapped[str | None] = mapped_column(String(200), nullable=True)
    example_count: Mapped[int | None] = mapped_column(nullable=True)

    error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Operator-facing error; provider payloads serialized as JSON",
    )

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
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
        Index("ix_fine_tune_jobs_tenant_status", "tenant_id", "status"),
        Index("ix_fine_tune_jobs_tenant_created", "tenant_id", "created_at"),
        # At most one in-flight job per tenant
        Index(
            "uq_fine_tune_jobs_tenant_in_flight",
            "tenant_id",
            unique=True,
            postgresql_where=_IN_FLIGHT_SQL,
            sqlite_where=_IN_FLIGHT_SQL,
        ),
    )

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("id", uuid.uuid4())
        kwargs.setdefault("provider", "openai")
        kwargs.setdefault("status", FineTuneStatus.PENDING.value)
        now = datetime.now(UTC)
        kwargs.setdefault("created_at", now)
        kwargs.setdefault("updated_at", now)
        super().__init__(**kwargs)

    @property
    def is_in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES

    def __repr__(self) -> str:
        return (
            f"<FineTuneJob id={self.id} "
            f"tenant={self.tenant_id} "
            f"status={self.status!r} "
            f"remote={self.remote_job_id!r}>"
        )


class FineTuneModel(Base):
    __tablename__ = "fine_tune_models"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="openai")
    job_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("fine_tune_jobs.id", ondelete="SET NULL"),
        nullable=True,
    )
    model_id: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        comment="Remote identifier of the fine-tuned model",
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=FineTuneModelStatus.ACTIVE.value,
        comment="active | retired",
    )
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)

    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
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
        UniqueConstraint(
            "tenant_id", "provider", "model_id", name="uq_fine_tune_models_tenant_provider_model"
        ),
        Index("ix_fine_tune_models_tenant_provider", "tenant_id", "provider"),
        # At most one active model per (tenant, provider)
        Index(
            "uq_fine_tune_models_tenant_provider_active",
            "tenant_id",
            "provider",
            unique=True,
            postgresql_where=_ACTIVE_SQL,
            sqlite_where=_ACTIVE_SQL,
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<FineTuneModel id={self.id} "
            f"tenant={self.tenant_id} "
            f"model={self.model_id!r} "
            f"status={self.status!r}>"
        )
