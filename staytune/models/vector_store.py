"""Tenant knowledge (vector) store records.

Each row mirrors one remote vector store owned by the provider.  Exactly
one store per tenant is the default; training examples are attached to it.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from staytune.database import Base, JSONType


class TenantVectorStore(Base):
    __tablename__ = "tenant_vector_stores"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False, default="openai")
    remote_id: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        unique=True,
        comment="Provider-side vector store identifier",
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)
    is_default: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )

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
        Index("ix_tenant_vector_stores_tenant_default", "tenant_id", "is_default"),
    )

    def __repr__(self) -> str:
        return f"<TenantVectorStore id={self.id} remote={self.remote_id!r} default={self.is_default}>"
