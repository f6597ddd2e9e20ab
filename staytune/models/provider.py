"""Per-tenant provider preferences.

One row per (tenant, provider).  ``default_model`` is what chat requests
use when the user does not pick a model; model activation writes the
freshly trained model here so it takes effect without further setup.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import Boolean, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from staytune.database import Base


class Provider(StrEnum):
    OPENAI = "openai"


class ProviderPreference(Base):
    __tablename__ = "provider_preferences"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true",
    )
    default_model: Mapped[str | None] = mapped_column(String(200), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", name="uq_provider_preferences_tenant_provider"),
    )

    def __repr__(self) -> str:
        return f"<ProviderPreference tenant={self.tenant_id} provider={self.provider} model={self.default_model!r}>"
