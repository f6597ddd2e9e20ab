"""Typed payloads and results for the training pipeline.

Example metadata is a fixed set of known fields plus an open extension map
restricted to scalar values, so it round-trips through JSON columns and
vector-store attributes without carrying arbitrary nested data.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

Scalar = str | int | float | bool | None


class ExampleMetadata(BaseModel):
    """Metadata stored on a TrainingExample."""

    model_config = ConfigDict(extra="forbid")

    conversation_id: str | None = None
    message_id: str | None = None
    reaction: str | None = None
    extra: dict[str, Scalar] = Field(default_factory=dict)

    @classmethod
    def from_stored(cls, data: dict[str, Any] | None) -> ExampleMetadata:
        """Parse a stored JSON map; unknown top-level scalars go to ``extra``."""
        data = dict(data or {})
        known: dict[str, str | None] = {}
        for key in ("conversation_id", "message_id", "reaction"):
            if key in data:
                value = data.pop(key)
                known[key] = None if value is None else str(value)
        extra = {
            k: v
            for k, v in (data.pop("extra", None) or {}).items()
            if isinstance(v, (str, int, float, bool)) or v is None
        }
        for key, value in data.items():
            if isinstance(value, (str, int, float, bool)) or value is None:
                extra[key] = value
        return cls(**known, extra=extra)

    def to_stored(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def flatten(self) -> dict[str, Scalar]:
        """Known fields and extensions as one flat map (None values dropped)."""
        flat: dict[str, Scalar] = {}
        if self.conversation_id is not None:
            flat["conversation_id"] = self.conversation_id
        if self.message_id is not None:
            flat["message_id"] = self.message_id
        if self.reaction is not None:
            flat["reaction"] = self.reaction
        for key, value in self.extra.items():
            if value is not None:
                flat.setdefault(key, value)
        return flat


@dataclass(frozen=True)
class CollectResult:
    created: int = 0
    updated: int = 0


@dataclass(frozen=True)
class SyncResult:
    uploaded: int = 0
    failed: int = 0


@dataclass(frozen=True)
class RefreshResult:
    checked: int = 0
    updated: int = 0
    activated: int = 0
    errors: int = 0


@dataclass(frozen=True)
class ResetResult:
    scope: str
    examples_deleted: int = 0
    attachments_deleted: int = 0
    messages_cleared: int = 0
    models_retired: int = 0
    jobs_canceled: int = 0
