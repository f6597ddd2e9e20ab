"""Dataset builder: training examples -> chat fine-tuning records.

Each usable example becomes one three-turn exchange (system, user,
assistant) plus a metadata object.  Examples without input or output text
are skipped.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Iterable, Iterator, Sequence
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from staytune.models.tenant import Tenant
from staytune.models.training import ExampleSource, TrainingExample
from staytune.training.schemas import ExampleMetadata

GENERIC_SYSTEM_PROMPT = (
    "You are a helpful hospitality assistant. Answer guest and staff questions "
    "accurately, politely and concisely."
)
BRANDED_SYSTEM_PROMPT = (
    "You are the assistant for {name}. Answer guest and staff questions about "
    "{name} accurately, politely and concisely."
)
SUMMARY_INSTRUCTION = (
    " Stay consistent with the summary of the prior conversation provided by the user."
)


def system_prompt(tenant_name: str | None, source: str) -> str:
    name = (tenant_name or "").strip()
    prompt = BRANDED_SYSTEM_PROMPT.format(name=name) if name else GENERIC_SYSTEM_PROMPT
    if source == ExampleSource.CONVERSATION_SUMMARY:
        prompt += SUMMARY_INSTRUCTION
    return prompt


def build_record(example: TrainingExample, tenant_name: str | None) -> dict[str, Any] | None:
    """One fine-tuning record, or None when the example is not a usable pair."""
    user_text = (example.input_text or "").strip()
    assistant_text = (example.output_text or "").strip()
    if not user_text or not assistant_text:
        return None

    metadata: dict[str, Any] = {"source": example.source, "score": example.score}
    for key, value in ExampleMetadata.from_stored(example.metadata_).flatten().items():
        metadata.setdefault(key, value)

    return {
        "messages": [
            {"role": "system", "content": system_prompt(tenant_name, example.source)},
            {"role": "user", "content": user_text},
            {"role": "assistant", "content": assistant_text},
        ],
        "metadata": metadata,
    }


class Dataset(Sequence[dict[str, Any]]):
    """Materialized, re-iterable dataset for one tenant."""

    def __init__(self, records: Iterable[dict[str, Any]]) -> None:
        self._records = list(records)

    def __len__(self) -> int:
        return len(self._records)

    def __getitem__(self, index):  # type: ignore[override]
        return self._records[index]

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self._records)

    def to_jsonl(self) -> bytes:
        """Serialize as JSON Lines, one record per line."""
        lines = (json.dumps(record, ensure_ascii=False) for record in self._records)
        return ("\n".join(lines) + "\n").encode("utf-8") if self._records else b""


async def build_dataset(db: AsyncSession, tenant_id: uuid.UUID) -> Dataset:
    """Build the fine-tuning dataset from the tenant's current examples."""
    tenant = await db.get(Tenant, tenant_id)
    tenant_name = tenant.name if tenant is not None else None

    result = await db.execute(
        select(TrainingExample)
        .where(TrainingExample.tenant_id == tenant_id)
        .order_by(TrainingExample.created_at.asc(), TrainingExample.id.asc())
    )
    records = (build_record(example, tenant_name) for example in result.scalars())
    return Dataset(record for record in records if record is not None)
