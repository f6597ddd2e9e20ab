"""Tests for the fine-tuning dataset builder."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

from staytune.models import ExampleSource
from staytune.training.dataset import (
    GENERIC_SYSTEM_PROMPT,
    SUMMARY_INSTRUCTION,
    build_dataset,
    system_prompt,
)
from tests.conftest import make_example, make_tenant


class TestSystemPrompt:
    def test_branded_with_tenant_name(self) -> None:
        prompt = system_prompt("Hotel Aurora", "conversation")
        assert "Hotel Aurora" in prompt
        assert SUMMARY_INSTRUCTION not in prompt

    def test_generic_without_name(self) -> None:
        assert system_prompt(None, "conversation") == GENERIC_SYSTEM_PROMPT
        assert system_prompt("   ", "conversation") == GENERIC_SYSTEM_PROMPT

    def test_summary_source_adds_consistency_instruction(self) -> None:
        prompt = system_prompt("Hotel Aurora", ExampleSource.CONVERSATION_SUMMARY.value)
        assert prompt.endswith(SUMMARY_INSTRUCTION)


class TestBuildDataset:
    async def test_three_turn_records(self, db) -> None:
        tenant = await make_tenant(db, "Hotel Aurora")
        await make_example(
            db,
            tenant,
            input_text="Do you allow pets?",
            output_text="Dogs under 10 kg are welcome.",
            score=0.9,
            metadata_={"conversation_id": "c-1", "message_id": "m-1", "extra": {"channel": "web"}},
        )

        dataset = await build_dataset(db, tenant.id)

        assert len(dataset) == 1
        record = dataset[0]
        roles = [m["role"] for m in record["messages"]]
        assert roles == ["system", "user", "assistant"]
        assert "Hotel Aurora" in record["messages"][0]["content"]
        assert record["messages"][1]["content"] == "Do you allow pets?"
        assert record["messages"][2]["content"] == "Dogs under 10 kg are welcome."
        assert record["metadata"] == {
            "source": "conversation",
            "score": 0.9,
            "conversation_id": "c-1",
            "message_id": "m-1",
            "channel": "web",
        }

    async def test_skips_examples_without_text(self, db, tenant) -> None:
        await make_example(db, tenant, input_text="", output_text="orphan answer")
        await make_example(db, tenant, input_text="question", output_text="   ")
        await make_example(db, tenant)

        dataset = await build_dataset(db, tenant.id)

        assert len(dataset) == 1

    async def test_empty_for_tenant_without_examples(self, db, tenant) -> None:
        other = await make_tenant(db, "Other")
        await make_example(db, other)

        dataset = await build_dataset(db, tenant.id)

        assert len(dataset) == 0
        assert not dataset
        assert dataset.to_jsonl() == b""

    async def test_jsonl_is_one_record_per_line(self, db, tenant) -> None:
        now = datetime.now(UTC)
        await make_example(db, tenant, output_text="first", updated_at=now - timedelta(minutes=1))
        await make_example(db, tenant, output_text="second", updated_at=now)

        dataset = await build_dataset(db, tenant.id)
        lines = dataset.to_jsonl().decode("utf-8").strip().split("\n")

        assert len(lines) == 2
        assert [json.loads(line)["messages"][2]["content"] for line in lines] == ["first", "second"]

    async def test_dataset_is_restartable(self, db, tenant) -> None:
        await make_example(db, tenant)

        dataset = await build_dataset(db, tenant.id)

        assert list(dataset) == list(dataset)
