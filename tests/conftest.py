"""Shared test fixtures.

Pipeline tests run against a real in-memory SQLite database (aiosqlite,
one shared connection) with every table created from the ORM metadata.
Remote provider calls go to FakeProviderClient, which records them and
can be told to fail specific calls.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

import staytune.models  # noqa: F401 - registers all models with Base.metadata
from staytune.config import Environment, Settings
from staytune.database import Base, build_engine, build_session_factory
from staytune.models import (
    Conversation,
    FeedbackReaction,
    Message,
    MessageFeedback,
    MessageRole,
    Tenant,
    TenantVectorStore,
    TrainingExample,
)
from staytune.providers.openai_client import (
    CredentialMissingError,
    ProviderClientFactory,
    ProviderConfig,
    ProviderError,
    RemoteFineTuneJob,
    RemoteVectorStore,
)

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


# ------------------------------------------------------------------ #
# Settings / database
# ------------------------------------------------------------------ #


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        environment=Environment.TEST,
        database_url=TEST_DB_URL,
        openai_api_key=SecretStr("sk-test-key"),
        fine_tune_base_model=None,
        log_json=False,
    )


@pytest.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    eng = build_engine(test_settings)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ------------------------------------------------------------------ #
# Fake provider
# ------------------------------------------------------------------ #


class FakeProviderClient:
    """In-process stand-in for ProviderClient that records every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.uploads: list[dict[str, Any]] = []
        self.attach_calls = 0
        self.fail_attach_on: set[int] = set()  # 1-based attach call numbers
        self.fail_upload: Exception | None = None
        self.fail_create: Exception | None = None
        self.fail_retrieve: dict[str, Exception] = {}
        self.fail_delete: Exception | None = None
        self.fail_store_retrieve: Exception | None = None
        self.store_file_counts: dict[str, int] = {"completed": 0, "in_progress": 0, "failed": 0, "total": 0}
        self.create_status = "validating_files"
        self.create_model: str | None = None
        self.remote_jobs: dict[str, RemoteFineTuneJob] = {}
        self.closed = 0
        self._seq = 0

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}-{self._seq}"

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    async def close(self) -> None:
        self.closed += 1

    async def upload_file(self, *, filename, content, purpose, content_type="application/json"):
        self.calls.append(("upload_file", {"filename": filename, "purpose": purpose}))
        if self.fail_upload is not None:
            raise self.fail_upload
        file_id = self._next_id("file")
        self.uploads.append(
            {"id": file_id, "filename": filename, "content": content, "purpose": purpose}
        )
        return file_id

    async def create_fine_tune_job(self, *, training_file, model, suffix=None):
        self.calls.append(
            ("create_fine_tune_job", {"training_file": training_file, "model": model, "suffix": suffix})
        )
        if self.fail_create is not None:
            raise self.fail_create
        job = RemoteFineTuneJob(
            id=self._next_id("ftjob"),
            status=self.create_status,
            fine_tuned_model=self.create_model,
            model=model,
        )
        self.remote_jobs[job.id] = job
        return job

    async def retrieve_fine_tune_job(self, remote_job_id):
        self.calls.append(("retrieve_fine_tune_job", {"id": remote_job_id}))
        if remote_job_id in self.fail_retrieve:
            raise self.fail_retrieve[remote_job_id]
        return self.remote_jobs[remote_job_id]

    async def attach_vector_store_file(self, *, vector_store_id, file_id, attributes):
        self.attach_calls += 1
        self.calls.append(
            (
                "attach_vector_store_file",
                {"vector_store_id": vector_store_id, "file_id": file_id, "attributes": attributes},
            )
        )
        if self.attach_calls in self.fail_attach_on:
            raise ProviderError("vector store attach failed: boom", status_code=500)
        return f"vsf-{file_id}"

    async def delete_vector_store_file(self, *, vector_store_id, file_id):
        self.calls.append(("delete_vector_store_file", {"vector_store_id": vector_store_id, "file_id": file_id}))
        if self.fail_delete is not None:
            raise self.fail_delete

    async def retrieve_vector_store(self, vector_store_id):
        self.calls.append(("retrieve_vector_store", {"id": vector_store_id}))
        if self.fail_store_retrieve is not None:
            raise self.fail_store_retrieve
        return RemoteVectorStore(id=vector_store_id, file_counts=dict(self.store_file_counts))

    async def create_vector_store(self, *, name, metadata=None):
        self.calls.append(("create_vector_store", {"name": name, "metadata": metadata}))
        return RemoteVectorStore(id=self._next_id("vs"), name=name, metadata=metadata)


class StaticResolver:
    def __init__(self, api_key: str | None) -> None:
        self.api_key = api_key

    async def resolve(self, tenant_id: uuid.UUID) -> ProviderConfig:
        return ProviderConfig(
            api_key=SecretStr(self.api_key) if self.api_key else None,
            base_url="https://api.openai.test/v1",
        )


class FakeClientFactory(ProviderClientFactory):
    """Factory that hands out the shared FakeProviderClient."""

    def __init__(self, client: FakeProviderClient, settings: Settings, api_key: str | None = "sk-test") -> None:
        self.resolver = StaticResolver(api_key)
        super().__init__(resolver=self.resolver, settings=settings)
        self.client = client
        self.create_error: Exception | None = None
        self.clients_created = 0

    def create_client(self, config: ProviderConfig):  # type: ignore[override]
        if not config.has_key:
            raise CredentialMissingError("credential missing")
        if self.create_error is not None:
            raise self.create_error
        self.clients_created += 1
        return self.client


@pytest.fixture
def fake_client() -> FakeProviderClient:
    return FakeProviderClient()


@pytest.fixture
def client_factory(fake_client: FakeProviderClient, test_settings: Settings) -> FakeClientFactory:
    return FakeClientFactory(fake_client, test_settings)


# ------------------------------------------------------------------ #
# Seed helpers
# ------------------------------------------------------------------ #


async def make_tenant(db: AsyncSession, name: str = "Grand Budapest") -> Tenant:
    tenant = Tenant(id=uuid.uuid4(), name=name, slug=f"t-{uuid.uuid4().hex[:10]}")
    db.add(tenant)
    await db.flush()
    return tenant


async def make_exchange(
    db: AsyncSession,
    tenant: Tenant,
    question: str = "What time is breakfast?",
    answer: str = "Breakfast is served from 7 to 10 am.",
    *,
    reaction: str | None = FeedbackReaction.LIKE.value,
    with_user_turn: bool = True,
    quality_score: float | None = None,
    created_at: datetime | None = None,
) -> Message:
    """Create a conversation with a user turn and an assistant answer.

    Returns the assistant message.
    """
    created_at = created_at or datetime.now(UTC)
    conversation = Conversation(id=uuid.uuid4(), tenant_id=tenant.id, user_id=uuid.uuid4())
    db.add(conversation)
    await db.flush()

    seq = 1
    if with_user_turn:
        db.add(
            Message(
                id=uuid.uuid4(),
                conversation_id=conversation.id,
                tenant_id=tenant.id,
                role=MessageRole.USER.value,
                content=question,
                sequence_number=seq,
                created_at=created_at - timedelta(seconds=5),
            )
        )
        seq += 1

    assistant = Message(
        id=uuid.uuid4(),
        conversation_id=conversation.id,
        tenant_id=tenant.id,
        role=MessageRole.ASSISTANT.value,
        content=answer,
        sequence_number=seq,
        quality_score=quality_score,
        created_at=created_at,
    )
    db.add(assistant)
    await db.flush()

    if reaction is not None:
        db.add(
            MessageFeedback(
                id=uuid.uuid4(),
                message_id=assistant.id,
                user_id=conversation.user_id,
                reaction=reaction,
            )
        )
        await db.flush()
    return assistant


async def make_example(
    db: AsyncSession,
    tenant: Tenant,
    *,
    updated_at: datetime | None = None,
    **kwargs: Any,
) -> TrainingExample:
    kwargs.setdefault("input_text", "Is parking available?")
    kwargs.setdefault("output_text", "Yes, valet parking is available for 30 EUR per night.")
    kwargs.setdefault("score", 1.0)
    if updated_at is not None:
        kwargs["updated_at"] = updated_at
        kwargs.setdefault("created_at", updated_at)
    example = TrainingExample(tenant_id=tenant.id, **kwargs)
    db.add(example)
    await db.flush()
    return example


async def make_store(
    db: AsyncSession,
    tenant: Tenant,
    *,
    remote_id: str | None = None,
    is_default: bool = True,
    created_at: datetime | None = None,
) -> TenantVectorStore:
    store = TenantVectorStore(
        id=uuid.uuid4(),
        tenant_id=tenant.id,
        provider="openai",
        remote_id=remote_id or f"vs_{uuid.uuid4().hex[:12]}",
        name="default",
        is_default=is_default,
        created_at=created_at or datetime.now(UTC),
    )
    db.add(store)
    await db.flush()
    return store


@pytest.fixture
async def tenant(db: AsyncSession) -> Tenant:
    return await make_tenant(db)
