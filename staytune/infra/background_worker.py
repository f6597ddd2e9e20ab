"""
In-process worker pool for the training pipeline.

Request handlers and schedulers enqueue work here instead of awaiting
provider calls.  Each task runs in its own DB session; the state that
matters (examples, jobs, models) lives in the database, so the in-memory
task records are only for inspection and retries.

Task chain for one tenant:

    collect_examples -> vector_sync -> schedule
                                       `-> fine_tune_job (only for a new job)

fine_tune_job is the only consumer that calls process_fine_tune_job().
A failed task is retried up to its max_retries, then dead-lettered.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from staytune.config import Settings, get_settings
from staytune.providers.openai_client import CredentialMissingError, ProviderClientFactory
from staytune.telemetry.logging import bind_job_context, bind_tenant_context
from staytune.training.examples import FeedbackIngestionService
from staytune.training.jobs import FineTuneJobService
from staytune.training.vector_store import VectorStoreMissingError, VectorSyncService

log = structlog.get_logger(__name__)

SessionFactory = Callable[[], AsyncSession]


class TaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_FINISHED = (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class TaskType(StrEnum):
    COLLECT_EXAMPLES = "collect_examples"
    VECTOR_SYNC = "vector_sync"
    FINE_TUNE_JOB = "fine_tune_job"


@dataclass
class Task:
    """One unit of queued work and its in-memory lifecycle."""
    type: TaskType
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    retry_count: int = 0
    max_retries: int = 3


class BackgroundWorkerPool:
    """
    Asyncio worker pool running the training task chain.

    Example:
        pool = BackgroundWorkerPool(
            session_factory=get_session_factory(),
            client_factory=ProviderClientFactory(),
        )
        await pool.start()
        await pool.submit_task(
            task_type=TaskType.COLLECT_EXAMPLES,
            payload={"tenant_id": str(tenant_id)},
        )
        ...
        await pool.shutdown()
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        client_factory: ProviderClientFactory,
        settings: Settings | None = None,
        max_workers: int = 4,
        max_retries: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self._clients = client_factory
        self._settings = settings or get_settings()
        self._max_workers = max_workers
        self._max_retries = max_retries

        self._queue: asyncio.Queue[Task] = asyncio.Queue()
        self._tasks: dict[str, Task] = {}
        self._dead_letter: list[Task] = []
        self._workers: list[asyncio.Task[None]] = []
        self._handlers: dict[TaskType, Callable[[Task], Awaitable[None]]] = {
            TaskType.COLLECT_EXAMPLES: self._handle_collect_examples,
            TaskType.VECTOR_SYNC: self._handle_vector_sync,
            TaskType.FINE_TUNE_JOB: self._handle_fine_tune_job,
        }

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            log.warning("worker_pool.already_running")
            return
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"training-worker-{i}")
            for i in range(self._max_workers)
        ]
        log.info("worker_pool.started", workers=self._max_workers, max_retries=self._max_retries)

    async def shutdown(self, *, drain: bool = True) -> None:
        """Stop the workers, optionally after the queue (and any chained work) is empty."""
        if not self._workers:
            return
        if drain:
            await self._queue.join()

        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        by_status: dict[str, int] = {}
        for task in self._tasks.values():
            by_status[task.status] = by_status.get(task.status, 0) + 1
        log.info("worker_pool.stopped", drained=drain, dead_letter=len(self._dead_letter), **by_status)

    async def submit_task(
        self,
        *,
        task_type: TaskType,
        payload: dict[str, Any],
        max_retries: int | None = None,
    ) -> str:
        """Queue a task and return its id.  Payload ids are passed as strings."""
        task = Task(
            type=task_type,
            payload=payload,
            max_retries=self._max_retries if max_retries is None else max_retries,
        )
        self._tasks[task.id] = task
        await self._queue.put(task)
        log.debug("worker_pool.task_submitted", task_id=task.id, task_type=task_type, queued=self._queue.qsize())
        return task.id

    def get_task_status(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    async def cancel_task(self, task_id: str) -> bool:
        """Cancel a task that has not finished; a running task completes its current attempt."""
        task = self._tasks.get(task_id)
        if task is None or task.status in _FINISHED:
            return False
        task.status = TaskStatus.CANCELLED
        task.completed_at = datetime.now(UTC)
        log.info("worker_pool.task_cancelled", task_id=task_id)
        return True

    def get_dead_letter_queue(self) -> list[Task]:
        return list(self._dead_letter)

    async def join(self) -> None:
        """Wait until every queued task, including chained ones, is done."""
        await self._queue.join()

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    async def _worker_loop(self, worker_id: int) -> None:
        while True:
            task = await self._queue.get()
            try:
                if task.status != TaskStatus.CANCELLED:
                    await self._run(task, worker_id)
            finally:
                self._queue.task_done()

    async def _run(self, task: Task, worker_id: int) -> None:
        structlog.contextvars.clear_contextvars()
        if "tenant_id" in task.payload:
            bind_tenant_context(task.payload["tenant_id"])
        if "job_id" in task.payload:
            bind_job_context(task.payload["job_id"])

        task.status = TaskStatus.RUNNING
        task.started_at = datetime.now(UTC)
        try:
            await self._handlers[task.type](task)
        except Exception as exc:
            self._record_failure(task, exc, worker_id)
            if task.status == TaskStatus.PENDING:
                await self._queue.put(task)
            return

        task.status = TaskStatus.COMPLETED
        task.completed_at = datetime.now(UTC)
        log.info(
            "worker.task_completed",
            worker_id=worker_id,
            task_id=task.id,
            task_type=task.type,
            seconds=(task.completed_at - task.started_at).total_seconds(),
        )

    def _record_failure(self, task: Task, exc: Exception, worker_id: int) -> None:
        task.error = str(exc) or exc.__class__.__name__
        task.retry_count += 1
        if task.retry_count < task.max_retries:
            task.status = TaskStatus.PENDING
            log.warning(
                "worker.task_retrying",
                worker_id=worker_id,
                task_id=task.id,
                task_type=task.type,
                attempt=task.retry_count,
                error=task.error,
            )
            return
        task.status = TaskStatus.FAILED
        task.completed_at = datetime.now(UTC)
        self._dead_letter.append(task)
        log.error(
            "worker.task_dead_lettered",
            worker_id=worker_id,
            task_id=task.id,
            task_type=task.type,
            attempts=task.retry_count,
            error=task.error,
        )

    # ------------------------------------------------------------------ #
    # Handlers
    # ------------------------------------------------------------------ #

    async def _handle_collect_examples(self, task: Task) -> None:
        """Payload: ``{"tenant_id": str, "limit": int | None}``"""
        tenant_id = _tenant_id(task)
        async with self._session_factory() as session:
            await FeedbackIngestionService(session, self._settings).collect_examples(
                tenant_id, task.payload.get("limit")
            )
            await session.commit()

        await self.submit_task(task_type=TaskType.VECTOR_SYNC, payload={"tenant_id": str(tenant_id)})

    async def _handle_vector_sync(self, task: Task) -> None:
        """Payload: ``{"tenant_id": str, "max_batch": int | None}``

        A tenant without a knowledge store or key still proceeds to
        scheduling, so the job records the failure for operators.
        """
        tenant_id = _tenant_id(task)
        async with self._session_factory() as session:
            try:
                await VectorSyncService(session, self._clients, self._settings).sync_to_vector_store(
                    tenant_id, task.payload.get("max_batch")
                )
            except (VectorStoreMissingError, CredentialMissingError) as exc:
                log.warning("worker.vector_sync_skipped", error=str(exc))
            await session.commit()

        await self.schedule_fine_tune(tenant_id)

    async def _handle_fine_tune_job(self, task: Task) -> None:
        """Payload: ``{"job_id": str}``"""
        job_id = uuid.UUID(str(task.payload["job_id"]))
        async with self._session_factory() as session:
            await FineTuneJobService(session, self._clients, self._settings).process_fine_tune_job(job_id)

    async def schedule_fine_tune(self, tenant_id: uuid.UUID) -> tuple[uuid.UUID, bool]:
        """Schedule a job for the tenant and enqueue processing if it is new."""
        async with self._session_factory() as session:
            job, created = await FineTuneJobService(
                session, self._clients, self._settings
            ).schedule_fine_tune_upload(tenant_id)
            job_id = job.id
            await session.commit()

        if created:
            await self.enqueue_fine_tune_job(job_id)
        return job_id, created

    async def enqueue_fine_tune_job(self, job_id: uuid.UUID) -> str:
        return await self.submit_task(task_type=TaskType.FINE_TUNE_JOB, payload={"job_id": str(job_id)})


def _tenant_id(task: Task) -> uuid.UUID:
    raw = task.payload.get("tenant_id")
    if not raw:
        raise ValueError("Missing tenant_id in task payload")
    return uuid.UUID(str(raw))


# Process-wide pool, started in the application lifespan
_pool: BackgroundWorkerPool | None = None


def set_worker_pool(pool: BackgroundWorkerPool | None) -> None:
    global _pool
    _pool = pool


def get_worker_pool() -> BackgroundWorkerPool:
    """FastAPI dependency returning the running pool."""
    if _pool is None:
        raise RuntimeError("Background worker pool not started")
    return _pool
