"""Infrastructure components (background workers)."""

from __future__ import annotations

from staytune.infra.background_worker import (
    BackgroundWorkerPool,
    Task,
    TaskStatus,
    TaskType,
    get_worker_pool,
    set_worker_pool,
)

__all__ = [
    "BackgroundWorkerPool",
    "Task",
    "TaskStatus",
    "TaskType",
    "get_worker_pool",
    "set_worker_pool",
]
