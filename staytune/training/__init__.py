"""Continuous fine-tuning pipeline.

Feedback ingestion -> vector sync -> fine-tune job scheduling/processing
-> status reconciliation -> model activation, plus scoped resets.
"""

from __future__ import annotations

from staytune.training.activation import activate_model
from staytune.training.dataset import build_dataset
from staytune.training.examples import FeedbackIngestionService, next_vector_status
from staytune.training.jobs import FineTuneJobService, resolve_base_model
from staytune.training.reconciler import JobReconciler, map_remote_status
from staytune.training.reset import ResetScope, ResetService
from staytune.training.status import StatusReport, get_status
from staytune.training.vector_store import (
    VectorStoreMissingError,
    VectorSyncService,
    ensure_default_vector_store,
    resolve_default_store,
)

__all__ = [
    "FeedbackIngestionService",
    "FineTuneJobService",
    "JobReconciler",
    "ResetScope",
    "ResetService",
    "StatusReport",
    "VectorStoreMissingError",
    "VectorSyncService",
    "activate_model",
    "build_dataset",
    "ensure_default_vector_store",
    "get_status",
    "map_remote_status",
    "next_vector_status",
    "resolve_base_model",
    "resolve_default_store",
]
