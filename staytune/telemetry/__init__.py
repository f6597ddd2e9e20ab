"""Telemetry package for observability (structured logging)."""

from __future__ import annotations

from staytune.telemetry.logging import (
    RequestIdMiddleware,
    bind_job_context,
    bind_tenant_context,
    clear_context,
    configure_logging,
)

__all__ = [
    "RequestIdMiddleware",
    "bind_job_context",
    "bind_tenant_context",
    "clear_context",
    "configure_logging",
]
