"""Structured logging configuration.

Configures structlog with JSON output in production and a console renderer
in development.  Tenant, job and request identifiers travel as bound
context variables so every event emitted while handling one tenant's
pipeline carries them.

Log format (production):
    {
        "timestamp": "2026-02-17T10:30:45.123456Z",
        "level": "info",
        "event": "training.vector.synced",
        "request_id": "req_789...",
        "tenant_id": "tenant_uuid",
        "uploaded": 9,
        "failed": 1
    }
"""

from __future__ import annotations

import logging
import sys
import uuid
from typing import Any

import structlog
from structlog.types import Processor

# Field names whose values must never reach a log sink
_REDACTED_KEYS = frozenset({"api_key", "authorization", "openai_api_key"})

_QUIET_LOGGERS = ("httpx", "httpcore", "openai")


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Replace credential-like fields with a placeholder."""
    for key in _REDACTED_KEYS & event_dict.keys():
        event_dict[key] = "***"
    return event_dict


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Route stdlib and structlog output through one processor chain.

    ``json_logs`` selects the JSON renderer used in production; otherwise
    events are rendered for a terminal.  Safe to call more than once.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # One INFO line per provider HTTP request otherwise
    for noisy in _QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(max(logging.WARNING, logging.getLogger().level))


# ------------------------------------------------------------------ #
# HTTP request correlation
# ------------------------------------------------------------------ #

_REQUEST_ID_HEADER = b"x-request-id"
_MAX_REQUEST_ID_LEN = 64


class RequestIdMiddleware:
    """ASGI middleware binding ``request_id`` for the duration of a request.

    The gateway's X-Request-ID is reused when present so pipeline events can
    be joined with gateway logs; otherwise a fresh id is minted.  The id is
    echoed back on the response.
    """

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = _incoming_request_id(scope) or f"req_{uuid.uuid4().hex[:16]}"
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        async def send_with_request_id(message: dict[str, Any]) -> None:
            if message["type"] == "http.response.start":
                message["headers"] = [
                    *message.get("headers", []),
                    (_REQUEST_ID_HEADER, request_id.encode()),
                ]
            await send(message)

        await self.app(scope, receive, send_with_request_id)


def _incoming_request_id(scope: dict[str, Any]) -> str | None:
    for name, value in scope.get("headers", []):
        if name == _REQUEST_ID_HEADER:
            text = value.decode("latin-1").strip()
            if text and len(text) <= _MAX_REQUEST_ID_LEN and text.isprintable():
                return text
    return None


# ------------------------------------------------------------------ #
# Context binding
# ------------------------------------------------------------------ #


def bind_tenant_context(tenant_id: str | uuid.UUID) -> None:
    structlog.contextvars.bind_contextvars(tenant_id=str(tenant_id))


def bind_job_context(job_id: str | uuid.UUID, remote_job_id: str | None = None) -> None:
    """Bind fine-tune job identifiers for the rest of the current task."""
    structlog.contextvars.bind_contextvars(job_id=str(job_id))
    if remote_job_id:
        structlog.contextvars.bind_contextvars(remote_job_id=remote_job_id)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
