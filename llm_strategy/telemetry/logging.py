"""Structured logging configuration for the routing engine.

Configures structlog with JSON output in production and a rich console
renderer in development.

Features:
- JSON-formatted logs in production (human-readable in dev)
- Organization, task and agent context bound through contextvars
- ISO8601 timestamps in UTC
- Stack traces for exceptions

Log format (production):
    {
        "timestamp": "2026-02-17T10:30:45.123456Z",
        "level": "info",
        "logger": "llm_strategy.model_router.selector",
        "event": "model_selector.selected",
        "organization_id": "org_123",
        "task_category": "pr-pitch",
        "provider": "anthropic",
        "model": "claude-3-sonnet"
    }
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog
from structlog.types import Processor


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the process.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
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
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.RichTracebackFormatter(),
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def bind_tenant_context(organization_id: str) -> None:
    """Bind the organization id to log context for this selection.

    Args:
        organization_id: Tenant identifier
    """
    structlog.contextvars.bind_contextvars(organization_id=str(organization_id))


def bind_task_context(task_category: str, agent_type: str | None = None) -> None:
    """Bind task context to logs for this selection.

    Args:
        task_category: Task category being routed
        agent_type: Free-text agent type, if the caller supplied one
    """
    structlog.contextvars.bind_contextvars(task_category=str(task_category))
    if agent_type:
        structlog.contextvars.bind_contextvars(agent_type=agent_type)
    else:
        structlog.contextvars.unbind_contextvars("agent_type")


@contextmanager
def selection_context(
    organization_id: str,
    task_category: str,
    agent_type: str | None = None,
) -> Iterator[None]:
    """Bind tenant and task context for the duration of one selection.

    Whatever the caller had bound before is restored on exit, so fields
    from one request never show up in the logs of the next.
    """
    fields = {"organization_id": str(organization_id), "task_category": str(task_category)}
    if agent_type:
        fields["agent_type"] = agent_type
    with structlog.contextvars.bound_contextvars(**fields):
        yield


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()
