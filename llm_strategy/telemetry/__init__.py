"""Telemetry package for observability.

This package contains structured logging configuration. Model performance
telemetry (EWMA latency and error rates) lives in
llm_strategy.model_router.metrics.
"""

from __future__ import annotations

from llm_strategy.telemetry.logging import (
    bind_task_context,
    bind_tenant_context,
    clear_context,
    configure_logging,
    selection_context,
)

__all__ = [
    "bind_task_context",
    "bind_tenant_context",
    "clear_context",
    "configure_logging",
    "selection_context",
]
