"""
Shared test fixtures for pytest.

- clock: Controllable UTC clock for time-dependent components
- tracker: TelemetryTracker driven by the fake clock
- decision_store: DecisionLogStore driven by the fake clock
- paid_policy / make_policy: Resolved policies for selector tests
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import structlog

from llm_strategy.config import get_settings
from llm_strategy.model_router.explain import DecisionLogStore
from llm_strategy.model_router.metrics import TelemetryTracker
from llm_strategy.model_router.policy import PolicyConfig, PolicyResolver, TaskOverride


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Drop contextvars bound by StrategyManager.select between tests."""
    yield
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 12, 0, tzinfo=UTC))


@pytest.fixture
def tracker(clock: FakeClock) -> TelemetryTracker:
    return TelemetryTracker(clock=clock)


@pytest.fixture
def decision_store(clock: FakeClock) -> DecisionLogStore:
    return DecisionLogStore(clock=clock)


@pytest.fixture
def paid_policy() -> PolicyConfig:
    """Default paid-tier policy: openai + anthropic, $10/day, $0.03/request."""
    return PolicyResolver().resolve(None, "org-1")


@pytest.fixture
def make_policy(paid_policy: PolicyConfig):
    """Build a policy from the paid defaults with selected fields replaced.

    ``task_overrides`` may be given as {category: {"min_perf": .., "preferred_models": [..]}}.
    """

    def _make(**changes: Any) -> PolicyConfig:
        overrides = changes.pop("task_overrides", None)
        if "allowed_providers" in changes:
            changes["allowed_providers"] = tuple(changes["allowed_providers"])
        if overrides is not None:
            changes["task_overrides"] = {
                category: TaskOverride(
                    min_perf=spec.get("min_perf"),
                    preferred_models=(
                        tuple(spec["preferred_models"]) if "preferred_models" in spec else None
                    ),
                )
                for category, spec in overrides.items()
            }
        return replace(paid_policy, **changes)

    return _make
