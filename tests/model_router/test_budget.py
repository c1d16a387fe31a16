"""Tests for BudgetGuard.

Tests cover:
- Per-request cap always denies
- 80% / 95% thresholds force the cheapest model
- A request that would cross the daily cap is forced, not denied
- Reaching 100% denies
- Daily reset on UTC date change
"""

from __future__ import annotations

import pytest

from llm_strategy.model_router.budget import BudgetGuard, BudgetStatus


@pytest.fixture
def guard(clock) -> BudgetGuard:
    return BudgetGuard(clock=clock)


class TestCheckRequest:
    """Default paid policy: $10/day, $0.03/request."""

    def test_normal_usage_allowed(self, guard: BudgetGuard, paid_policy) -> None:
        guard.record_spend("org-1", 2.0)

        result = guard.check_request("org-1", 0.01, paid_policy)

        assert result.allowed is True
        assert result.force_cheapest is False
        assert result.reason is None
        assert result.daily_spend == 2.0
        assert result.remaining_budget == 8.0
        assert result.max_daily_budget == 10.0

    def test_request_cap_denies(self, guard: BudgetGuard, paid_policy) -> None:
        result = guard.check_request("org-1", 0.05, paid_policy)

        assert result.allowed is False
        assert result.force_cheapest is False
        assert "exceeds max per-request limit" in result.reason

    def test_warning_threshold_forces_cheapest(self, guard: BudgetGuard, paid_policy) -> None:
        guard.record_spend("org-1", 8.5)

        result = guard.check_request("org-1", 0.01, paid_policy)

        assert result.allowed is True
        assert result.force_cheapest is True
        assert result.reason == "High budget usage (85.0%), forcing cheapest models"

    def test_critical_threshold_forces_cheapest(self, guard: BudgetGuard, paid_policy) -> None:
        guard.record_spend("org-1", 9.6)

        result = guard.check_request("org-1", 0.01, paid_policy)

        assert result.allowed is True
        assert result.force_cheapest is True
        assert result.reason.startswith("Critical budget usage")

    def test_crossing_daily_cap_forces_cheapest(self, guard: BudgetGuard, paid_policy) -> None:
        guard.record_spend("org-1", 9.99)

        result = guard.check_request("org-1", 0.02, paid_policy)

        assert result.allowed is True
        assert result.force_cheapest is True
        assert result.reason.startswith("Near budget limit")

    def test_exhausted_budget_denies(self, guard: BudgetGuard, paid_policy) -> None:
        guard.record_spend("org-1", 10.0)

        result = guard.check_request("org-1", 0.001, paid_policy)

        assert result.allowed is False
        assert result.remaining_budget == 0.0
        assert result.reason == "Daily budget exceeded ($10.00 / $10.00)"

    def test_trial_caps(self, guard: BudgetGuard, make_policy) -> None:
        policy = make_policy(trial_mode=True, max_daily_cost_usd=1.0, max_request_cost_usd=0.02)
        guard.record_spend("org-1", 0.85)

        result = guard.check_request("org-1", 0.01, policy)

        assert result.force_cheapest is True
        assert guard.check_request("org-1", 0.03, policy).allowed is False


class TestLedger:
    def test_spend_accumulates(self, guard: BudgetGuard) -> None:
        guard.record_spend("org-1", 0.5)
        total = guard.record_spend("org-1", 0.25)

        assert total == pytest.approx(0.75)
        assert guard.get_daily_spend("org-1") == pytest.approx(0.75)
        assert guard.get_daily_spend("org-2") == 0.0

    def test_negative_spend_rejected(self, guard: BudgetGuard) -> None:
        with pytest.raises(ValueError):
            guard.record_spend("org-1", -1.0)

    def test_daily_reset(self, guard: BudgetGuard, clock, paid_policy) -> None:
        guard.record_spend("org-1", 10.0)
        assert guard.check_request("org-1", 0.01, paid_policy).allowed is False

        clock.advance(days=1)

        assert guard.get_daily_spend("org-1") == 0.0
        assert guard.check_request("org-1", 0.01, paid_policy).allowed is True

    def test_same_day_keeps_spend(self, guard: BudgetGuard, clock) -> None:
        guard.record_spend("org-1", 3.0)
        clock.advance(hours=11)

        assert guard.get_daily_spend("org-1") == 3.0

    def test_remaining_budget_floored(self, guard: BudgetGuard, paid_policy) -> None:
        guard.record_spend("org-1", 12.0)
        assert guard.get_remaining_budget("org-1", paid_policy) == 0.0

    def test_reset(self, guard: BudgetGuard) -> None:
        guard.record_spend("org-1", 3.0)
        guard.record_spend("org-2", 4.0)

        guard.reset("org-1")
        assert guard.get_daily_spend("org-1") == 0.0
        assert guard.get_daily_spend("org-2") == 4.0

        guard.reset()
        assert guard.get_daily_spend("org-2") == 0.0

    @pytest.mark.parametrize(
        ("spend", "status"),
        [
            (1.0, BudgetStatus.NORMAL),
            (8.0, BudgetStatus.WARNING),
            (9.5, BudgetStatus.CRITICAL),
            (10.0, BudgetStatus.EXCEEDED),
        ],
    )
    def test_budget_state(self, guard: BudgetGuard, paid_policy, spend, status) -> None:
        guard.record_spend("org-1", spend)

        state = guard.get_budget_state("org-1", paid_policy)

        assert state.status is status
        assert state.usage_pct == pytest.approx(spend * 10)
