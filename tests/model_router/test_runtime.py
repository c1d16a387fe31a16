"""End-to-end tests for StrategyManager."""

from __future__ import annotations

import pytest
import structlog

from llm_strategy.config import Environment, Settings
from llm_strategy.model_router.budget import BudgetExceededError
from llm_strategy.model_router.policy import ConfigurationError
from llm_strategy.model_router.runtime import StrategyManager, build_strategy_manager
from llm_strategy.model_router.selector import REASON_FORCE_CHEAPEST, SelectionMode


@pytest.fixture
def manager() -> StrategyManager:
    return build_strategy_manager(Settings(environment=Environment.TEST))


class TestBuild:
    def test_settings_flow_into_components(self) -> None:
        settings = Settings(
            environment=Environment.TEST,
            llm_telemetry_ewma_alpha=0.5,
            decision_log_capacity=10,
        )

        manager = build_strategy_manager(settings)

        assert manager.telemetry.alpha == 0.5
        assert manager.decisions.capacity == 10

    def test_managers_do_not_share_state(self) -> None:
        first = build_strategy_manager(Settings(environment=Environment.TEST))
        second = build_strategy_manager(Settings(environment=Environment.TEST))

        first.record_outcome("openai", "gpt-4o", 100.0, True)

        assert second.get_recent_telemetry() == {}


class TestSelect:
    def test_selects_and_logs(self, manager: StrategyManager) -> None:
        result = manager.select("org-1", 1000, 500, task_category="pr-pitch")

        assert result.selected.model == "claude-3-sonnet"
        logs = manager.get_decision_logs("org-1")
        assert len(logs) == 1
        assert logs[0] == result.decision_log

    def test_category_inferred_from_agent_type(self, manager: StrategyManager) -> None:
        manager.select("org-1", 1000, 500, agent_type="pr_pitch_agent")

        entry = manager.get_decision_logs("org-1")[0]
        assert entry.task_category == "pr-pitch"
        assert entry.agent_type == "pr_pitch_agent"

    def test_default_category_is_short_form(self, manager: StrategyManager) -> None:
        manager.select("org-1", 1000, 500)

        assert manager.get_decision_stats("org-1").by_task_category == {"short-form": 1}

    def test_stored_policy_applied(self, manager: StrategyManager) -> None:
        result = manager.select(
            "org-1",
            1000,
            500,
            task_category="pr-pitch",
            stored_policy={"allowed_providers": "openai"},
        )

        assert result.selected.provider == "openai"

    def test_invalid_stored_policy(self, manager: StrategyManager) -> None:
        with pytest.raises(ConfigurationError):
            manager.select(
                "org-1",
                1000,
                500,
                stored_policy={"max_daily_cost_usd": 1, "max_request_cost_usd": 2},
            )

    def test_min_performance_passed_through(self, manager: StrategyManager) -> None:
        result = manager.select(
            "org-1", 1000, 500, task_category="pr-pitch", min_performance=1.0
        )

        assert result.mode is SelectionMode.RELAXED
        assert result.threshold == pytest.approx(0.9)


class TestFeedbackLoop:
    def test_failures_route_around_model(self, manager: StrategyManager) -> None:
        for _ in range(5):
            manager.record_outcome("anthropic", "claude-3-sonnet", 900.0, False)

        result = manager.select("org-1", 1000, 500, task_category="pr-pitch")

        assert result.selected.model == "gpt-4o"
        assert "anthropic:claude-3-sonnet" in manager.get_recent_telemetry()

    def test_budget_pressure_forces_cheapest(self, manager: StrategyManager) -> None:
        manager.record_outcome(
            "openai", "gpt-4o", 900.0, True, cost_usd=8.5, organization_id="org-1"
        )

        result = manager.select("org-1", 1000, 500, task_category="pr-pitch")

        assert result.selected.reason == REASON_FORCE_CHEAPEST
        assert result.decision_log is not None
        assert result.decision_log.constraints.force_cheapest is True
        assert manager.get_decision_stats("org-1").force_cheapest_count == 1

    def test_exhausted_budget_raises(self, manager: StrategyManager) -> None:
        manager.record_outcome(
            "openai", "gpt-4o", 900.0, True, cost_usd=10.0, organization_id="org-1"
        )

        with pytest.raises(BudgetExceededError) as exc_info:
            manager.select("org-1", 1000, 500, task_category="pr-pitch")
        assert exc_info.value.organization_id == "org-1"
        assert manager.get_decision_logs("org-1") == []

    def test_trial_request_cap(self, manager: StrategyManager) -> None:
        trial = {"trial_mode": True}

        # Cheapest allowed model for 100k input tokens costs $0.015
        manager.select("org-t", 100_000, 0, stored_policy=trial)

        with pytest.raises(BudgetExceededError):
            manager.select("org-t", 200_000, 0, stored_policy=trial)


class TestQueries:
    def test_export_and_explain(self, manager: StrategyManager) -> None:
        manager.select("org-1", 1000, 500, task_category="pr-pitch")
        manager.select("org-1", 1000, 500, task_category="seo")

        export = manager.export_decision_logs("org-1")

        assert export.total_logs == 2
        assert export.logs == manager.get_decision_logs("org-1")
        assert manager.explain_decision(export.logs[0]).startswith("Decision for seo task:")

    def test_log_filters_forwarded(self, manager: StrategyManager) -> None:
        manager.select("org-1", 1000, 500, task_category="pr-pitch")
        manager.select("org-1", 1000, 500, task_category="seo")

        assert len(manager.get_decision_logs("org-1", task_category="seo")) == 1


class TestLogContext:
    def test_context_does_not_carry_over_between_tenants(
        self, manager: StrategyManager, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        seen: list[dict] = []
        select_model = manager.selector.select_model

        def recording_select(context):
            seen.append(structlog.contextvars.get_contextvars())
            return select_model(context)

        monkeypatch.setattr(manager.selector, "select_model", recording_select)

        manager.select("org-a", 1000, 500, agent_type="pr_pitch_agent")
        manager.select("org-b", 1000, 500, task_category="short-form")

        assert seen == [
            {"organization_id": "org-a", "task_category": "pr-pitch", "agent_type": "pr_pitch_agent"},
            {"organization_id": "org-b", "task_category": "short-form"},
        ]
        assert structlog.contextvars.get_contextvars() == {}

    def test_caller_context_restored_after_denial(self, manager: StrategyManager) -> None:
        manager.record_outcome(
            "openai", "gpt-4o", 900.0, True, cost_usd=10.0, organization_id="org-1"
        )
        structlog.contextvars.bind_contextvars(request_id="req-7")

        with pytest.raises(BudgetExceededError):
            manager.select("org-1", 1000, 500, agent_type="seo_agent")

        assert structlog.contextvars.get_contextvars() == {"request_id": "req-7"}

    def test_decision_logs_never_exceed_hundred(self) -> None:
        manager = build_strategy_manager(
            Settings(environment=Environment.TEST, decision_log_capacity=100)
        )
        for _ in range(150):
            manager.select("org-1", 1000, 500, task_category="seo")

        assert len(manager.get_decision_logs("org-1")) == 100
