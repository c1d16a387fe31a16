"""Tests for ModelSelector.

Tests cover:
- Cost-first scoring and ranking (pr-pitch reference scenario)
- Provider policy is never violated, even in emergency fallback
- Circuit-broken models are skipped
- Relaxed threshold and emergency fallback degrade gracefully
- Threshold precedence and tie-breaking
- Decision logs are written and their failure never breaks selection
"""

from __future__ import annotations

import pytest

from llm_strategy.model_router.catalog import TaskCategory
from llm_strategy.model_router.explain import DecisionLogStore, RejectionReason
from llm_strategy.model_router.metrics import TelemetryTracker
from llm_strategy.model_router.policy import ConfigurationError
from llm_strategy.model_router.selector import (
    REASON_EMERGENCY,
    REASON_FORCE_CHEAPEST,
    REASON_RELAXED,
    REASON_STANDARD,
    ModelSelector,
    NoEligibleModelError,
    SelectionContext,
    SelectionMode,
    explain_selection,
    score_model,
)


@pytest.fixture
def selector(tracker: TelemetryTracker) -> ModelSelector:
    return ModelSelector(telemetry=tracker)


def _context(policy, task="pr-pitch", input_tokens=1000, output_tokens=500, **kwargs):
    return SelectionContext(
        task_category=task,
        policy=policy,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        **kwargs,
    )


class TestScoring:
    def test_score_formula(self) -> None:
        # cost in cents * 0.6 + seconds * 0.35 + error * 0.05
        assert score_model(0.0105, 1000.0, 0.0) == pytest.approx(0.98)
        assert score_model(0.01, 2000.0, 1.0) == pytest.approx(0.6 + 0.7 + 0.05)

    def test_missing_telemetry_uses_defaults(self) -> None:
        assert score_model(0.0125) == pytest.approx(1.10)


class TestStandardSelection:
    """pr-pitch, openai + anthropic, 1000 in / 500 out, no telemetry."""

    def test_reference_scenario(self, selector: ModelSelector, paid_policy) -> None:
        result = selector.select_model(_context(paid_policy))

        assert result.selected.provider == "anthropic"
        assert result.selected.model == "claude-3-sonnet"
        assert result.selected.score == pytest.approx(0.98)
        assert result.selected.estimated_cost_usd == pytest.approx(0.0105)
        assert result.selected.quality == 0.92
        assert result.selected.reason == REASON_STANDARD
        assert [a.model for a in result.alternatives] == ["gpt-4o", "claude-3-opus"]
        assert [a.score for a in result.alternatives] == [
            pytest.approx(1.10),
            pytest.approx(3.50),
        ]
        assert result.mode is SelectionMode.STANDARD
        assert result.degraded is False
        assert result.threshold == 0.8

    def test_rejections_grouped_by_cause(self, selector: ModelSelector, paid_policy) -> None:
        result = selector.select_model(_context(paid_policy))

        rejected = {r.model for r in result.filtered.by_quality}
        assert rejected == {
            "gpt-4o-mini",
            "gpt-4-turbo",
            "gpt-3.5-turbo",
            "claude-3-haiku",
            "claude-3-5-sonnet",
        }
        assert result.filtered.by_provider == []
        assert result.filtered.by_circuit == []
        assert result.filtered.total == 5
        assert all(r.reason is RejectionReason.BELOW_QUALITY for r in result.filtered.by_quality)

    def test_latency_shifts_ranking(
        self, selector: ModelSelector, tracker: TelemetryTracker, paid_policy
    ) -> None:
        tracker.record_request("anthropic", "claude-3-sonnet", 5000.0, True)

        result = selector.select_model(_context(paid_policy))

        assert result.selected.model == "gpt-4o"
        assert result.alternatives[0].model == "claude-3-sonnet"
        assert result.alternatives[0].latency_ms == 5000.0

    def test_scores_non_decreasing(self, selector: ModelSelector, paid_policy) -> None:
        result = selector.select_model(_context(paid_policy, task="short-form"))

        scores = [result.selected.score] + [a.score for a in result.alternatives]
        assert scores == sorted(scores)

    def test_category_string_coerced(self, paid_policy) -> None:
        context = _context(paid_policy, task="seo")
        assert context.task_category is TaskCategory.SEO

    def test_negative_tokens_rejected(self, paid_policy) -> None:
        with pytest.raises(ValueError):
            _context(paid_policy, input_tokens=-1)

    def test_unknown_category_rejected(self, paid_policy) -> None:
        with pytest.raises(ValueError):
            _context(paid_policy, task="poetry")


class TestProviderPolicy:
    def test_only_allowed_providers_selected(self, selector: ModelSelector, make_policy) -> None:
        result = selector.select_model(_context(make_policy(allowed_providers=["openai"])))

        assert result.selected.provider == "openai"
        assert result.selected.model == "gpt-4o"
        assert all(a.provider == "openai" for a in result.alternatives)
        assert {r.provider for r in result.filtered.by_provider} == {"anthropic"}
        assert len(result.filtered.by_provider) == 4

    def test_no_models_for_allowed_providers(self, selector: ModelSelector, make_policy) -> None:
        with pytest.raises(NoEligibleModelError):
            selector.select_model(_context(make_policy(allowed_providers=["mistral"])))

    def test_invalid_policy_rejected_before_scoring(
        self, selector: ModelSelector, make_policy
    ) -> None:
        policy = make_policy(max_daily_cost_usd=1.0, max_request_cost_usd=2.0)

        with pytest.raises(ConfigurationError) as exc_info:
            selector.select_model(_context(policy))
        assert exc_info.value.violations


class TestCircuitBreaking:
    def test_broken_model_skipped(
        self, selector: ModelSelector, tracker: TelemetryTracker, paid_policy
    ) -> None:
        for _ in range(5):
            tracker.record_request("anthropic", "claude-3-sonnet", 500.0, False)

        result = selector.select_model(_context(paid_policy))

        assert result.selected.model == "gpt-4o"
        assert [r.model for r in result.filtered.by_circuit] == ["claude-3-sonnet"]
        assert result.filtered.by_circuit[0].reason is RejectionReason.CIRCUIT_BROKEN
        assert "claude-3-sonnet" not in {a.model for a in result.alternatives}

    def test_too_few_failures_do_not_break(
        self, selector: ModelSelector, tracker: TelemetryTracker, paid_policy
    ) -> None:
        for _ in range(4):
            tracker.record_request("anthropic", "claude-3-sonnet", 500.0, False)

        result = selector.select_model(_context(paid_policy))

        assert result.filtered.by_circuit == []
        # 1.0 error rate adds 0.05; 500ms saves 0.175
        assert result.selected.model == "claude-3-sonnet"


class TestDegradation:
    def test_relaxed_threshold(self, selector: ModelSelector, make_policy) -> None:
        policy = make_policy(
            allowed_providers=["anthropic"],
            task_overrides={"analysis": {"min_perf": 0.97}},
        )

        result = selector.select_model(_context(policy, task="analysis"))

        assert result.mode is SelectionMode.RELAXED
        assert result.degraded is True
        assert result.threshold == pytest.approx(0.873)
        assert result.selected.model == "claude-3-5-sonnet"
        assert result.selected.reason == REASON_RELAXED
        assert [a.model for a in result.alternatives] == ["claude-3-opus"]
        assert "claude-3-sonnet" in {r.model for r in result.filtered.by_quality}

    def test_emergency_fallback(self, selector: ModelSelector, make_policy) -> None:
        policy = make_policy(allowed_providers=["openai"])

        result = selector.select_model(_context(policy, min_performance=1.0))

        assert result.mode is SelectionMode.EMERGENCY
        assert result.selected.provider == "openai"
        assert result.selected.model == "gpt-4o-mini"
        assert result.selected.quality == 0.65
        assert result.selected.reason == REASON_EMERGENCY
        assert result.alternatives == []

    def test_emergency_prefers_healthy_models(
        self, selector: ModelSelector, tracker: TelemetryTracker, make_policy
    ) -> None:
        for _ in range(5):
            tracker.record_request("openai", "gpt-4o-mini", 100.0, False)

        result = selector.select_model(
            _context(make_policy(allowed_providers=["openai"]), min_performance=1.0)
        )

        assert result.selected.model == "gpt-3.5-turbo"

    def test_emergency_never_crosses_provider_policy(
        self, selector: ModelSelector, tracker: TelemetryTracker, make_policy
    ) -> None:
        for model in ("claude-3-sonnet", "claude-3-opus"):
            for _ in range(5):
                tracker.record_request("anthropic", model, 100.0, False)

        result = selector.select_model(
            _context(make_policy(allowed_providers=["anthropic"]), min_performance=1.0)
        )

        # gpt-4o-mini is cheaper overall but openai is not allowed
        assert result.mode is SelectionMode.EMERGENCY
        assert result.selected.provider == "anthropic"
        assert result.selected.model == "claude-3-haiku"


class TestThresholdsAndTies:
    def test_override_beats_context_and_catalog(self, selector: ModelSelector, make_policy) -> None:
        policy = make_policy(task_overrides={"pr-pitch": {"min_perf": 0.9}})

        assert selector.effective_threshold("pr-pitch", policy, 0.5) == 0.9

    def test_context_beats_catalog(self, selector: ModelSelector, paid_policy) -> None:
        assert selector.effective_threshold("pr-pitch", paid_policy, 0.5) == 0.5
        assert selector.effective_threshold("pr-pitch", paid_policy) == 0.8

    def test_equal_scores_break_on_key(self, selector: ModelSelector, make_policy) -> None:
        policy = make_policy(allowed_providers=["anthropic"])

        result = selector.select_model(
            _context(policy, task="structured-json", min_performance=0.8)
        )

        assert result.selected.score == pytest.approx(result.alternatives[0].score)
        assert result.selected.model == "claude-3-5-sonnet"

    def test_equal_scores_break_on_preferred_order(
        self, selector: ModelSelector, make_policy
    ) -> None:
        policy = make_policy(
            allowed_providers=["anthropic"],
            task_overrides={"structured-json": {"preferred_models": ["claude-3-sonnet"]}},
        )

        result = selector.select_model(
            _context(policy, task="structured-json", min_performance=0.8)
        )

        assert result.selected.model == "claude-3-sonnet"
        assert result.threshold == 0.8

    def test_force_cheapest_ranks_by_cost(
        self, selector: ModelSelector, tracker: TelemetryTracker, paid_policy
    ) -> None:
        tracker.record_request("anthropic", "claude-3-sonnet", 5000.0, True)

        result = selector.select_model(_context(paid_policy, force_cheapest=True))

        assert result.selected.model == "claude-3-sonnet"
        assert result.selected.reason == REASON_FORCE_CHEAPEST
        costs = [result.selected.estimated_cost_usd] + [
            a.estimated_cost_usd for a in result.alternatives
        ]
        assert costs == sorted(costs)


class TestEligibility:
    def test_eligible(self, selector: ModelSelector, paid_policy) -> None:
        ok, reason = selector.is_model_eligible("anthropic", "claude-3-sonnet", "pr-pitch", paid_policy)
        assert ok is True
        assert reason == "Model meets all requirements"

    def test_provider_not_allowed(self, selector: ModelSelector, make_policy) -> None:
        ok, reason = selector.is_model_eligible(
            "anthropic", "claude-3-sonnet", "pr-pitch", make_policy(allowed_providers=["openai"])
        )
        assert ok is False
        assert reason == "Provider not allowed by policy"

    def test_below_quality(self, selector: ModelSelector, paid_policy) -> None:
        ok, reason = selector.is_model_eligible("openai", "gpt-4o-mini", "pr-pitch", paid_policy)
        assert ok is False
        assert reason == "Quality 65.0% below threshold 80.0%"


class TestDecisionLogging:
    def test_decision_recorded_for_organization(
        self, tracker: TelemetryTracker, decision_store: DecisionLogStore, paid_policy
    ) -> None:
        selector = ModelSelector(telemetry=tracker, decision_store=decision_store)

        result = selector.select_model(
            _context(paid_policy, organization_id="org-1", agent_type="pr_pitch_agent")
        )

        entry = result.decision_log
        assert entry is not None
        assert decision_store.get_latest_decision("org-1") == entry
        assert entry.model_key == "anthropic:claude-3-sonnet"
        assert entry.agent_type == "pr_pitch_agent"
        assert entry.factors.total_score == pytest.approx(0.98)
        assert entry.factors.cost_score == pytest.approx(1.05)
        assert entry.constraints.min_performance == 0.8
        assert entry.constraints.max_cost == 10.0
        assert len(entry.alternatives) == 7
        assert sum(1 for a in entry.alternatives if a.rejected) == 5
        assert entry.telemetry is None

    def test_no_organization_no_log(
        self, tracker: TelemetryTracker, decision_store: DecisionLogStore, paid_policy
    ) -> None:
        selector = ModelSelector(telemetry=tracker, decision_store=decision_store)

        result = selector.select_model(_context(paid_policy))

        assert result.decision_log is None
        assert decision_store.total_decision_count() == 0

    def test_log_failure_does_not_break_selection(
        self, tracker: TelemetryTracker, paid_policy
    ) -> None:
        class BrokenStore(DecisionLogStore):
            def record_decision(self, **kwargs):
                raise RuntimeError("disk full")

        selector = ModelSelector(telemetry=tracker, decision_store=BrokenStore())

        result = selector.select_model(_context(paid_policy, organization_id="org-1"))

        assert result.selected.model == "claude-3-sonnet"
        assert result.decision_log is None


class TestExplainSelection:
    def test_report(self, selector: ModelSelector, paid_policy) -> None:
        text = explain_selection(selector.select_model(_context(paid_policy)))

        assert text.startswith("Selected anthropic:claude-3-sonnet")
        assert "Alternatives (2):" in text
        assert "Filtered out 5 models:" in text
        assert "Below quality threshold: 5" in text
