"""Strategy manager: wires the routing components into one runtime.

The StrategyManager owns the shared stores (telemetry, decision logs, budget
ledger) for a process. Build it once at startup with build_strategy_manager()
and pass it to whatever handles requests. There are no module-level
singletons; two managers never share state.

Request flow for select():
1. Resolve the organization's policy (merge, validate, clamp).
2. Infer the task category from the agent type when none is given.
3. Budget pre-check against the cheapest allowed model. A denial raises
   BudgetExceededError; budget pressure turns on force_cheapest.
4. Select the model and record a decision log.

After calling the provider, report the outcome with record_outcome() so
telemetry and the budget ledger stay current.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import timedelta
from typing import Any

import structlog

from llm_strategy.config import Settings, get_settings
from llm_strategy.model_router.budget import BudgetCheckResult, BudgetExceededError, BudgetGuard
from llm_strategy.model_router.catalog import TaskCatalog, TaskCategory, infer_task_category
from llm_strategy.model_router.explain import (
    DecisionLog,
    DecisionLogExport,
    DecisionLogStore,
    DecisionStats,
    explain_decision,
)
from llm_strategy.model_router.metrics import TelemetryMetrics, TelemetryTracker
from llm_strategy.model_router.policy import PolicyConfig, PolicyDefaults, PolicyResolver, StoredPolicy
from llm_strategy.model_router.pricing import MODEL_PRICING, get_all_models_by_price
from llm_strategy.model_router.selector import ModelSelector, SelectionContext, SelectionResult
from llm_strategy.telemetry.logging import selection_context

log = structlog.get_logger(__name__)


class StrategyManager:
    """Selection, feedback and query surface over one set of shared stores."""

    def __init__(
        self,
        telemetry: TelemetryTracker,
        decisions: DecisionLogStore,
        resolver: PolicyResolver,
        budget: BudgetGuard,
        catalog: TaskCatalog | None = None,
    ) -> None:
        self.telemetry = telemetry
        self.decisions = decisions
        self.resolver = resolver
        self.budget = budget
        self.catalog = catalog or TaskCatalog()
        self.selector = ModelSelector(
            telemetry=telemetry,
            catalog=self.catalog,
            decision_store=decisions,
        )

    # ------------------------------------------------------------------ #
    # Selection
    # ------------------------------------------------------------------ #

    def resolve_policy(
        self,
        organization_id: str,
        stored_policy: StoredPolicy | Mapping[str, Any] | None = None,
    ) -> PolicyConfig:
        return self.resolver.resolve(stored_policy, organization_id)

    def check_budget(
        self,
        policy: PolicyConfig,
        input_tokens: int,
        output_tokens: int,
    ) -> BudgetCheckResult:
        """Pre-flight check using the cheapest model the policy allows."""
        allowed_costs = [
            cost
            for key, cost in get_all_models_by_price(input_tokens, output_tokens, MODEL_PRICING)
            if policy.allows_provider(key.provider)
        ]
        floor_cost = allowed_costs[0] if allowed_costs else 0.0
        return self.budget.check_request(policy.organization_id, floor_cost, policy)

    def select(
        self,
        organization_id: str,
        input_tokens: int,
        output_tokens: int,
        task_category: TaskCategory | str | None = None,
        agent_type: str | None = None,
        stored_policy: StoredPolicy | Mapping[str, Any] | None = None,
        min_performance: float | None = None,
    ) -> SelectionResult:
        """Resolve policy, check budget and select a model for one request.

        Args:
            organization_id: Tenant making the request
            input_tokens: Expected prompt tokens
            output_tokens: Expected completion tokens
            task_category: Task category. Inferred from agent_type when None.
            agent_type: Free-text agent type
            stored_policy: The organization's stored policy document, if any
            min_performance: Caller-requested quality floor

        Returns:
            SelectionResult for the request

        Raises:
            ConfigurationError: If the resolved policy is invalid
            BudgetExceededError: If the budget guard denies the request
            NoEligibleModelError: If no allowed provider offers any model
        """
        category = (
            TaskCategory(task_category)
            if task_category is not None
            else infer_task_category(agent_type)
        )
        with selection_context(organization_id, category.value, agent_type):
            policy = self.resolve_policy(organization_id, stored_policy)

            budget = self.check_budget(policy, input_tokens, output_tokens)
            if not budget.allowed:
                raise BudgetExceededError(organization_id, budget.reason or "Budget exceeded")
            if budget.force_cheapest:
                log.info(
                    "strategy_manager.force_cheapest",
                    organization_id=organization_id,
                    reason=budget.reason,
                    daily_spend=budget.daily_spend,
                )

            context = SelectionContext(
                task_category=category,
                policy=policy,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                min_performance=min_performance,
                organization_id=organization_id,
                agent_type=agent_type,
                force_cheapest=budget.force_cheapest,
            )
            return self.selector.select_model(context)

    # ------------------------------------------------------------------ #
    # Feedback
    # ------------------------------------------------------------------ #

    def record_outcome(
        self,
        provider: str,
        model: str,
        latency_ms: float,
        success: bool,
        cost_usd: float = 0.0,
        organization_id: str | None = None,
    ) -> TelemetryMetrics:
        """Feed a provider call's outcome back into telemetry and the ledger."""
        metrics = self.telemetry.record_request(provider, model, latency_ms, success)
        if organization_id is not None and cost_usd > 0:
            self.budget.record_spend(organization_id, cost_usd)
        return metrics

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def get_recent_telemetry(self) -> dict[str, TelemetryMetrics]:
        return self.telemetry.get_recent_telemetry()

    def get_decision_logs(self, organization_id: str, **filters: Any) -> list[DecisionLog]:
        return self.decisions.get_decision_logs(organization_id, **filters)

    def get_decision_stats(self, organization_id: str) -> DecisionStats:
        return self.decisions.get_decision_stats(organization_id)

    def export_decision_logs(self, organization_id: str) -> DecisionLogExport:
        return self.decisions.export_decision_logs(organization_id)

    def explain_decision(self, entry: DecisionLog) -> str:
        return explain_decision(entry)


def build_strategy_manager(settings: Settings | None = None) -> StrategyManager:
    """Construct a StrategyManager and its stores from settings."""
    settings = settings or get_settings()

    telemetry = TelemetryTracker(
        alpha=settings.llm_telemetry_ewma_alpha,
        max_age=timedelta(hours=settings.telemetry_max_age_hours),
        error_threshold=settings.circuit_breaker_error_threshold,
        min_requests=settings.circuit_breaker_min_requests,
    )
    manager = StrategyManager(
        telemetry=telemetry,
        decisions=DecisionLogStore(capacity=settings.decision_log_capacity),
        resolver=PolicyResolver(PolicyDefaults.from_settings(settings)),
        budget=BudgetGuard(),
    )

    log.info(
        "strategy_manager.built",
        environment=settings.environment.value,
        allowed_providers=settings.llm_allowed_providers,
        decision_log_capacity=settings.decision_log_capacity,
    )
    return manager
