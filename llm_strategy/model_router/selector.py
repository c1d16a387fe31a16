"""Model selector - cost-first model routing with graceful degradation.

Picks the cheapest (provider, model) that still meets the task's quality
floor, using live telemetry to penalize slow or failing models.

Selection pipeline:
1. Validate the policy. Invalid policies never reach scoring.
2. Filter every priced model by provider policy, quality floor and
   circuit breaker.
3. If nothing survives, retry once with the floor relaxed by 10%.
4. If still nothing, emergency fallback: cheapest model from an allowed
   provider, regardless of quality.
5. Score survivors and rank them (lower is better):

       score = cost_usd * 100 * 0.6 + (latency_ms / 1000) * 0.35 + error_rate * 0.05

   Missing telemetry counts as 1000ms latency and 0 errors.
6. When an organization is given, record an explainable DecisionLog.

Threshold precedence: policy task override, then the caller's
min_performance, then the catalog floor.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum

import structlog

from llm_strategy.model_router.catalog import TaskCatalog, TaskCategory
from llm_strategy.model_router.explain import (
    AlternativeRecord,
    DecisionConstraints,
    DecisionFactors,
    DecisionLog,
    DecisionLogStore,
    RejectionReason,
    TelemetrySnapshot,
)
from llm_strategy.model_router.metrics import TelemetryTracker
from llm_strategy.model_router.policy import ConfigurationError, PolicyConfig, validate_policy
from llm_strategy.model_router.pricing import MODEL_PRICING, ModelKey, ModelPricing, estimate_cost

log = structlog.get_logger(__name__)

# Fixed scoring weights
COST_WEIGHT = 0.6
LATENCY_WEIGHT = 0.35
ERROR_WEIGHT = 0.05

DEFAULT_LATENCY_MS = 1000.0
DEFAULT_ERROR_RATE = 0.0

# Single relaxation round
RELAXATION_FACTOR = 0.9

REASON_STANDARD = "Lowest cost meeting performance requirements"
REASON_FORCE_CHEAPEST = "Cheapest model meeting performance requirements (budget constraint)"
REASON_RELAXED = "Selected with relaxed quality threshold (no models met original threshold)"
REASON_EMERGENCY = (
    "Emergency fallback: no models met the quality threshold, selected cheapest available"
)


class NoEligibleModelError(RuntimeError):
    """No model is available from any allowed provider."""


class SelectionMode(StrEnum):
    """How the winner was found."""

    STANDARD = "standard"
    RELAXED = "relaxed"
    EMERGENCY = "emergency"


@dataclass(frozen=True)
class ModelSpec:
    """A scored candidate.

    Attributes:
        provider: Provider name
        model: Model name
        score: Weighted score (lower is better)
        estimated_cost_usd: Cost of this request in USD
        quality: Quality for the task from the matrix (0.0-1.0)
        latency_ms: EWMA latency used for scoring
        error_rate: EWMA error rate used for scoring
        reason: Why this model was selected or ranked
    """

    provider: str
    model: str
    score: float
    estimated_cost_usd: float
    quality: float
    latency_ms: float
    error_rate: float
    reason: str

    @property
    def key(self) -> ModelKey:
        return ModelKey(self.provider, self.model)


@dataclass
class SelectionContext:
    """Everything the selector needs for one request."""

    task_category: TaskCategory
    policy: PolicyConfig
    input_tokens: int
    output_tokens: int
    min_performance: float | None = None
    organization_id: str | None = None
    agent_type: str | None = None
    force_cheapest: bool = False

    def __post_init__(self) -> None:
        self.task_category = TaskCategory(self.task_category)
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("Token counts cannot be negative")
        if self.min_performance is not None and not 0.0 <= self.min_performance <= 1.0:
            raise ValueError(
                f"min_performance must be 0.0-1.0, got {self.min_performance}"
            )


@dataclass(frozen=True)
class RejectedModel:
    """A candidate excluded during filtering, with its cause."""

    provider: str
    model: str
    reason: RejectionReason

    @property
    def key(self) -> ModelKey:
        return ModelKey(self.provider, self.model)


@dataclass
class FilteredModels:
    """Candidates rejected during filtering, grouped by cause."""

    by_provider: list[RejectedModel] = field(default_factory=list)
    by_quality: list[RejectedModel] = field(default_factory=list)
    by_circuit: list[RejectedModel] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.by_provider) + len(self.by_quality) + len(self.by_circuit)

    def all(self) -> list[RejectedModel]:
        return [*self.by_provider, *self.by_quality, *self.by_circuit]


@dataclass
class SelectionResult:
    """Outcome of a selection."""

    selected: ModelSpec
    alternatives: list[ModelSpec]
    filtered: FilteredModels
    mode: SelectionMode = SelectionMode.STANDARD
    threshold: float = 0.0
    decision_log: DecisionLog | None = None

    @property
    def degraded(self) -> bool:
        """True when the quality floor was relaxed or abandoned."""
        return self.mode is not SelectionMode.STANDARD


@dataclass(frozen=True)
class _Candidate:
    provider: str
    model: str
    quality: float


def score_model(
    estimated_cost_usd: float,
    latency_ms: float = DEFAULT_LATENCY_MS,
    error_rate: float = DEFAULT_ERROR_RATE,
) -> float:
    """Weighted selection score. Lower is better.

    Cost is scaled to cents, latency to seconds; error rate is used as-is.
    """
    return (
        estimated_cost_usd * 100 * COST_WEIGHT
        + (latency_ms / 1000) * LATENCY_WEIGHT
        + error_rate * ERROR_WEIGHT
    )


class ModelSelector:
    """Chooses the cheapest model that satisfies a tenant's policy and task.

    Shared state (telemetry, decision logs) is injected; the selector itself
    holds no mutable state and is safe to call from many threads.
    """

    def __init__(
        self,
        telemetry: TelemetryTracker,
        catalog: TaskCatalog | None = None,
        decision_store: DecisionLogStore | None = None,
        pricing: Mapping[ModelKey, ModelPricing] | None = None,
    ) -> None:
        """Initialize the selector.

        Args:
            telemetry: Live performance tracker, shared with the feedback path
            catalog: Task catalog and quality matrix (defaults to the built-in one)
            decision_store: Where decision logs are written. None disables logging.
            pricing: Candidate models and their prices (defaults to MODEL_PRICING)
        """
        self._telemetry = telemetry
        self._catalog = catalog or TaskCatalog()
        self._decisions = decision_store
        self._pricing = MODEL_PRICING if pricing is None else pricing

        log.info(
            "model_selector.initialized",
            candidate_count=len(self._pricing),
            decision_logging=decision_store is not None,
        )

    @property
    def catalog(self) -> TaskCatalog:
        return self._catalog

    # ------------------------------------------------------------------ #
    # Thresholds & filtering
    # ------------------------------------------------------------------ #

    def effective_threshold(
        self,
        task_category: TaskCategory | str,
        policy: PolicyConfig,
        min_performance: float | None = None,
    ) -> float:
        """Quality floor for a task under a policy."""
        override = policy.override_for(task_category)
        if override is not None and override.min_perf is not None:
            return override.min_perf
        if min_performance is not None:
            return min_performance
        return self._catalog.get_entry(task_category).min_perf

    def filter_eligible(
        self,
        task_category: TaskCategory | str,
        policy: PolicyConfig,
        threshold: float,
    ) -> tuple[list[_Candidate], FilteredModels]:
        """Split priced models into eligible candidates and rejections.

        Filters apply in order: provider policy, quality floor, circuit breaker.
        """
        eligible: list[_Candidate] = []
        filtered = FilteredModels()

        for key in self._pricing:
            provider, model = key
            if not policy.allows_provider(provider):
                filtered.by_provider.append(
                    RejectedModel(provider, model, RejectionReason.PROVIDER_NOT_ALLOWED)
                )
                continue

            quality = self._catalog.quality_for(task_category, model)
            if quality < threshold:
                filtered.by_quality.append(
                    RejectedModel(provider, model, RejectionReason.BELOW_QUALITY)
                )
                continue

            if self._telemetry.should_circuit_break(provider, model):
                filtered.by_circuit.append(
                    RejectedModel(provider, model, RejectionReason.CIRCUIT_BROKEN)
                )
                continue

            eligible.append(_Candidate(provider, model, quality))

        return eligible, filtered

    def is_model_eligible(
        self,
        provider: str,
        model: str,
        task_category: TaskCategory | str,
        policy: PolicyConfig,
        min_performance: float | None = None,
    ) -> tuple[bool, str]:
        """Check a single model against policy, circuit breaker and floor."""
        if not policy.allows_provider(provider):
            return False, RejectionReason.PROVIDER_NOT_ALLOWED.value
        if self._telemetry.should_circuit_break(provider, model):
            return False, RejectionReason.CIRCUIT_BROKEN.value

        threshold = self.effective_threshold(task_category, policy, min_performance)
        quality = self._catalog.quality_for(task_category, model)
        if quality < threshold:
            return (
                False,
                f"Quality {quality * 100:.1f}% below threshold {threshold * 100:.1f}%",
            )
        return True, "Model meets all requirements"

    # ------------------------------------------------------------------ #
    # Selection
    # ------------------------------------------------------------------ #

    def select_model(self, context: SelectionContext) -> SelectionResult:
        """Select the best model for a request.

        Args:
            context: Task, policy, token counts and logging context

        Returns:
            SelectionResult with the winner, ranked alternatives and rejections

        Raises:
            ConfigurationError: If the policy is invalid
            NoEligibleModelError: If no allowed provider offers any model
        """
        violations = validate_policy(context.policy)
        if violations:
            log.error(
                "model_selector.invalid_policy",
                organization_id=context.organization_id,
                violations=violations,
            )
            raise ConfigurationError(violations, organization_id=context.policy.organization_id)

        category = context.task_category
        threshold = self.effective_threshold(category, context.policy, context.min_performance)

        eligible, filtered = self.filter_eligible(category, context.policy, threshold)
        mode = SelectionMode.STANDARD

        if not eligible:
            relaxed = threshold * RELAXATION_FACTOR
            log.warning(
                "model_selector.relaxing_threshold",
                task_category=category.value,
                threshold=threshold,
                relaxed_threshold=relaxed,
            )
            threshold = relaxed
            eligible, filtered = self.filter_eligible(category, context.policy, threshold)
            mode = SelectionMode.RELAXED

        if eligible:
            result = self._score_and_rank(eligible, context, filtered, mode, threshold)
        else:
            result = self._emergency_fallback(context, filtered, threshold)

        if result.degraded:
            log.warning(
                "model_selector.degraded_selection",
                task_category=category.value,
                mode=result.mode.value,
                model_key=str(result.selected.key),
                reason=result.selected.reason,
            )

        log.info(
            "model_selector.selected",
            organization_id=context.organization_id,
            task_category=category.value,
            provider=result.selected.provider,
            model=result.selected.model,
            score=round(result.selected.score, 6),
            estimated_cost_usd=result.selected.estimated_cost_usd,
            mode=result.mode.value,
            alternatives=len(result.alternatives),
            filtered=filtered.total,
        )

        if context.organization_id and self._decisions is not None:
            try:
                result.decision_log = self._record_decision(result, context)
            except Exception:
                log.warning(
                    "model_selector.decision_log_failed",
                    organization_id=context.organization_id,
                    exc_info=True,
                )

        return result

    def _spec(
        self,
        candidate: _Candidate,
        context: SelectionContext,
        reason: str,
    ) -> ModelSpec:
        cost = estimate_cost(
            candidate.provider,
            candidate.model,
            context.input_tokens,
            context.output_tokens,
            self._pricing,
        )
        telemetry = self._telemetry.get_telemetry(candidate.provider, candidate.model)
        latency_ms = telemetry.latency_ms if telemetry else DEFAULT_LATENCY_MS
        error_rate = telemetry.error_rate if telemetry else DEFAULT_ERROR_RATE

        return ModelSpec(
            provider=candidate.provider,
            model=candidate.model,
            score=score_model(cost, latency_ms, error_rate),
            estimated_cost_usd=cost,
            quality=candidate.quality,
            latency_ms=latency_ms,
            error_rate=error_rate,
            reason=reason,
        )

    def _preference_order(self, context: SelectionContext) -> dict[str, int]:
        override = context.policy.override_for(context.task_category)
        if override is not None and override.preferred_models is not None:
            preferred = override.preferred_models
        else:
            preferred = self._catalog.get_entry(context.task_category).preferred_models
        return {model: rank for rank, model in enumerate(preferred)}

    def _score_and_rank(
        self,
        eligible: list[_Candidate],
        context: SelectionContext,
        filtered: FilteredModels,
        mode: SelectionMode,
        threshold: float,
    ) -> SelectionResult:
        if mode is SelectionMode.RELAXED:
            reason = REASON_RELAXED
        elif context.force_cheapest:
            reason = REASON_FORCE_CHEAPEST
        else:
            reason = REASON_STANDARD

        scored = [self._spec(candidate, context, reason) for candidate in eligible]

        # Ties fall back to the preferred-model order, then the key.
        preference = self._preference_order(context)
        unranked = len(preference)

        def tie_break(spec: ModelSpec) -> tuple[int, str]:
            return preference.get(spec.model, unranked), str(spec.key)

        if context.force_cheapest:
            scored.sort(key=lambda s: (s.estimated_cost_usd, s.score, *tie_break(s)))
        else:
            scored.sort(key=lambda s: (s.score, *tie_break(s)))

        return SelectionResult(
            selected=scored[0],
            alternatives=scored[1:],
            filtered=filtered,
            mode=mode,
            threshold=threshold,
        )

    def _emergency_fallback(
        self,
        context: SelectionContext,
        filtered: FilteredModels,
        threshold: float,
    ) -> SelectionResult:
        """Cheapest model from any allowed provider, quality ignored.

        Circuit-broken models are only used when nothing else is allowed.
        """
        category = context.task_category
        allowed = [
            _Candidate(key.provider, key.model, self._catalog.quality_for(category, key.model))
            for key in self._pricing
            if context.policy.allows_provider(key.provider)
        ]
        if not allowed:
            log.error(
                "model_selector.no_eligible_models",
                organization_id=context.organization_id,
                allowed_providers=list(context.policy.allowed_providers),
            )
            raise NoEligibleModelError(
                "No models available from allowed providers "
                f"{list(context.policy.allowed_providers)} - check policy allowed providers"
            )

        healthy = [
            c for c in allowed
            if not self._telemetry.should_circuit_break(c.provider, c.model)
        ]
        pool = healthy or allowed

        specs = [self._spec(candidate, context, REASON_EMERGENCY) for candidate in pool]
        specs.sort(key=lambda s: (s.estimated_cost_usd, s.score, str(s.key)))

        return SelectionResult(
            selected=specs[0],
            alternatives=[],
            filtered=filtered,
            mode=SelectionMode.EMERGENCY,
            threshold=threshold,
        )

    def _record_decision(
        self,
        result: SelectionResult,
        context: SelectionContext,
    ) -> DecisionLog:
        assert self._decisions is not None
        assert context.organization_id is not None

        selected = result.selected
        alternatives: list[AlternativeRecord] = [
            AlternativeRecord(alt.provider, alt.model, alt.score, rejected=False)
            for alt in result.alternatives
        ]
        alternatives.extend(
            AlternativeRecord(r.provider, r.model, 0.0, rejected=True, reject_reason=r.reason)
            for r in result.filtered.all()
        )

        telemetry = self._telemetry.get_telemetry(selected.provider, selected.model)

        return self._decisions.record_decision(
            organization_id=context.organization_id,
            task_category=context.task_category.value,
            agent_type=context.agent_type,
            selected_provider=selected.provider,
            selected_model=selected.model,
            estimated_cost=selected.estimated_cost_usd,
            factors=DecisionFactors(
                cost_score=selected.estimated_cost_usd / 0.01,
                latency_score=selected.latency_ms / 1000,
                error_score=selected.error_rate,
                quality_score=selected.quality,
                total_score=selected.score,
            ),
            alternatives=alternatives,
            reason=selected.reason,
            constraints=DecisionConstraints(
                min_performance=result.threshold,
                allowed_providers=tuple(context.policy.allowed_providers),
                force_cheapest=context.force_cheapest,
                max_cost=context.policy.max_daily_cost_usd,
            ),
            telemetry=(
                TelemetrySnapshot(
                    latency_ms=telemetry.latency_ms,
                    error_rate=telemetry.error_rate,
                    request_count=telemetry.request_count,
                )
                if telemetry
                else None
            ),
        )


def explain_selection(result: SelectionResult) -> str:
    """Render a selection result for logs and debugging."""
    selected = result.selected
    lines = [
        f"Selected {selected.provider}:{selected.model}",
        f"  Cost: ${selected.estimated_cost_usd:.6f}",
        f"  Quality: {selected.quality * 100:.1f}%",
        f"  Latency: {selected.latency_ms:.0f}ms",
        f"  Error Rate: {selected.error_rate * 100:.2f}%",
        f"  Score: {selected.score:.4f} (lower is better)",
        f"  Reason: {selected.reason}",
    ]

    if result.alternatives:
        lines.append("")
        lines.append(f"Alternatives ({len(result.alternatives)}):")
        for alt in result.alternatives[:3]:
            lines.append(
                f"  - {alt.provider}:{alt.model} "
                f"(score: {alt.score:.4f}, cost: ${alt.estimated_cost_usd:.6f})"
            )

    filtered = result.filtered
    if filtered.total:
        lines.append("")
        lines.append(f"Filtered out {filtered.total} models:")
        if filtered.by_provider:
            lines.append(f"  - Provider restrictions: {len(filtered.by_provider)}")
        if filtered.by_quality:
            lines.append(f"  - Below quality threshold: {len(filtered.by_quality)}")
        if filtered.by_circuit:
            lines.append(f"  - Circuit broken: {len(filtered.by_circuit)}")

    return "\n".join(lines)
