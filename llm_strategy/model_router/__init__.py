"""Cost-first model routing with live telemetry and explainable decisions.

This package selects the cheapest LLM (provider, model) that satisfies a
tenant's policy and a task's quality floor. It combines:
- Live EWMA telemetry with circuit breaking
- A static task catalog and quality matrix
- Tenant policy resolution with trial clamping
- Budget-aware degradation to the cheapest model
- A per-organization audit trail of every decision

All state is in memory and owned by a StrategyManager built with
build_strategy_manager().
"""

from __future__ import annotations

from llm_strategy.model_router.budget import (
    BudgetCheckResult,
    BudgetExceededError,
    BudgetGuard,
    BudgetState,
    BudgetStatus,
)
from llm_strategy.model_router.catalog import (
    QUALITY_MATRIX,
    TASK_CATALOG,
    TaskCatalog,
    TaskCatalogEntry,
    TaskCategory,
    infer_task_category,
)
from llm_strategy.model_router.explain import (
    AlternativeRecord,
    DecisionConstraints,
    DecisionFactors,
    DecisionLog,
    DecisionLogExport,
    DecisionLogStore,
    DecisionStats,
    ProviderPerformance,
    RejectionReason,
    TelemetrySnapshot,
    explain_decision,
)
from llm_strategy.model_router.metrics import (
    RequestRecord,
    TelemetryMetrics,
    TelemetryTracker,
    calculate_ewma,
)
from llm_strategy.model_router.policy import (
    TRIAL_CEILINGS,
    ConfigurationError,
    PolicyConfig,
    PolicyDefaults,
    PolicyResolver,
    StoredPolicy,
    TaskOverride,
    TierLimits,
    apply_trial_restrictions,
    validate_policy,
)
from llm_strategy.model_router.pricing import (
    MODEL_PRICING,
    ModelKey,
    ModelPricing,
    estimate_cost,
    get_all_models_by_price,
    get_model_pricing,
)
from llm_strategy.model_router.runtime import StrategyManager, build_strategy_manager
from llm_strategy.model_router.selector import (
    FilteredModels,
    ModelSelector,
    ModelSpec,
    NoEligibleModelError,
    RejectedModel,
    SelectionContext,
    SelectionMode,
    SelectionResult,
    explain_selection,
    score_model,
)

__all__ = [
    "MODEL_PRICING",
    "QUALITY_MATRIX",
    "TASK_CATALOG",
    "TRIAL_CEILINGS",
    "AlternativeRecord",
    "BudgetCheckResult",
    "BudgetExceededError",
    "BudgetGuard",
    "BudgetState",
    "BudgetStatus",
    "ConfigurationError",
    "DecisionConstraints",
    "DecisionFactors",
    "DecisionLog",
    "DecisionLogExport",
    "DecisionLogStore",
    "DecisionStats",
    "FilteredModels",
    "ModelKey",
    "ModelPricing",
    "ModelSelector",
    "ModelSpec",
    "NoEligibleModelError",
    "PolicyConfig",
    "PolicyDefaults",
    "PolicyResolver",
    "ProviderPerformance",
    "RejectedModel",
    "RejectionReason",
    "RequestRecord",
    "SelectionContext",
    "SelectionMode",
    "SelectionResult",
    "StoredPolicy",
    "StrategyManager",
    "TaskCatalog",
    "TaskCatalogEntry",
    "TaskCategory",
    "TaskOverride",
    "TelemetryMetrics",
    "TelemetrySnapshot",
    "TelemetryTracker",
    "TierLimits",
    "apply_trial_restrictions",
    "build_strategy_manager",
    "calculate_ewma",
    "estimate_cost",
    "explain_decision",
    "explain_selection",
    "get_all_models_by_price",
    "get_model_pricing",
    "infer_task_category",
    "score_model",
    "validate_policy",
]
