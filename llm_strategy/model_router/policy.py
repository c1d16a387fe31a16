"""Tenant routing policy: merging, validation and trial clamping.

A tenant's effective policy is built in three steps:

1. Merge: start from the tier defaults (trial or paid) assembled once from
   Settings, then overlay the stored policy document field by field. Task
   overrides are merged per category, and per field within a category.
2. Validate: check cost ordering, numeric ranges and the provider list.
   Any violation blocks selection (ConfigurationError).
3. Clamp: trial tenants are clamped to TRIAL_CEILINGS regardless of what
   their stored policy asks for. Clamping only ever lowers a limit.

Storage of policy documents is out of scope; callers pass whatever their
store returned (a mapping, a StoredPolicy, or None for "no policy").
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, replace
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:
    from llm_strategy.config import Settings

log = structlog.get_logger(__name__)

# Validated ranges (inclusive upper bounds)
MAX_DAILY_COST_USD = 10_000.0
MAX_TOKENS_INPUT = 1_000_000
MAX_TOKENS_OUTPUT = 200_000
MAX_CONCURRENT_JOBS = 100
MAX_BURST_RATE_LIMIT = 10_000
MAX_SUSTAINED_RATE_LIMIT = 100_000


class ConfigurationError(ValueError):
    """Resolved policy is invalid; selection must not proceed."""

    def __init__(self, violations: list[str], organization_id: str | None = None) -> None:
        self.violations = list(violations)
        self.organization_id = organization_id
        super().__init__("Invalid routing policy: " + "; ".join(self.violations))


@dataclass(frozen=True)
class TaskOverride:
    """Per-category exception to the catalog's defaults.

    Attributes:
        min_perf: Quality floor replacing the catalog floor (None = keep)
        preferred_models: Preference order replacing the catalog's (None = keep)
    """

    min_perf: float | None = None
    preferred_models: tuple[str, ...] | None = None


@dataclass(frozen=True)
class TierLimits:
    """Numeric caps for one tenant tier."""

    max_daily_cost_usd: float
    max_request_cost_usd: float
    max_tokens_input: int
    max_tokens_output: int
    max_concurrent_jobs: int
    burst_rate_limit: int
    sustained_rate_limit: int


# Hard ceilings for trial tenants. Not configurable.
TRIAL_CEILINGS = TierLimits(
    max_daily_cost_usd=1.00,
    max_request_cost_usd=0.02,
    max_tokens_input=8_000,
    max_tokens_output=2_000,
    max_concurrent_jobs=2,
    burst_rate_limit=10,
    sustained_rate_limit=60,
)


@dataclass(frozen=True)
class PolicyConfig:
    """Fully resolved routing policy for one organization."""

    organization_id: str
    trial_mode: bool
    max_daily_cost_usd: float
    max_request_cost_usd: float
    max_tokens_input: int
    max_tokens_output: int
    max_concurrent_jobs: int
    allowed_providers: tuple[str, ...]
    burst_rate_limit: int
    sustained_rate_limit: int
    task_overrides: Mapping[str, TaskOverride] = field(default_factory=dict)

    def allows_provider(self, provider: str) -> bool:
        return provider in self.allowed_providers

    def override_for(self, category: str) -> TaskOverride | None:
        return self.task_overrides.get(str(category))

    def limits(self) -> TierLimits:
        return TierLimits(
            max_daily_cost_usd=self.max_daily_cost_usd,
            max_request_cost_usd=self.max_request_cost_usd,
            max_tokens_input=self.max_tokens_input,
            max_tokens_output=self.max_tokens_output,
            max_concurrent_jobs=self.max_concurrent_jobs,
            burst_rate_limit=self.burst_rate_limit,
            sustained_rate_limit=self.sustained_rate_limit,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "organization_id": self.organization_id,
            "trial_mode": self.trial_mode,
            **asdict(self.limits()),
        }
        data["allowed_providers"] = list(self.allowed_providers)
        data["task_overrides"] = {
            category: {
                "min_perf": override.min_perf,
                "preferred_models": (
                    list(override.preferred_models)
                    if override.preferred_models is not None
                    else None
                ),
            }
            for category, override in self.task_overrides.items()
        }
        return data


# ------------------------------------------------------------------ #
# Stored policy documents (Pydantic - parsed from the external store)
# ------------------------------------------------------------------ #


class StoredTaskOverride(BaseModel):
    """Task override as stored. Accepts snake_case or camelCase keys."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    min_perf: float | None = Field(
        default=None,
        validation_alias=AliasChoices("min_perf", "minPerf"),
    )
    preferred_models: list[str] | None = Field(
        default=None,
        validation_alias=AliasChoices("preferred_models", "preferredModels"),
    )

    def to_override(self) -> TaskOverride:
        return TaskOverride(
            min_perf=self.min_perf,
            preferred_models=(
                tuple(self.preferred_models) if self.preferred_models is not None else None
            ),
        )


class StoredPolicy(BaseModel):
    """Partial policy document. Every field is optional; absent means "use default".

    Numeric strings ("10.00") are coerced, and allowed_providers may be a
    comma-separated string as older rows store it.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    trial_mode: bool | None = None
    max_daily_cost_usd: float | None = None
    max_request_cost_usd: float | None = None
    max_tokens_input: int | None = None
    max_tokens_output: int | None = None
    max_concurrent_jobs: int | None = None
    allowed_providers: list[str] | None = None
    task_overrides: dict[str, StoredTaskOverride] | None = None
    burst_rate_limit: int | None = None
    sustained_rate_limit: int | None = None

    @field_validator("allowed_providers", mode="before")
    @classmethod
    def _split_providers(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [p.strip() for p in value.split(",") if p.strip()]
        if isinstance(value, (list, tuple)):
            return [str(p).strip() for p in value if str(p).strip()]
        return value

    @classmethod
    def parse(cls, document: StoredPolicy | Mapping[str, Any] | None) -> StoredPolicy | None:
        """Parse a document from the policy store; None passes through."""
        if document is None or isinstance(document, StoredPolicy):
            return document
        return cls.model_validate(dict(document))


# ------------------------------------------------------------------ #
# Defaults
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class PolicyDefaults:
    """Tiered defaults assembled once at process start."""

    paid: TierLimits
    trial: TierLimits
    allowed_providers: tuple[str, ...]
    default_trial_mode: bool = False
    task_overrides: Mapping[str, TaskOverride] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> PolicyDefaults:
        return cls(
            paid=TierLimits(
                max_daily_cost_usd=settings.llm_max_daily_cost,
                max_request_cost_usd=settings.llm_max_cost_per_request,
                max_tokens_input=settings.llm_max_tokens_input,
                max_tokens_output=settings.llm_max_tokens_output,
                max_concurrent_jobs=settings.llm_max_concurrent_jobs,
                burst_rate_limit=settings.llm_burst_rate_limit,
                sustained_rate_limit=settings.llm_sustained_rate_limit,
            ),
            trial=TierLimits(
                max_daily_cost_usd=settings.llm_trial_max_daily_cost,
                max_request_cost_usd=settings.llm_trial_max_cost_per_request,
                max_tokens_input=settings.llm_trial_max_tokens_input,
                max_tokens_output=settings.llm_trial_max_tokens_output,
                max_concurrent_jobs=settings.llm_trial_max_concurrent_jobs,
                burst_rate_limit=settings.llm_trial_burst_rate_limit,
                sustained_rate_limit=settings.llm_trial_sustained_rate_limit,
            ),
            allowed_providers=tuple(settings.llm_allowed_providers),
            default_trial_mode=settings.llm_default_trial_mode,
        )


DEFAULT_POLICY_DEFAULTS = PolicyDefaults(
    paid=TierLimits(
        max_daily_cost_usd=10.00,
        max_request_cost_usd=0.03,
        max_tokens_input=32_000,
        max_tokens_output=8_000,
        max_concurrent_jobs=10,
        burst_rate_limit=60,
        sustained_rate_limit=600,
    ),
    trial=TRIAL_CEILINGS,
    allowed_providers=("openai", "anthropic"),
)


# ------------------------------------------------------------------ #
# Pure policy operations
# ------------------------------------------------------------------ #


def _in_range(name: str, value: float, low: float, high: float) -> str | None:
    if value < low or value > high:
        return f"{name} must be between {low} and {high}, got {value}"
    return None


def validate_policy(policy: PolicyConfig) -> list[str]:
    """Return every violated policy invariant. An empty list means valid."""
    errors: list[str] = []

    if policy.max_daily_cost_usd <= 0 or policy.max_daily_cost_usd > MAX_DAILY_COST_USD:
        errors.append(
            f"max_daily_cost_usd must be in (0, {MAX_DAILY_COST_USD}], "
            f"got {policy.max_daily_cost_usd}"
        )
    if policy.max_request_cost_usd <= 0:
        errors.append(
            f"max_request_cost_usd must be positive, got {policy.max_request_cost_usd}"
        )
    if policy.max_request_cost_usd > policy.max_daily_cost_usd:
        errors.append(
            f"max_request_cost_usd ({policy.max_request_cost_usd}) exceeds "
            f"max_daily_cost_usd ({policy.max_daily_cost_usd})"
        )

    for name, value, high in (
        ("max_tokens_input", policy.max_tokens_input, MAX_TOKENS_INPUT),
        ("max_tokens_output", policy.max_tokens_output, MAX_TOKENS_OUTPUT),
        ("max_concurrent_jobs", policy.max_concurrent_jobs, MAX_CONCURRENT_JOBS),
        ("burst_rate_limit", policy.burst_rate_limit, MAX_BURST_RATE_LIMIT),
        ("sustained_rate_limit", policy.sustained_rate_limit, MAX_SUSTAINED_RATE_LIMIT),
    ):
        error = _in_range(name, value, 1, high)
        if error:
            errors.append(error)

    if not policy.allowed_providers:
        errors.append("allowed_providers must contain at least one provider")

    for category, override in policy.task_overrides.items():
        if override.min_perf is not None and not 0.0 <= override.min_perf <= 1.0:
            errors.append(
                f"task_overrides[{category}].min_perf must be between 0.0 and 1.0, "
                f"got {override.min_perf}"
            )

    return errors


def apply_trial_restrictions(policy: PolicyConfig) -> PolicyConfig:
    """Clamp a trial policy to TRIAL_CEILINGS. Paid policies pass through.

    Each cap becomes min(current, ceiling), so a limit is never raised.
    """
    if not policy.trial_mode:
        return policy

    ceilings = TRIAL_CEILINGS
    clamped = replace(
        policy,
        max_daily_cost_usd=min(policy.max_daily_cost_usd, ceilings.max_daily_cost_usd),
        max_request_cost_usd=min(policy.max_request_cost_usd, ceilings.max_request_cost_usd),
        max_tokens_input=min(policy.max_tokens_input, ceilings.max_tokens_input),
        max_tokens_output=min(policy.max_tokens_output, ceilings.max_tokens_output),
        max_concurrent_jobs=min(policy.max_concurrent_jobs, ceilings.max_concurrent_jobs),
        burst_rate_limit=min(policy.burst_rate_limit, ceilings.burst_rate_limit),
        sustained_rate_limit=min(policy.sustained_rate_limit, ceilings.sustained_rate_limit),
    )

    if clamped != policy:
        log.info(
            "policy_resolver.trial_clamped",
            organization_id=policy.organization_id,
            requested=asdict(policy.limits()),
            effective=asdict(clamped.limits()),
        )

    return clamped


def _merge_overrides(
    defaults: Mapping[str, TaskOverride],
    stored: Mapping[str, TaskOverride],
) -> dict[str, TaskOverride]:
    merged: dict[str, TaskOverride] = dict(defaults)
    for category, override in stored.items():
        base = merged.get(category)
        if base is None:
            merged[category] = override
            continue
        merged[category] = TaskOverride(
            min_perf=override.min_perf if override.min_perf is not None else base.min_perf,
            preferred_models=(
                override.preferred_models
                if override.preferred_models is not None
                else base.preferred_models
            ),
        )
    return merged


class PolicyResolver:
    """Builds effective policies from stored documents and tier defaults."""

    def __init__(self, defaults: PolicyDefaults | None = None) -> None:
        self._defaults = defaults or DEFAULT_POLICY_DEFAULTS

    @property
    def defaults(self) -> PolicyDefaults:
        return self._defaults

    def merge_policy_with_defaults(
        self,
        stored: StoredPolicy | Mapping[str, Any] | None,
        organization_id: str,
    ) -> PolicyConfig:
        """Overlay a stored policy on the tier defaults.

        Args:
            stored: Stored policy document, or None if the org has none
            organization_id: Organization the policy belongs to

        Returns:
            Merged (not yet validated or clamped) PolicyConfig
        """
        doc = StoredPolicy.parse(stored) or StoredPolicy()

        trial_mode = (
            doc.trial_mode if doc.trial_mode is not None else self._defaults.default_trial_mode
        )
        tier = self._defaults.trial if trial_mode else self._defaults.paid

        def pick(value: Any, fallback: Any) -> Any:
            return fallback if value is None else value

        stored_overrides = {
            category: override.to_override()
            for category, override in (doc.task_overrides or {}).items()
        }

        return PolicyConfig(
            organization_id=organization_id,
            trial_mode=trial_mode,
            max_daily_cost_usd=pick(doc.max_daily_cost_usd, tier.max_daily_cost_usd),
            max_request_cost_usd=pick(doc.max_request_cost_usd, tier.max_request_cost_usd),
            max_tokens_input=pick(doc.max_tokens_input, tier.max_tokens_input),
            max_tokens_output=pick(doc.max_tokens_output, tier.max_tokens_output),
            max_concurrent_jobs=pick(doc.max_concurrent_jobs, tier.max_concurrent_jobs),
            allowed_providers=tuple(
                pick(doc.allowed_providers, self._defaults.allowed_providers)
            ),
            burst_rate_limit=pick(doc.burst_rate_limit, tier.burst_rate_limit),
            sustained_rate_limit=pick(doc.sustained_rate_limit, tier.sustained_rate_limit),
            task_overrides=_merge_overrides(self._defaults.task_overrides, stored_overrides),
        )

    def validate_policy(self, policy: PolicyConfig) -> list[str]:
        return validate_policy(policy)

    def apply_trial_restrictions(self, policy: PolicyConfig) -> PolicyConfig:
        return apply_trial_restrictions(policy)

    def resolve(
        self,
        stored: StoredPolicy | Mapping[str, Any] | None,
        organization_id: str,
    ) -> PolicyConfig:
        """Merge, validate and clamp in one step.

        Raises:
            ConfigurationError: If the merged policy violates any invariant
        """
        merged = self.merge_policy_with_defaults(stored, organization_id)
        violations = validate_policy(merged)
        if violations:
            log.error(
                "policy_resolver.invalid_policy",
                organization_id=organization_id,
                violations=violations,
            )
            raise ConfigurationError(violations, organization_id=organization_id)

        policy = apply_trial_restrictions(merged)
        log.debug(
            "policy_resolver.resolved",
            organization_id=organization_id,
            trial_mode=policy.trial_mode,
            max_daily_cost_usd=policy.max_daily_cost_usd,
            allowed_providers=list(policy.allowed_providers),
            override_count=len(policy.task_overrides),
        )
        return policy
