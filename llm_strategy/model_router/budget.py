"""Daily spend tracking and pre-flight affordability checks.

The BudgetGuard keeps an in-memory USD ledger per organization and decides,
before a model is selected, whether a request may proceed. Budget pressure
degrades gracefully instead of failing outright:

- usage < 80%: allow normally
- usage 80-95%: allow, force the cheapest eligible model
- usage 95-100%: allow, force cheapest, log at critical
- usage >= 100%: deny

A request that would push spend over the daily cap is also forced to the
cheapest model, as long as the cap has not already been reached. A request
whose estimate exceeds the per-request cap is always denied.

Counters reset when the UTC date changes.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import StrEnum

import structlog

from llm_strategy.model_router.policy import PolicyConfig

log = structlog.get_logger(__name__)


class BudgetExceededError(RuntimeError):
    """The organization cannot afford the request."""

    def __init__(self, organization_id: str, reason: str) -> None:
        self.organization_id = organization_id
        self.reason = reason
        super().__init__(reason)


class BudgetStatus(StrEnum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"


@dataclass(frozen=True)
class BudgetCheckResult:
    """Outcome of a pre-flight budget check.

    Attributes:
        allowed: Whether the request may proceed
        force_cheapest: Whether selection must rank by cost first
        reason: Human-readable explanation (None for a normal allow)
        daily_spend: Spend recorded today in USD
        remaining_budget: Daily cap minus today's spend, floored at 0
        max_daily_budget: Daily cap in USD
    """

    allowed: bool
    force_cheapest: bool
    reason: str | None
    daily_spend: float
    remaining_budget: float
    max_daily_budget: float


@dataclass(frozen=True)
class BudgetState:
    """Dashboard view of an organization's daily budget."""

    daily_spend: float
    max_daily_budget: float
    remaining_budget: float
    usage_pct: float
    status: BudgetStatus


@dataclass
class _DailyLedger:
    day: date
    spend: float = 0.0
    requests: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BudgetGuard:
    """Per-organization daily spend ledger with graceful degradation."""

    WARNING_THRESHOLD = 0.80
    CRITICAL_THRESHOLD = 0.95

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _utcnow
        self._ledgers: dict[str, _DailyLedger] = {}
        self._ledgers_lock = threading.Lock()

        log.info(
            "budget_guard.initialized",
            warning_threshold=self.WARNING_THRESHOLD,
            critical_threshold=self.CRITICAL_THRESHOLD,
        )

    def record_spend(self, organization_id: str, cost_usd: float) -> float:
        """Add actual spend to today's ledger. Returns today's total."""
        if cost_usd < 0:
            raise ValueError(f"cost_usd cannot be negative, got {cost_usd}")

        ledger = self._ledger(organization_id)
        with ledger.lock:
            self._maybe_reset(organization_id, ledger)
            ledger.spend += cost_usd
            ledger.requests += 1
            total = ledger.spend

        log.debug(
            "budget_guard.spend_recorded",
            organization_id=organization_id,
            cost_usd=cost_usd,
            daily_spend=round(total, 6),
        )
        return total

    def get_daily_spend(self, organization_id: str) -> float:
        ledger = self._ledger(organization_id)
        with ledger.lock:
            self._maybe_reset(organization_id, ledger)
            return ledger.spend

    def get_remaining_budget(self, organization_id: str, policy: PolicyConfig) -> float:
        return max(0.0, policy.max_daily_cost_usd - self.get_daily_spend(organization_id))

    def get_budget_state(self, organization_id: str, policy: PolicyConfig) -> BudgetState:
        """Current spend against the policy cap, with a status bucket."""
        spend = self.get_daily_spend(organization_id)
        cap = policy.max_daily_cost_usd
        usage = spend / cap

        if usage >= 1.0:
            status = BudgetStatus.EXCEEDED
        elif usage >= self.CRITICAL_THRESHOLD:
            status = BudgetStatus.CRITICAL
        elif usage >= self.WARNING_THRESHOLD:
            status = BudgetStatus.WARNING
        else:
            status = BudgetStatus.NORMAL

        return BudgetState(
            daily_spend=spend,
            max_daily_budget=cap,
            remaining_budget=max(0.0, cap - spend),
            usage_pct=usage * 100,
            status=status,
        )

    def check_request(
        self,
        organization_id: str,
        estimated_cost_usd: float,
        policy: PolicyConfig,
    ) -> BudgetCheckResult:
        """Decide whether a request may proceed and whether to force cheapest.

        Args:
            organization_id: Organization making the request
            estimated_cost_usd: Estimated cost of the request
            policy: Resolved policy carrying the daily and per-request caps

        Returns:
            BudgetCheckResult describing the decision
        """
        max_daily = policy.max_daily_cost_usd
        max_request = policy.max_request_cost_usd

        if estimated_cost_usd > max_request:
            reason = (
                f"Request cost (${estimated_cost_usd:.4f}) exceeds max per-request "
                f"limit (${max_request:.4f})"
            )
            log.warning(
                "budget_guard.request_limit_exceeded",
                organization_id=organization_id,
                estimated_cost_usd=estimated_cost_usd,
                max_request_cost_usd=max_request,
            )
            return BudgetCheckResult(
                allowed=False,
                force_cheapest=False,
                reason=reason,
                daily_spend=0.0,
                remaining_budget=0.0,
                max_daily_budget=max_daily,
            )

        spend = self.get_daily_spend(organization_id)
        remaining = max(0.0, max_daily - spend)
        usage = spend / max_daily
        usage_pct = usage * 100

        def result(allowed: bool, force_cheapest: bool, reason: str | None) -> BudgetCheckResult:
            return BudgetCheckResult(
                allowed=allowed,
                force_cheapest=force_cheapest,
                reason=reason,
                daily_spend=spend,
                remaining_budget=remaining if allowed else 0.0,
                max_daily_budget=max_daily,
            )

        if usage >= 1.0:
            log.warning(
                "budget_guard.daily_exceeded",
                organization_id=organization_id,
                daily_spend=spend,
                max_daily_cost_usd=max_daily,
            )
            return result(
                False,
                False,
                f"Daily budget exceeded (${spend:.2f} / ${max_daily:.2f})",
            )

        if spend + estimated_cost_usd > max_daily:
            log.warning(
                "budget_guard.near_limit",
                organization_id=organization_id,
                usage_pct=round(usage_pct, 1),
                estimated_cost_usd=estimated_cost_usd,
            )
            return result(
                True,
                True,
                f"Near budget limit ({usage_pct:.1f}%), forcing cheapest models",
            )

        if usage >= self.CRITICAL_THRESHOLD:
            log.critical(
                "budget_guard.daily_critical",
                organization_id=organization_id,
                usage_pct=round(usage_pct, 1),
            )
            return result(
                True,
                True,
                f"Critical budget usage ({usage_pct:.1f}%), forcing cheapest models",
            )

        if usage >= self.WARNING_THRESHOLD:
            log.warning(
                "budget_guard.daily_warning",
                organization_id=organization_id,
                usage_pct=round(usage_pct, 1),
            )
            return result(
                True,
                True,
                f"High budget usage ({usage_pct:.1f}%), forcing cheapest models",
            )

        return result(True, False, None)

    def reset(self, organization_id: str | None = None) -> None:
        """Forget spend for one organization, or for all of them."""
        with self._ledgers_lock:
            if organization_id is None:
                ledgers = list(self._ledgers.values())
            else:
                ledger = self._ledgers.get(organization_id)
                ledgers = [ledger] if ledger is not None else []
        for ledger in ledgers:
            with ledger.lock:
                ledger.spend = 0.0
                ledger.requests = 0

    def _ledger(self, organization_id: str) -> _DailyLedger:
        with self._ledgers_lock:
            ledger = self._ledgers.get(organization_id)
            if ledger is None:
                ledger = _DailyLedger(day=self._clock().date())
                self._ledgers[organization_id] = ledger
            return ledger

    def _maybe_reset(self, organization_id: str, ledger: _DailyLedger) -> None:
        # Caller holds ledger.lock
        today = self._clock().date()
        if today != ledger.day:
            log.info(
                "budget_guard.daily_reset",
                organization_id=organization_id,
                previous_spend=round(ledger.spend, 6),
                previous_requests=ledger.requests,
            )
            ledger.day = today
            ledger.spend = 0.0
            ledger.requests = 0
