"""Decision explainability: an audit trail of every routing decision.

Each selection made on behalf of an organization is captured as an
immutable DecisionLog: what was picked, the score breakdown, every
candidate that was rejected and why, the policy constraints in force and
the telemetry seen at decision time.

Logs are held per organization in a bounded ring buffer (hard cap of
100 entries), most recent first. When the buffer is full the oldest entry is
evicted. Appends for one organization are serialized by that
organization's lock; readers work on a copy.
"""

from __future__ import annotations

import threading
import uuid
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

log = structlog.get_logger(__name__)

DEFAULT_CAPACITY = 100
# Hard per-organization cap; configuration may only lower it.
MAX_CAPACITY = 100


class RejectionReason(StrEnum):
    """Why a candidate model was excluded from selection."""

    PROVIDER_NOT_ALLOWED = "Provider not allowed by policy"
    BELOW_QUALITY = "Below quality threshold"
    CIRCUIT_BROKEN = "Circuit broken (high error rate)"


@dataclass(frozen=True)
class DecisionFactors:
    """Normalized contributions behind the winning score.

    Attributes:
        cost_score: Estimated cost in cents
        latency_score: Latency in seconds
        error_score: Error rate (0.0-1.0)
        quality_score: Quality from the matrix (0.0-1.0)
        total_score: Final weighted score (lower is better)
    """

    cost_score: float
    latency_score: float
    error_score: float
    quality_score: float
    total_score: float


@dataclass(frozen=True)
class AlternativeRecord:
    """A candidate that was considered but not picked."""

    provider: str
    model: str
    score: float
    rejected: bool
    reject_reason: RejectionReason | None = None


@dataclass(frozen=True)
class DecisionConstraints:
    """Policy constraints that applied to a decision."""

    min_performance: float
    allowed_providers: tuple[str, ...]
    force_cheapest: bool = False
    max_cost: float | None = None


@dataclass(frozen=True)
class TelemetrySnapshot:
    """Telemetry of the selected model at decision time."""

    latency_ms: float
    error_rate: float
    request_count: int


@dataclass(frozen=True)
class DecisionLog:
    """Immutable record of one routing decision."""

    id: str
    timestamp: datetime
    organization_id: str
    task_category: str
    selected_provider: str
    selected_model: str
    estimated_cost: float
    factors: DecisionFactors
    alternatives: tuple[AlternativeRecord, ...]
    reason: str
    constraints: DecisionConstraints
    agent_type: str | None = None
    telemetry: TelemetrySnapshot | None = None

    @property
    def model_key(self) -> str:
        return f"{self.selected_provider}:{self.selected_model}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "organization_id": self.organization_id,
            "task_category": self.task_category,
            "agent_type": self.agent_type,
            "selected_provider": self.selected_provider,
            "selected_model": self.selected_model,
            "estimated_cost": self.estimated_cost,
            "factors": {
                "cost_score": self.factors.cost_score,
                "latency_score": self.factors.latency_score,
                "error_score": self.factors.error_score,
                "quality_score": self.factors.quality_score,
                "total_score": self.factors.total_score,
            },
            "alternatives": [
                {
                    "provider": alt.provider,
                    "model": alt.model,
                    "score": alt.score,
                    "rejected": alt.rejected,
                    "reject_reason": alt.reject_reason.value if alt.reject_reason else None,
                }
                for alt in self.alternatives
            ],
            "reason": self.reason,
            "constraints": {
                "min_performance": self.constraints.min_performance,
                "max_cost": self.constraints.max_cost,
                "allowed_providers": list(self.constraints.allowed_providers),
                "force_cheapest": self.constraints.force_cheapest,
            },
            "telemetry": (
                {
                    "latency_ms": self.telemetry.latency_ms,
                    "error_rate": self.telemetry.error_rate,
                    "request_count": self.telemetry.request_count,
                }
                if self.telemetry
                else None
            ),
        }


@dataclass(frozen=True)
class DecisionStats:
    """Aggregate view over an organization's retained decisions."""

    total_decisions: int
    by_provider: dict[str, int]
    by_task_category: dict[str, int]
    avg_cost: float
    force_cheapest_count: int


@dataclass(frozen=True)
class ProviderPerformance:
    """How often a provider:model was selected, and at what cost and score."""

    provider: str
    model: str
    times_selected: int
    avg_cost: float
    avg_score: float


@dataclass(frozen=True)
class DecisionLogExport:
    """Full audit snapshot of one organization."""

    organization_id: str
    export_date: datetime
    total_logs: int
    logs: list[DecisionLog]
    stats: DecisionStats

    def to_dict(self) -> dict[str, Any]:
        return {
            "organization_id": self.organization_id,
            "export_date": self.export_date.isoformat(),
            "total_logs": self.total_logs,
            "logs": [entry.to_dict() for entry in self.logs],
            "stats": {
                "total_decisions": self.stats.total_decisions,
                "by_provider": dict(self.stats.by_provider),
                "by_task_category": dict(self.stats.by_task_category),
                "avg_cost": self.stats.avg_cost,
                "force_cheapest_count": self.stats.force_cheapest_count,
            },
        }


@dataclass
class _OrgBuffer:
    """Bounded, newest-first log for one organization."""

    entries: deque[DecisionLog]
    lock: threading.Lock = field(default_factory=threading.Lock)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _filter_logs(
    logs: Sequence[DecisionLog],
    task_category: str | None = None,
    provider: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int | None = None,
) -> list[DecisionLog]:
    result = [
        entry
        for entry in logs
        if (task_category is None or entry.task_category == str(task_category))
        and (provider is None or entry.selected_provider == provider)
        and (start_date is None or entry.timestamp >= start_date)
        and (end_date is None or entry.timestamp <= end_date)
    ]
    if limit is not None:
        result = result[: max(limit, 0)]
    return result


def _compute_stats(logs: Sequence[DecisionLog]) -> DecisionStats:
    by_provider: dict[str, int] = {}
    by_task_category: dict[str, int] = {}
    total_cost = 0.0
    force_cheapest_count = 0

    for entry in logs:
        by_provider[entry.model_key] = by_provider.get(entry.model_key, 0) + 1
        by_task_category[entry.task_category] = by_task_category.get(entry.task_category, 0) + 1
        total_cost += entry.estimated_cost
        if entry.constraints.force_cheapest:
            force_cheapest_count += 1

    return DecisionStats(
        total_decisions=len(logs),
        by_provider=by_provider,
        by_task_category=by_task_category,
        avg_cost=total_cost / len(logs) if logs else 0.0,
        force_cheapest_count=force_cheapest_count,
    )


class DecisionLogStore:
    """Thread-safe, per-organization, capacity-bounded decision history."""

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            capacity: Maximum logs retained per organization (1-100)
            clock: Returns the current UTC time. Injected by tests.
        """
        if not 1 <= capacity <= MAX_CAPACITY:
            raise ValueError(f"capacity must be between 1 and {MAX_CAPACITY}, got {capacity}")

        self._capacity = capacity
        self._clock = clock or _utcnow
        self._buffers: dict[str, _OrgBuffer] = {}
        self._buffers_lock = threading.Lock()

        log.info("decision_log_store.initialized", capacity=capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    def record_decision(
        self,
        *,
        organization_id: str,
        task_category: str,
        selected_provider: str,
        selected_model: str,
        estimated_cost: float,
        factors: DecisionFactors,
        alternatives: Sequence[AlternativeRecord],
        reason: str,
        constraints: DecisionConstraints,
        agent_type: str | None = None,
        telemetry: TelemetrySnapshot | None = None,
    ) -> DecisionLog:
        """Create and retain a decision log. Returns the stored entry."""
        entry = DecisionLog(
            id=f"decision-{uuid.uuid4().hex}",
            timestamp=self._clock(),
            organization_id=organization_id,
            task_category=str(task_category),
            agent_type=agent_type,
            selected_provider=selected_provider,
            selected_model=selected_model,
            estimated_cost=estimated_cost,
            factors=factors,
            alternatives=tuple(alternatives),
            reason=reason,
            constraints=constraints,
            telemetry=telemetry,
        )

        buffer = self._buffer(organization_id)
        with buffer.lock:
            evicting = len(buffer.entries) == self._capacity
            buffer.entries.appendleft(entry)

        log.debug(
            "decision_log_store.recorded",
            organization_id=organization_id,
            decision_id=entry.id,
            model_key=entry.model_key,
            evicted_oldest=evicting,
        )
        return entry

    def clear_decision_logs(self, organization_id: str) -> None:
        with self._buffers_lock:
            buffer = self._buffers.get(organization_id)
        if buffer is not None:
            with buffer.lock:
                buffer.entries.clear()

    def clear_all(self) -> None:
        with self._buffers_lock:
            buffers = list(self._buffers.values())
        for buffer in buffers:
            with buffer.lock:
                buffer.entries.clear()

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def get_decision_logs(
        self,
        organization_id: str,
        *,
        task_category: str | None = None,
        provider: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int | None = None,
    ) -> list[DecisionLog]:
        """Retained logs for an organization, most recent first.

        Args:
            organization_id: Organization to read
            task_category: Only decisions for this category
            provider: Only decisions that selected this provider
            start_date: Only decisions at or after this time
            end_date: Only decisions at or before this time
            limit: Return at most this many entries
        """
        return _filter_logs(
            self._snapshot(organization_id),
            task_category=task_category,
            provider=provider,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
        )

    def get_latest_decision(self, organization_id: str) -> DecisionLog | None:
        logs = self._snapshot(organization_id)
        return logs[0] if logs else None

    def get_decision_stats(self, organization_id: str) -> DecisionStats:
        return _compute_stats(self._snapshot(organization_id))

    def get_provider_performance(self, organization_id: str) -> list[ProviderPerformance]:
        """Selection count, average cost and average score per provider:model.

        Sorted by times selected, most selected first.
        """
        totals: dict[tuple[str, str], list[float]] = {}
        for entry in self._snapshot(organization_id):
            bucket = totals.setdefault((entry.selected_provider, entry.selected_model), [0, 0.0, 0.0])
            bucket[0] += 1
            bucket[1] += entry.estimated_cost
            bucket[2] += entry.factors.total_score

        results = [
            ProviderPerformance(
                provider=provider,
                model=model,
                times_selected=int(count),
                avg_cost=total_cost / count,
                avg_score=total_score / count,
            )
            for (provider, model), (count, total_cost, total_score) in totals.items()
        ]
        results.sort(key=lambda p: (-p.times_selected, p.provider, p.model))
        return results

    def export_decision_logs(self, organization_id: str) -> DecisionLogExport:
        """Logs and stats for audit export, taken from one snapshot."""
        logs = self._snapshot(organization_id)
        export = DecisionLogExport(
            organization_id=organization_id,
            export_date=self._clock(),
            total_logs=len(logs),
            logs=logs,
            stats=_compute_stats(logs),
        )
        log.info(
            "decision_log_store.export",
            organization_id=organization_id,
            total_logs=export.total_logs,
        )
        return export

    def total_decision_count(self) -> int:
        with self._buffers_lock:
            buffers = list(self._buffers.values())
        total = 0
        for buffer in buffers:
            with buffer.lock:
                total += len(buffer.entries)
        return total

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _buffer(self, organization_id: str) -> _OrgBuffer:
        with self._buffers_lock:
            buffer = self._buffers.get(organization_id)
            if buffer is None:
                buffer = _OrgBuffer(entries=deque(maxlen=self._capacity))
                self._buffers[organization_id] = buffer
            return buffer

    def _snapshot(self, organization_id: str) -> list[DecisionLog]:
        with self._buffers_lock:
            buffer = self._buffers.get(organization_id)
        if buffer is None:
            return []
        with buffer.lock:
            return list(buffer.entries)


def explain_decision(entry: DecisionLog) -> str:
    """Render a decision log as a human-readable report."""
    parts: list[str] = [
        f"Decision for {entry.task_category} task:",
        f"Selected: {entry.model_key}",
        f"Cost: ${entry.estimated_cost:.6f}",
        "",
        "Decision Factors:",
        f"  Cost Score: {entry.factors.cost_score * 100:.1f}%",
        f"  Latency Score: {entry.factors.latency_score * 100:.1f}%",
        f"  Error Score: {entry.factors.error_score * 100:.1f}%",
        f"  Quality Score: {entry.factors.quality_score * 100:.1f}%",
        f"  Total Score: {entry.factors.total_score:.4f} (lower is better)",
        "",
        "Policy Constraints:",
        f"  Min Performance: {entry.constraints.min_performance * 100:.1f}%",
        f"  Allowed Providers: {', '.join(entry.constraints.allowed_providers)}",
    ]
    if entry.constraints.force_cheapest:
        parts.append("  FORCED CHEAPEST (budget constraint)")
    if entry.constraints.max_cost:
        parts.append(f"  Max Cost: ${entry.constraints.max_cost:.4f}")
    parts.append("")

    if entry.alternatives:
        parts.append(f"Alternatives Considered ({len(entry.alternatives)}):")
        for alt in entry.alternatives[:5]:
            status = f"[rejected: {alt.reject_reason}]" if alt.rejected else "[eligible]"
            parts.append(f"  {status} {alt.provider}:{alt.model} (score: {alt.score:.4f})")
        parts.append("")

    if entry.telemetry:
        parts.extend(
            [
                "Performance Telemetry:",
                f"  Latency: {entry.telemetry.latency_ms:.0f}ms",
                f"  Error Rate: {entry.telemetry.error_rate * 100:.2f}%",
                f"  Request Count: {entry.telemetry.request_count}",
                "",
            ]
        )

    parts.append(f"Rationale: {entry.reason}")
    return "\n".join(parts)
