"""Live performance telemetry for model routing decisions.

The TelemetryTracker keeps an exponentially weighted moving average (EWMA)
of latency and error rate for every (provider, model) pair that has been
called. The selector reads these estimates to score candidates and to
circuit-break models that are failing.

EWMA update:
    new = alpha * observed + (1 - alpha) * old

Telemetry older than the max-age window (24h by default) is treated as
absent: it is reset on the next write and purged on the next read, so
stale measurements never bias fresh decisions.

Concurrency: each (provider, model) key owns a slot with its own
threading.Lock. EWMA blending is order-sensitive, so writes to the same key
are serialized; writes to different keys never contend. prune_stale() and
clear() release empty slots so the table does not grow with every model ever
seen; a writer that loses its slot to a concurrent release retries on a
fresh one.
"""

from __future__ import annotations

import math
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from llm_strategy.model_router.pricing import ModelKey

log = structlog.get_logger(__name__)

DEFAULT_EWMA_ALPHA = 0.3
DEFAULT_MAX_AGE = timedelta(hours=24)
DEFAULT_ERROR_THRESHOLD = 0.5
DEFAULT_MIN_REQUESTS = 5


def _utcnow() -> datetime:
    return datetime.now(UTC)


def calculate_ewma(current: float, observed: float, alpha: float) -> float:
    """Blend a new observation into the running average."""
    return alpha * observed + (1 - alpha) * current


@dataclass(frozen=True)
class TelemetryMetrics:
    """Point-in-time performance estimate for one model.

    Attributes:
        provider: Provider name
        model: Model name
        latency_ms: EWMA latency in milliseconds
        error_rate: EWMA error rate (0.0-1.0)
        request_count: Observations since the entry was seeded
        last_updated: Time of the most recent observation (UTC)
    """

    provider: str
    model: str
    latency_ms: float
    error_rate: float
    request_count: int
    last_updated: datetime

    @property
    def key(self) -> ModelKey:
        return ModelKey(self.provider, self.model)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "latency_ms": self.latency_ms,
            "error_rate": self.error_rate,
            "request_count": self.request_count,
            "last_updated": self.last_updated.isoformat(),
        }


@dataclass(frozen=True)
class RequestRecord:
    """Outcome of one provider call, for batch reporting."""

    provider: str
    model: str
    latency_ms: float
    success: bool
    estimated_cost_usd: float = 0.0


@dataclass
class _TelemetrySlot:
    """Per-key state. The lock serializes writers for this key only."""

    lock: threading.Lock = field(default_factory=threading.Lock)
    metrics: TelemetryMetrics | None = None


class TelemetryTracker:
    """Thread-safe EWMA tracker of latency and error rate per model.

    One instance is shared by the selector and the feedback path. Construct
    it once at startup (see build_strategy_manager) and pass it by reference.
    """

    def __init__(
        self,
        alpha: float = DEFAULT_EWMA_ALPHA,
        max_age: timedelta = DEFAULT_MAX_AGE,
        error_threshold: float = DEFAULT_ERROR_THRESHOLD,
        min_requests: int = DEFAULT_MIN_REQUESTS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the tracker.

        Args:
            alpha: EWMA smoothing factor in (0, 1]; higher is more reactive
            max_age: Age after which an entry is reset instead of blended
            error_threshold: Default error rate above which a model is circuit-broken
            min_requests: Observations required before circuit breaking applies
            clock: Returns the current UTC time. Injected by tests.
        """
        if not 0.0 < alpha <= 1.0:
            raise ValueError(f"alpha must be in (0, 1], got {alpha}")
        if max_age <= timedelta(0):
            raise ValueError("max_age must be positive")
        if min_requests < 1:
            raise ValueError("min_requests must be at least 1")

        self._alpha = alpha
        self._max_age = max_age
        self._error_threshold = error_threshold
        self._min_requests = min_requests
        self._clock = clock or _utcnow

        self._slots: dict[ModelKey, _TelemetrySlot] = {}
        self._slots_lock = threading.Lock()

        log.info(
            "telemetry_tracker.initialized",
            alpha=alpha,
            max_age_hours=max_age.total_seconds() / 3600,
            error_threshold=error_threshold,
            min_requests=min_requests,
        )

    @property
    def alpha(self) -> float:
        return self._alpha

    # ------------------------------------------------------------------ #
    # Recording
    # ------------------------------------------------------------------ #

    def record_request(
        self,
        provider: str,
        model: str,
        latency_ms: float,
        success: bool,
    ) -> TelemetryMetrics:
        """Record the outcome of a provider call.

        An unseen key, or one whose data has gone stale, is seeded directly
        from this observation. Otherwise latency and error signal are blended
        with EWMA.

        Args:
            provider: Provider name
            model: Model name
            latency_ms: Observed latency in milliseconds
            success: Whether the call succeeded

        Returns:
            The updated metrics for this key
        """
        if not math.isfinite(latency_ms) or latency_ms < 0:
            raise ValueError(f"latency_ms must be a finite, non-negative number, got {latency_ms}")

        key = ModelKey(provider, model)
        error_value = 0.0 if success else 1.0
        slot = self._acquire_slot(key)
        try:
            now = self._clock()
            existing = slot.metrics

            if existing is None or self._is_stale(existing, now):
                if existing is not None:
                    log.debug(
                        "telemetry_tracker.stale_reset",
                        model_key=str(key),
                        previous_count=existing.request_count,
                    )
                updated = TelemetryMetrics(
                    provider=provider,
                    model=model,
                    latency_ms=float(latency_ms),
                    error_rate=error_value,
                    request_count=1,
                    last_updated=now,
                )
            else:
                updated = TelemetryMetrics(
                    provider=provider,
                    model=model,
                    latency_ms=calculate_ewma(existing.latency_ms, latency_ms, self._alpha),
                    error_rate=calculate_ewma(existing.error_rate, error_value, self._alpha),
                    request_count=existing.request_count + 1,
                    last_updated=now,
                )

            slot.metrics = updated
        finally:
            slot.lock.release()

        if self._breaks(updated, self._error_threshold):
            log.warning(
                "telemetry_tracker.circuit_open",
                model_key=str(key),
                error_rate=round(updated.error_rate, 4),
                request_count=updated.request_count,
            )

        return updated

    def record_requests(self, records: Iterable[RequestRecord]) -> int:
        """Record a batch of outcomes in order. Returns the number recorded."""
        count = 0
        for record in records:
            self.record_request(
                record.provider,
                record.model,
                record.latency_ms,
                record.success,
            )
            count += 1
        return count

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def get_telemetry(self, provider: str, model: str) -> TelemetryMetrics | None:
        """Return live metrics for a model, or None if absent or stale.

        Stale entries are purged as a side effect.
        """
        key = ModelKey(provider, model)
        with self._slots_lock:
            slot = self._slots.get(key)
        if slot is None:
            return None

        metrics = slot.metrics
        if metrics is None:
            return None
        if self._is_stale(metrics, self._clock()):
            self._purge_if_stale(slot)
            return None
        return metrics

    def get_recent_telemetry(self) -> dict[str, TelemetryMetrics]:
        """Snapshot of every live entry keyed by "provider:model"."""
        now = self._clock()
        result: dict[str, TelemetryMetrics] = {}
        for key, slot in self._snapshot_slots():
            metrics = slot.metrics
            if metrics is None:
                continue
            if self._is_stale(metrics, now):
                self._purge_if_stale(slot)
                continue
            result[str(key)] = metrics
        return result

    def get_provider_telemetry(self, provider: str) -> list[TelemetryMetrics]:
        """Live metrics for every model of one provider."""
        return [m for m in self.get_recent_telemetry().values() if m.provider == provider]

    def get_average_latency(self) -> float:
        """Mean EWMA latency across live entries (0.0 when empty)."""
        values = list(self.get_recent_telemetry().values())
        if not values:
            return 0.0
        return sum(m.latency_ms for m in values) / len(values)

    def get_average_error_rate(self) -> float:
        """Mean EWMA error rate across live entries (0.0 when empty)."""
        values = list(self.get_recent_telemetry().values())
        if not values:
            return 0.0
        return sum(m.error_rate for m in values) / len(values)

    @property
    def size(self) -> int:
        """Number of models with live telemetry."""
        return len(self.get_recent_telemetry())

    # ------------------------------------------------------------------ #
    # Circuit breaking
    # ------------------------------------------------------------------ #

    def should_circuit_break(
        self,
        provider: str,
        model: str,
        threshold: float | None = None,
    ) -> bool:
        """Whether a model should be excluded from selection.

        True only when at least min_requests observations exist and the
        EWMA error rate is strictly above the threshold.
        """
        metrics = self.get_telemetry(provider, model)
        if metrics is None:
            return False
        return self._breaks(metrics, self._error_threshold if threshold is None else threshold)

    def get_circuit_broken_models(self, threshold: float | None = None) -> list[str]:
        """Keys of every live model that is currently circuit-broken."""
        limit = self._error_threshold if threshold is None else threshold
        return sorted(
            key for key, metrics in self.get_recent_telemetry().items()
            if self._breaks(metrics, limit)
        )

    # ------------------------------------------------------------------ #
    # Management
    # ------------------------------------------------------------------ #

    def prune_stale(self) -> int:
        """Drop stale entries and release empty slots.

        Returns:
            Number of stale entries removed
        """
        removed = 0
        for _, slot in self._snapshot_slots():
            if self._purge_if_stale(slot):
                removed += 1
        released = self._release_empty_slots()
        if removed or released:
            log.info("telemetry_tracker.pruned", removed=removed, slots_released=released)
        return removed

    def clear_model(self, provider: str, model: str) -> None:
        """Forget telemetry for one model."""
        with self._slots_lock:
            slot = self._slots.get(ModelKey(provider, model))
        if slot is not None:
            with slot.lock:
                slot.metrics = None

    def clear(self) -> None:
        """Forget all telemetry. Used for testing and manual resets."""
        for _, slot in self._snapshot_slots():
            with slot.lock:
                slot.metrics = None
        self._release_empty_slots()
        log.debug("telemetry_tracker.cleared")

    def export_snapshot(self) -> dict[str, Any]:
        """Export current telemetry for debugging and dashboards.

        Returns:
            Dict with timestamp, total_models, avg_latency, avg_error_rate and
            metrics sorted by latency (fastest first).
        """
        values = sorted(self.get_recent_telemetry().values(), key=lambda m: m.latency_ms)
        count = len(values)
        return {
            "timestamp": self._clock().isoformat(),
            "total_models": count,
            "avg_latency": sum(m.latency_ms for m in values) / count if count else 0.0,
            "avg_error_rate": sum(m.error_rate for m in values) / count if count else 0.0,
            "metrics": [m.to_dict() for m in values],
        }

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _slot(self, key: ModelKey) -> _TelemetrySlot:
        with self._slots_lock:
            slot = self._slots.get(key)
            if slot is None:
                slot = _TelemetrySlot()
                self._slots[key] = slot
            return slot

    def _acquire_slot(self, key: ModelKey) -> _TelemetrySlot:
        """Return the slot registered for key with its lock held."""
        while True:
            slot = self._slot(key)
            slot.lock.acquire()
            with self._slots_lock:
                if self._slots.get(key) is slot:
                    return slot
            # Released by a concurrent prune; retry on a fresh slot.
            slot.lock.release()

    def _release_empty_slots(self) -> int:
        released = 0
        with self._slots_lock:
            for key, slot in list(self._slots.items()):
                # A held lock means a writer is about to fill the slot.
                if not slot.lock.acquire(blocking=False):
                    continue
                try:
                    if slot.metrics is None:
                        del self._slots[key]
                        released += 1
                finally:
                    slot.lock.release()
        return released

    def _snapshot_slots(self) -> list[tuple[ModelKey, _TelemetrySlot]]:
        with self._slots_lock:
            return list(self._slots.items())

    def _is_stale(self, metrics: TelemetryMetrics, now: datetime) -> bool:
        return now - metrics.last_updated > self._max_age

    def _purge_if_stale(self, slot: _TelemetrySlot) -> bool:
        # Re-check under the lock: a writer may have refreshed the entry.
        with slot.lock:
            metrics = slot.metrics
            if metrics is not None and self._is_stale(metrics, self._clock()):
                slot.metrics = None
                return True
        return False

    def _breaks(self, metrics: TelemetryMetrics, threshold: float) -> bool:
        return metrics.request_count >= self._min_requests and metrics.error_rate > threshold
