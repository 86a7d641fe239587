"""Lightweight in-process metrics aggregation for health reporting."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict

from tessera.core.types import TaskOutcome


@dataclass
class AggregatedMetrics:
    """Aggregated counters used for health reporting."""

    tasks_submitted: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_rejected: int = 0
    steps_total: int = 0
    tokens_total: int = 0
    retries_total: int = 0
    delegations_total: int = 0
    capability_calls: Dict[str, int] = field(default_factory=dict)
    failure_kinds: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, float | int | dict[str, int]]:
        finished = self.tasks_completed + self.tasks_failed
        failure_rate = (self.tasks_failed / finished) if finished else 0.0
        avg_steps = (self.steps_total / finished) if finished else 0.0
        return {
            "tasks_submitted": self.tasks_submitted,
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "tasks_rejected": self.tasks_rejected,
            "failure_rate": failure_rate,
            "steps_total": self.steps_total,
            "avg_steps": avg_steps,
            "tokens_total": self.tokens_total,
            "retries_total": self.retries_total,
            "delegations_total": self.delegations_total,
            "capability_calls": dict(self.capability_calls),
            "failure_kinds": dict(self.failure_kinds),
        }


class MetricsRegistry:
    """Thread-safe accumulator for engine execution metrics."""

    def __init__(self) -> None:
        self._metrics = AggregatedMetrics()
        self._lock = threading.RLock()

    def record_submitted(self) -> None:
        with self._lock:
            self._metrics.tasks_submitted += 1

    def record_rejected(self) -> None:
        with self._lock:
            self._metrics.tasks_rejected += 1

    def record_retry(self) -> None:
        with self._lock:
            self._metrics.retries_total += 1

    def record_delegation(self) -> None:
        with self._lock:
            self._metrics.delegations_total += 1

    def record_capability_call(self, name: str) -> None:
        with self._lock:
            self._metrics.capability_calls[name] = self._metrics.capability_calls.get(name, 0) + 1

    def record(self, outcome: TaskOutcome) -> None:
        with self._lock:
            if outcome.ok:
                self._metrics.tasks_completed += 1
            else:
                self._metrics.tasks_failed += 1
                kind = outcome.error.kind if outcome.error else "Unknown"
                self._metrics.failure_kinds[kind] = self._metrics.failure_kinds.get(kind, 0) + 1
            self._metrics.steps_total += outcome.steps
            self._metrics.tokens_total += outcome.usage.total_tokens

    def snapshot(self) -> AggregatedMetrics:
        with self._lock:
            snapshot = AggregatedMetrics()
            snapshot.tasks_submitted = self._metrics.tasks_submitted
            snapshot.tasks_completed = self._metrics.tasks_completed
            snapshot.tasks_failed = self._metrics.tasks_failed
            snapshot.tasks_rejected = self._metrics.tasks_rejected
            snapshot.steps_total = self._metrics.steps_total
            snapshot.tokens_total = self._metrics.tokens_total
            snapshot.retries_total = self._metrics.retries_total
            snapshot.delegations_total = self._metrics.delegations_total
            snapshot.capability_calls = dict(self._metrics.capability_calls)
            snapshot.failure_kinds = dict(self._metrics.failure_kinds)
            return snapshot


_GLOBAL_METRICS = MetricsRegistry()


def get_metrics_registry() -> MetricsRegistry:
    return _GLOBAL_METRICS


def reset_metrics() -> None:
    global _GLOBAL_METRICS
    _GLOBAL_METRICS = MetricsRegistry()


__all__ = ["AggregatedMetrics", "MetricsRegistry", "get_metrics_registry", "reset_metrics"]
