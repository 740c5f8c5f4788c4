from __future__ import annotations

from bisect import bisect_left
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, TypeVar

import structlog

from deploy_watch.models import (
    Alert,
    AlertType,
    MetricSample,
    PerformanceSummary,
    utcnow,
)
from deploy_watch.state_files import read_json_document, write_json_atomic


logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _coerce_list(raw: Any, parse: Callable[[dict[str, Any]], T], kind: str) -> list[T]:
    """Best-effort decode; malformed entries are dropped so a partial write never blocks startup."""
    if not isinstance(raw, list):
        return []
    out: list[T] = []
    dropped = 0
    for item in raw:
        try:
            out.append(parse(item))
        except (ValueError, TypeError):
            dropped += 1
    if dropped:
        logger.warning("Dropped malformed metrics entries", kind=kind, dropped=dropped)
    out.sort(key=lambda x: x.timestamp)  # type: ignore[attr-defined]
    return out


@dataclass
class MetricsState:
    """Everything the monitoring loop persists to ``monitoring-metrics.json``."""

    samples: list[MetricSample] = field(default_factory=list)
    performance: list[PerformanceSummary] = field(default_factory=list)
    alerts: list[Alert] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "samples": [s.to_dict() for s in self.samples],
            "performance": [p.to_dict() for p in self.performance],
            "alerts": [a.to_dict() for a in self.alerts],
        }

    @classmethod
    def from_dict(cls, raw: Any) -> MetricsState:
        if not isinstance(raw, dict):
            return cls()
        return cls(
            samples=_coerce_list(raw.get("samples"), MetricSample.from_dict, "samples"),
            performance=_coerce_list(raw.get("performance"), PerformanceSummary.from_dict, "performance"),
            alerts=_coerce_list(raw.get("alerts"), Alert.from_dict, "alerts"),
        )

    def append_sample(self, sample: MetricSample) -> None:
        # Appends arrive in cycle order; fall back to a sorted insert on clock jumps.
        if not self.samples or self.samples[-1].timestamp <= sample.timestamp:
            self.samples.append(sample)
            return
        idx = bisect_left([s.timestamp for s in self.samples], sample.timestamp)
        self.samples.insert(idx, sample)

    def prune(self, *, before: datetime) -> None:
        self.samples = [s for s in self.samples if s.timestamp >= before]
        self.performance = [p for p in self.performance if p.timestamp >= before]
        self.alerts = [a for a in self.alerts if a.timestamp >= before]

    def samples_for(self, environment: str) -> list[MetricSample]:
        return [s for s in self.samples if s.environment == environment]


def load_metrics_state(path: Path) -> MetricsState:
    return MetricsState.from_dict(read_json_document(path, default={}))


def save_metrics_state(path: Path, state: MetricsState) -> None:
    write_json_atomic(path, state.to_dict())


def window_samples(items: list[MetricSample], *, since: datetime) -> list[MetricSample]:
    if not items:
        return []
    idx = bisect_left([s.timestamp for s in items], since)
    return items[idx:]


def compute_availability(items: list[MetricSample]) -> tuple[int, int, float | None]:
    """
    Returns (total, ok_count, ok_ratio_or_None_if_total_0)
    """
    total = len(items)
    if total <= 0:
        return 0, 0, None
    ok_count = sum(1 for s in items if s.success)
    return total, ok_count, ok_count / float(total)


def mean_response_time_ms(items: list[MetricSample]) -> float | None:
    values = [s.response_time_ms for s in items if s.response_time_ms is not None]
    if not values:
        return None
    return sum(values) / float(len(values))


def summarize_window(
    environment: str,
    items: list[MetricSample],
    *,
    now: datetime | None = None,
) -> PerformanceSummary | None:
    total, ok_count, availability = compute_availability(items)
    if availability is None:
        return None
    return PerformanceSummary(
        timestamp=now or utcnow(),
        environment=environment,
        availability=availability,
        avg_response_time_ms=mean_response_time_ms(items),
        total_checks=total,
        success_count=ok_count,
    )


def error_rate_for(state: MetricsState, environment: str, *, window: timedelta, now: datetime | None = None) -> float:
    since = (now or utcnow()) - window
    items = window_samples(state.samples_for(environment), since=since)
    total, ok_count, _ratio = compute_availability(items)
    if total <= 0:
        return 0.0
    return (total - ok_count) / float(total)


def evaluate_thresholds(
    summary: PerformanceSummary,
    *,
    availability_min: float,
    response_time_max_ms: float,
    error_rate_max: float,
    now: datetime | None = None,
) -> list[Alert]:
    """Each breached boundary yields its own alert; a value exactly on a boundary does not breach."""
    env = summary.environment
    ts = now or utcnow()
    alerts: list[Alert] = []

    if summary.availability < availability_min:
        alerts.append(
            Alert.create(
                AlertType.AVAILABILITY,
                f"Low availability in {env}",
                f"Availability dropped to {summary.availability * 100:.2f}% (threshold: {availability_min * 100:g}%)",
                environment=env,
                timestamp=ts,
            )
        )

    avg_ms = summary.avg_response_time_ms
    if avg_ms is not None and avg_ms > response_time_max_ms:
        alerts.append(
            Alert.create(
                AlertType.PERFORMANCE,
                f"High response time in {env}",
                f"Average response time: {avg_ms:.0f}ms (threshold: {response_time_max_ms:g}ms)",
                environment=env,
                timestamp=ts,
            )
        )

    if summary.error_rate > error_rate_max:
        alerts.append(
            Alert.create(
                AlertType.ERRORS,
                f"High error rate in {env}",
                f"Error rate: {summary.error_rate * 100:.2f}% (threshold: {error_rate_max * 100:g}%)",
                environment=env,
                timestamp=ts,
            )
        )
    return alerts
