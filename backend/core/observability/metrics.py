"""In-process metrics counters and histograms."""

import threading
import time
from collections import defaultdict
from typing import Any

from backend.core.config import settings

_lock = threading.Lock()
_metrics = defaultdict(lambda: {"count": 0, "sum": 0.0, "values": [], "buckets": defaultdict(int)})


def _key(name: str, labels: dict[str, str] | None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in sorted(labels.items())) + "}"


def increment_counter(name: str, labels: dict[str, str] | None = None, value: float = 1.0) -> None:
    """Increment a counter metric."""
    if not settings.enable_metrics:
        return
    with _lock:
        _metrics[_key(name, labels)]["count"] += value


def record_histogram(name: str, value: float, labels: dict[str, str] | None = None) -> None:
    """Record a histogram measurement."""
    if not settings.enable_metrics:
        return

    with _lock:
        metrics = _metrics[_key(name, labels)]
        metrics["count"] += 1
        metrics["sum"] += value
        metrics["values"].append(value)

        if value < 10:
            metrics["buckets"]["<10"] += 1
        elif value < 100:
            metrics["buckets"]["10-100"] += 1
        elif value < 1000:
            metrics["buckets"]["100-1000"] += 1
        elif value < 10000:
            metrics["buckets"]["1000-10000"] += 1
        else:
            metrics["buckets"][">=10000"] += 1


def observe_duration(start_time: float, name: str, labels: dict[str, str] | None = None) -> None:
    """Record the milliseconds elapsed since ``start_time`` (time.monotonic)."""
    record_histogram(name, (time.monotonic() - start_time) * 1000, labels)


def get_metrics() -> dict[str, Any]:
    """Get current metrics snapshot."""
    if not settings.enable_metrics:
        return {"note": "metrics disabled"}

    result = {}
    with _lock:
        for key, data in _metrics.items():
            metric_result = {"count": data["count"], "sum": data["sum"]}
            if data["values"]:
                values = data["values"]
                metric_result.update(
                    {
                        "min": min(values),
                        "max": max(values),
                        "avg": data["sum"] / len(values),
                        "buckets": dict(data["buckets"]),
                    }
                )
            result[key] = metric_result
    return result


def get_counter(name: str, labels: dict[str, str] | None = None) -> float:
    with _lock:
        data = _metrics.get(_key(name, labels))
        return data["count"] if data else 0


def reset_metrics() -> None:
    """Reset all metrics (useful for testing)."""
    with _lock:
        _metrics.clear()


# Reassignment metrics
def increment_reassigned(n: float = 1.0) -> None:
    increment_counter("dunning_reassigned_total", value=n)


def increment_escalations(n: float = 1.0) -> None:
    increment_counter("dunning_escalations_total", value=n)


def increment_reassign_errors(n: float = 1.0) -> None:
    increment_counter("dunning_reassign_errors_total", value=n)


# Dispatch metrics
def increment_dispatch_sent(channel: str, n: float = 1.0) -> None:
    increment_counter("dunning_dispatch_sent_total", labels={"channel": channel}, value=n)


def increment_dispatch_skipped(reason: str, n: float = 1.0) -> None:
    increment_counter("dunning_dispatch_skipped_total", labels={"reason": reason}, value=n)


def increment_dispatch_failures(n: float = 1.0) -> None:
    increment_counter("dunning_dispatch_failures_total", value=n)


def record_delivery_duration(ms: float) -> None:
    record_histogram("dunning_delivery_duration_ms", ms)


# Template metrics
def increment_templates_generated(n: float = 1.0) -> None:
    increment_counter("dunning_templates_generated_total", value=n)


def record_run_duration(operation: str, ms: float) -> None:
    record_histogram("dunning_run_duration_ms", ms, labels={"operation": operation})
