"""In-process metrics counters and histograms."""

import time
from collections import defaultdict
from typing import Any

from backend.core.config import settings

# Global metrics storage
_metrics = defaultdict(lambda: {"count": 0, "sum": 0.0, "values": [], "buckets": defaultdict(int)})


def init_metrics() -> None:
    """Initialize metrics if enabled."""
    if not settings.enable_metrics:
        return


def _key(name: str, labels: dict[str, str] | None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in sorted(labels.items())) + "}"


def increment_counter(name: str, labels: dict[str, str] = None, value: float = 1.0) -> None:
    """Increment a counter metric."""
    if not settings.enable_metrics:
        return
    _metrics[_key(name, labels)]["count"] += value


def record_histogram(name: str, value: float, labels: dict[str, str] = None) -> None:
    """Record a histogram measurement."""
    if not settings.enable_metrics:
        return

    metrics = _metrics[_key(name, labels)]
    metrics["count"] += 1
    metrics["sum"] += value
    metrics["values"].append(value)

    if value < 100:
        metrics["buckets"]["<100"] += 1
    elif value < 1000:
        metrics["buckets"]["100-1000"] += 1
    elif value < 10000:
        metrics["buckets"]["1000-10000"] += 1
    elif value < 60000:
        metrics["buckets"]["10000-60000"] += 1
    else:
        metrics["buckets"][">=60000"] += 1


def observe_duration(start_time: float, name: str, labels: dict[str, str] = None) -> None:
    """Observe a duration measurement in milliseconds."""
    record_histogram(name, (time.time() - start_time) * 1000, labels)


def get_metrics() -> dict[str, Any]:
    """Get current metrics snapshot."""
    if not settings.enable_metrics:
        return {"note": "metrics disabled"}

    result = {}
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


def reset_metrics() -> None:
    """Reset all metrics (useful for testing)."""
    _metrics.clear()


# Cache synchronizer
def increment_sync_runs(status: str) -> None:
    increment_counter("sync_runs_total", {"status": status})


def increment_invoices_synced(inserted: int, updated: int, deleted: int) -> None:
    increment_counter("cache_invoices_inserted_total", value=inserted)
    increment_counter("cache_invoices_updated_total", value=updated)
    increment_counter("cache_invoices_deleted_total", value=deleted)


def increment_erp_retries(operation: str) -> None:
    increment_counter("erp_retries_total", {"operation": operation})


def record_sync_duration(duration_ms: float) -> None:
    record_histogram("sync_duration_ms", duration_ms)


# Dunning runs
def increment_emails(outcome: str, value: int = 1) -> None:
    """Count schedule outcomes: scheduled, sent, failed, skipped."""
    increment_counter("dunning_emails_total", {"outcome": outcome}, value=value)


def increment_automation_runs(status: str) -> None:
    increment_counter("dunning_runs_total", {"status": status})


def record_run_duration(duration_ms: float) -> None:
    record_histogram("dunning_run_duration_ms", duration_ms)


def record_ops_duration(duration_ms: float, endpoint: str = "") -> None:
    record_histogram("admin_api_duration_ms", duration_ms, {"endpoint": endpoint} if endpoint else None)
