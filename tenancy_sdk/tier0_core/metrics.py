"""
tenancy_sdk.tier0_core.metrics
───────────────────────────────
Prometheus instruments for context switching and aggregation. Every
instrument carries the standard ``service`` and ``env`` labels, taken from
TenancyConfig when a sample is recorded. Exposure (/metrics endpoint or
push gateway) belongs to the host application; instruments register on
the default prometheus_client registry.

Minimal stack: prometheus-client
Configure via: APP_NAME, APP_ENV
"""
from __future__ import annotations

from typing import Callable

from prometheus_client import Counter, Histogram
from prometheus_client.metrics import MetricWrapperBase

from tenancy_sdk.tier0_core.config import get_config

_STANDARD_LABELS = ("service", "env")

_LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


def _bound(metric: MetricWrapperBase) -> Callable[..., MetricWrapperBase]:
    def _labels(**extra_labels: str) -> MetricWrapperBase:
        cfg = get_config()
        return metric.labels(service=cfg.app_name, env=cfg.environment, **extra_labels)

    return _labels


def counter(name: str, description: str, labels: list[str] | None = None) -> Callable[..., Counter]:
    """
    Declare a counter with the standard labels.

    Usage:
        switches = counter("tenancy_context_switches_total", "Context pushes", ["kind"])
        switches(kind="tenant").inc()
    """
    return _bound(Counter(name, description, [*_STANDARD_LABELS, *(labels or [])]))


def histogram(
    name: str,
    description: str,
    labels: list[str] | None = None,
    buckets: tuple[float, ...] = _LATENCY_BUCKETS,
) -> Callable[..., Histogram]:
    """Declare a histogram with the standard labels. Buckets default to latency seconds."""
    return _bound(
        Histogram(name, description, [*_STANDARD_LABELS, *(labels or [])], buckets=buckets)
    )


# ── Tenancy instruments ───────────────────────────────────────────────────────

context_switches = counter(
    "tenancy_context_switches_total",
    "Context pushes by target kind (central or tenant)",
    ["kind"],
)
operations_total = counter(
    "tenancy_operations_total",
    "Scoped operations by outcome: ok or the error code",
    ["outcome"],
)
operation_duration = histogram(
    "tenancy_operation_duration_seconds",
    "Wall time of one scoped operation, context push to restore",
)
aggregations_total = counter(
    "tenancy_aggregations_total",
    "Cross-tenant aggregations by completion state",
    ["state"],
)


__all__ = [
    "counter", "histogram",
    "context_switches", "operations_total", "operation_duration", "aggregations_total",
]
