"""Application wide metrics utilities."""
from .definitions import (
    CACHE_HITS_TOTAL,
    CACHE_MISSES_TOTAL,
    DEFAULT_METRIC_DEFINITIONS,
    OBSERVER_FAILURES_TOTAL,
    REJECTIONS_TOTAL,
    TRANSITIONS_TOTAL,
    WORKFLOW_DURATION_SECONDS,
    MetricDefinition,
)
from .registry import CounterMetric, DistributionMetric, MetricsRegistry


def register_default_metrics(registry: MetricsRegistry) -> MetricsRegistry:
    """Ensure all default metric definitions exist in ``registry``."""

    for definition in DEFAULT_METRIC_DEFINITIONS:
        if definition.metric_type == "counter":
            registry.counter(
                definition.name,
                description=definition.description,
                label_names=definition.label_names,
            )
        elif definition.metric_type == "distribution":
            registry.distribution(
                definition.name,
                description=definition.description,
                label_names=definition.label_names,
            )
        else:  # pragma: no cover - definitions are static
            raise ValueError(f"Unsupported metric type: {definition.metric_type}")
    return registry


def create_registry() -> MetricsRegistry:
    """Return a fresh registry with the workflow metrics registered."""

    return register_default_metrics(MetricsRegistry())


metrics_registry = create_registry()

__all__ = [
    "CACHE_HITS_TOTAL",
    "CACHE_MISSES_TOTAL",
    "OBSERVER_FAILURES_TOTAL",
    "REJECTIONS_TOTAL",
    "TRANSITIONS_TOTAL",
    "WORKFLOW_DURATION_SECONDS",
    "CounterMetric",
    "DistributionMetric",
    "MetricDefinition",
    "MetricsRegistry",
    "create_registry",
    "metrics_registry",
    "register_default_metrics",
]
