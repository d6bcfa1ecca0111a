"""Metric definitions registered for the ticket workflow."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class MetricDefinition:
    """Describe a metric that should exist in the registry."""

    name: str
    metric_type: str
    description: str
    label_names: Tuple[str, ...] = ()


TRANSITIONS_TOTAL = "ticket_transitions_total"
REJECTIONS_TOTAL = "ticket_workflow_rejections_total"
OBSERVER_FAILURES_TOTAL = "observer_notification_failures_total"
CACHE_HITS_TOTAL = "state_machine_cache_hits_total"
CACHE_MISSES_TOTAL = "state_machine_cache_misses_total"
WORKFLOW_DURATION_SECONDS = "ticket_workflow_duration_seconds"

DEFAULT_METRIC_DEFINITIONS: Tuple[MetricDefinition, ...] = (
    MetricDefinition(
        name=TRANSITIONS_TOTAL,
        metric_type="counter",
        description="State transitions recorded in the ticket history.",
        label_names=("state",),
    ),
    MetricDefinition(
        name=REJECTIONS_TOTAL,
        metric_type="counter",
        description="Workflow operations rejected, by error kind.",
        label_names=("kind",),
    ),
    MetricDefinition(
        name=OBSERVER_FAILURES_TOTAL,
        metric_type="counter",
        description="State-change notifications the observer did not accept.",
    ),
    MetricDefinition(
        name=CACHE_HITS_TOTAL,
        metric_type="counter",
        description="State machine lookups served from the cache.",
    ),
    MetricDefinition(
        name=CACHE_MISSES_TOTAL,
        metric_type="counter",
        description="State machine lookups that went to storage.",
    ),
    MetricDefinition(
        name=WORKFLOW_DURATION_SECONDS,
        metric_type="distribution",
        description="Duration of ticket workflow operations in seconds.",
        label_names=("operation",),
    ),
)
