# rule_scheduler/core/monitoring.py
"""
Prometheus metrics for the scheduling pipeline.

Each engine records what it produced (rules, conflicts, predictions,
commits) and how long it took; the FastAPI app exposes the registry at
``/metrics``.
"""

import time
from contextlib import contextmanager
from typing import Iterator

from prometheus_client import Counter, Gauge, Histogram, CONTENT_TYPE_LATEST, generate_latest

RULES_GENERATED = Counter(
    'scheduler_rules_generated_total',
    'Scheduling rules generated from activity patterns',
    ['enabled']
)

RULE_CONFLICTS = Counter(
    'scheduler_rule_conflicts_total',
    'Rule conflicts detected',
    ['conflict_type']
)

PREDICTIONS_MADE = Counter(
    'scheduler_predictions_total',
    'Predictive schedules persisted',
    ['source']
)

PREDICTIONS_COMMITTED = Counter(
    'scheduler_predictions_committed_total',
    'High-confidence predictions materialized as tasks'
)

OPTIMIZATION_RUNS = Counter(
    'scheduler_optimization_runs_total',
    'Resource optimization runs by type and final state',
    ['optimization_type', 'status']
)

ITEM_FAILURES = Counter(
    'scheduler_item_failures_total',
    'Per-item processing failures that were logged and skipped',
    ['component']
)

SYSTEM_RESOURCES = Gauge(
    'scheduler_system_resources_percent',
    'Latest sampled host utilization as percent of configured capacity',
    ['resource_type']
)

ENGINE_DURATION = Histogram(
    'scheduler_engine_duration_seconds',
    'Time spent in each pipeline engine',
    ['engine']
)


@contextmanager
def track_duration(engine: str) -> Iterator[None]:
    """Observe the wall-clock duration of the wrapped block"""
    start = time.perf_counter()
    try:
        yield
    finally:
        ENGINE_DURATION.labels(engine=engine).observe(time.perf_counter() - start)


def render_metrics() -> tuple:
    """Return the Prometheus exposition payload and its content type"""
    return generate_latest(), CONTENT_TYPE_LATEST
