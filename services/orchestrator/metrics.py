"""Prometheus metrics for the decision pipeline.

Exposes key metrics for monitoring:
- Jobs submitted by kind
- Decisions by status
- Stage outcomes and durations
- Payment correlation outcomes

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import Counter, Histogram, generate_latest
from prometheus_client.openmetrics.exposition import CONTENT_TYPE_LATEST

jobs_submitted_total = Counter(
    "pipeline_jobs_submitted_total",
    "Total jobs accepted by the orchestrator",
    ["kind"],  # DOCUMENT, WEBHOOK
)

decisions_total = Counter(
    "pipeline_decisions_total",
    "Total decisions written",
    ["status"],  # APPROVED, NEEDS_REVIEW, REJECTED
)

stage_results_total = Counter(
    "pipeline_stage_results_total",
    "Stage results by outcome",
    ["stage", "status"],
)

stage_duration_seconds = Histogram(
    "pipeline_stage_duration_seconds",
    "Stage execution duration in seconds",
    ["stage"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

payments_notified_total = Counter(
    "pipeline_payments_notified_total",
    "Payments delivered to the orchestrator",
    ["outcome"],  # correlated, buffered, dropped
)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics in text format.

    Returns:
        Tuple of (metrics bytes, content type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
