"""Prometheus metrics for the reconciler.

Metric naming follows Prometheus conventions. Label values are kept to
small closed sets (poller kind, outcome, operation) so cardinality stays
bounded regardless of how many resources are reconciled.

Usage::

    from reconciler.observability.metrics import POLL_OUTCOMES_TOTAL

    POLL_OUTCOMES_TOTAL.labels(poller="readiness", outcome="ready").inc()
"""

from __future__ import annotations

from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# ---------------------------------------------------------------------------
# Poller metrics
# ---------------------------------------------------------------------------

POLL_OUTCOMES_TOTAL = Counter(
    "reconciler_poll_outcomes_total",
    "Terminal poll outcomes by poller kind.",
    labelnames=["poller", "outcome"],
    registry=REGISTRY,
)

POLL_ERRORS_TOTAL = Counter(
    "reconciler_poll_errors_total",
    "Errors counted against poll budgets (transient reads and failed sub-nodes).",
    labelnames=["poller"],
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Shared-parent locking
# ---------------------------------------------------------------------------

NAMED_MUTEX_WAIT_SECONDS = Histogram(
    "reconciler_named_mutex_wait_seconds",
    "Time spent waiting to acquire a shared-parent lock.",
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0),
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Lifecycle operations
# ---------------------------------------------------------------------------

OPERATIONS_TOTAL = Counter(
    "reconciler_operations_total",
    "Lifecycle operations by resource kind, operation and result.",
    labelnames=["kind", "operation", "result"],
    registry=REGISTRY,
)


def metrics_text() -> tuple[bytes, str]:
    """Generate Prometheus exposition text and content-type header."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
