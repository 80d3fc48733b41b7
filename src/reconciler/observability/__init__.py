"""Observability infrastructure for the reconciler.

Provides structured logging with operation-ID correlation and Prometheus
metrics for pollers, shared-parent locks and lifecycle operations.

Quick start::

    from reconciler.observability import configure_logging, metrics_text

    configure_logging()
    body, content_type = metrics_text()
"""

from .logging import configure_logging, get_logger, operation_id_ctx
from .metrics import metrics_text

__all__ = [
    "configure_logging",
    "get_logger",
    "metrics_text",
    "operation_id_ctx",
]
