"""
Observability module - Logging, Metrics, and Tracing.
"""

from licensecore.observability.logging import get_logger, log_context, setup_logging
from licensecore.observability.metrics import metrics
from licensecore.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
