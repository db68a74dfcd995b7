"""Logging and Prometheus metric setup."""

from __future__ import annotations

import logging
import re

import structlog
from prometheus_client import REGISTRY, Counter, Histogram


def configure_logging(level: str = "INFO") -> None:
    """Configure stdlib logging and structlog to emit JSON lines."""

    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO))
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _get_or_create_metric(metric_cls, name: str, documentation: str, labelnames):
    existing = REGISTRY._names_to_collectors.get(name)
    if existing is not None:
        return existing
    return metric_cls(name, documentation, labelnames=labelnames)


REQUEST_COUNTER = _get_or_create_metric(
    Counter,
    "clinicavoice_requests_total",
    "Total HTTP requests processed by the backend",
    ("method", "endpoint", "status"),
)
REQUEST_LATENCY = _get_or_create_metric(
    Histogram,
    "clinicavoice_request_latency_seconds",
    "Latency of HTTP requests",
    ("method", "endpoint"),
)
DETACHED_TASK_FAILURES = _get_or_create_metric(
    Counter,
    "clinicavoice_detached_task_failures_total",
    "Background side effects that raised",
    ("task",),
)
INVITATIONS_SENT = _get_or_create_metric(
    Counter,
    "clinicavoice_invitations_sent_total",
    "Patient portal invitations dispatched",
    ("outcome",),
)

# Identifier-like path segments: numbers, hex ids, uuids, MRNs.
_PATH_PARAM_RE = re.compile(
    r"/(?:[0-9]+|[0-9a-fA-F]{8,}|[0-9a-fA-F-]{36}|MRN-[0-9]{8}-[0-9]{4})(?=/|$)"
)


def normalise_path_for_metrics(path: str) -> str:
    """Reduce high-cardinality segments in request paths for metrics labels."""

    if not path:
        return "/"
    return _PATH_PARAM_RE.sub("/:param", path)


__all__ = [
    "configure_logging",
    "normalise_path_for_metrics",
    "REQUEST_COUNTER",
    "REQUEST_LATENCY",
    "DETACHED_TASK_FAILURES",
    "INVITATIONS_SENT",
]
