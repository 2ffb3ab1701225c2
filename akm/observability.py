"""Structured logging setup and Prometheus metrics for the key manager."""

from __future__ import annotations

import logging

import structlog
from prometheus_client import REGISTRY, Counter


def configure_logging(level: str = "INFO") -> None:
    """Route structlog through stdlib logging with JSON rendering."""

    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format="%(message)s")
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


AUDIT_WRITE_FAILURES = _get_or_create_metric(
    Counter,
    "akm_audit_write_failures_total",
    "Audit entries that could not be appended to the audit log",
    (),
)
BUDGET_PERSIST_FAILURES = _get_or_create_metric(
    Counter,
    "akm_budget_persist_failures_total",
    "Background budget counter saves that failed",
    (),
)
PROXY_REQUESTS = _get_or_create_metric(
    Counter,
    "akm_proxy_requests_total",
    "Proxy requests partitioned by provider and outcome",
    ("provider", "outcome"),
)
EGRESS_FAILURES = _get_or_create_metric(
    Counter,
    "akm_egress_failures_total",
    "Outbound HTTP calls blocked or failed",
    ("reason",),
)
VERIFY_RESULTS = _get_or_create_metric(
    Counter,
    "akm_verify_results_total",
    "Key verification probes partitioned by provider and status",
    ("provider", "status"),
)


__all__ = [
    "AUDIT_WRITE_FAILURES",
    "BUDGET_PERSIST_FAILURES",
    "EGRESS_FAILURES",
    "PROXY_REQUESTS",
    "VERIFY_RESULTS",
    "configure_logging",
]
