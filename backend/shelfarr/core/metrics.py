"""Prometheus metrics configuration."""

from __future__ import annotations

import structlog
from fastapi import FastAPI
from prometheus_client import Counter, Gauge, Histogram
from prometheus_fastapi_instrumentator import Instrumentator

logger = structlog.get_logger("shelfarr.metrics")

app_info = Gauge(
    "app_info",
    "Application information",
    ["version"],
)

# Database connection pool metrics
db_connections_active = Gauge(
    "db_connections_active",
    "Number of active database connections",
)
db_connections_idle = Gauge(
    "db_connections_idle",
    "Number of idle database connections in pool",
)
db_connections_overflow = Gauge(
    "db_connections_overflow",
    "Number of overflow database connections beyond pool size",
)
db_pool_size = Gauge(
    "db_pool_size",
    "Configured database connection pool size",
)

# Database retry operation metrics
db_retry_attempts_total = Counter(
    "db_retry_attempts_total",
    "Total number of database operation retry attempts",
    ["operation_type"],
)
db_lock_errors_total = Counter(
    "db_lock_errors_total",
    "Total number of database lock errors encountered",
)
db_retries_succeeded_total = Counter(
    "db_retries_succeeded_total",
    "Total number of database operations that succeeded after retry",
    ["operation_type"],
)
db_retries_failed_total = Counter(
    "db_retries_failed_total",
    "Total number of database operations that failed after all retries",
    ["operation_type"],
)
db_retry_duration_seconds = Histogram(
    "db_retry_duration_seconds",
    "Duration of database retry operations in seconds",
    ["operation_type"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Metadata source metrics
source_requests_total = Counter(
    "metadata_source_requests_total",
    "Requests issued to external metadata sources",
    ["source", "operation", "outcome"],  # outcome: success, cached, error, rate_limited
)
source_request_duration_seconds = Histogram(
    "metadata_source_request_duration_seconds",
    "Latency of external metadata source requests",
    ["source", "operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)
cross_source_results_total = Counter(
    "cross_source_results_total",
    "Per-source outcome of cross-source matching",
    ["source", "status"],  # status: matched, no_match, error, skipped
)

# Metadata job metrics
metadata_job_transitions_total = Counter(
    "metadata_job_transitions_total",
    "Metadata job status transitions",
    ["status"],
)
metadata_jobs_active = Gauge(
    "metadata_jobs_active",
    "Metadata jobs with a background step currently running",
)
metadata_apply_files_total = Counter(
    "metadata_apply_files_total",
    "Files processed by the apply step",
    ["outcome"],  # outcome: success, failed, skipped, converted, conversion_failed
)


def setup_metrics(app: FastAPI, app_version: str) -> None:
    """Setup Prometheus metrics using prometheus-fastapi-instrumentator.

    Args:
        app: FastAPI application instance
        app_version: Application version
    """
    if getattr(app.state, "_metrics_initialized", False):
        logger.debug("Metrics already initialized for this app instance, skipping")
        return

    instrumentator = Instrumentator(
        should_group_status_codes=False,
        should_ignore_untemplated=True,
        should_instrument_requests_inprogress=True,
        excluded_handlers=[
            "/metrics",
            "/docs",
            "/openapi.json",
            "/redoc",
        ],
    )
    instrumentator.instrument(app).expose(app, endpoint="/metrics")

    app.state._metrics_initialized = True
    app_info.labels(version=app_version).set(1)

    logger.info("Metrics initialized", version=app_version)
