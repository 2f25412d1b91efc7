# ==== PROMETHEUS METRICS ==== #

"""
Prometheus metrics for the discount automation engine.

Tracks evaluation outcomes, applied discounts, side-effect failures and
retry behaviour, and exposes them on a scrape endpoint.
"""

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    REGISTRY
)


# ==== DISCOUNT METRICS ==== #

discount_evaluations_total = Counter(
    "discount_evaluations_total",
    "Eligibility evaluations by outcome",
    ["outcome"]  # matched, no_match, explicit_rejected
)

discount_applications_total = Counter(
    "discount_applications_total",
    "Apply requests by final outcome",
    ["outcome", "rule_type"]
)

discount_amount = Histogram(
    "discount_amount",
    "Applied discount amounts in invoice currency units",
    ["rule_type"],
    buckets=[10, 50, 100, 250, 500, 1000, 2500, 5000, 10000]
)

discount_usage_conflicts_total = Counter(
    "discount_usage_conflicts_total",
    "Conditional usage increments that lost a race against the usage limit",
    ["rule_type"]
)

discount_side_effect_failures_total = Counter(
    "discount_side_effect_failures_total",
    "Best-effort steps that failed after retries",
    ["step", "error_type"]
)

discount_apply_duration_seconds = Histogram(
    "discount_apply_duration_seconds",
    "End-to-end apply workflow duration in seconds",
    ["outcome"]
)

# HTTP metrics
http_request_duration_seconds = Histogram(
    "discount_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path", "status"]
)

# Retry metrics
retry_attempts_total = Counter(
    "discount_retry_attempts_total",
    "Total retry attempts",
    ["service", "operation", "attempt"]
)

retry_failures_total = Counter(
    "discount_retry_failures_total",
    "Total retry failures after all attempts",
    ["service", "operation", "error_type"]
)

# Database metrics
db_connections_active = Gauge(
    "discount_db_connections_active",
    "Number of active database sessions"
)

# System metrics
app_info = Gauge(
    "discount_engine_app_info",
    "Application information",
    ["version", "environment", "service_name"]
)


def init_metrics(app) -> None:
    """Initialize metrics collection.

    Args:
        app: FastAPI application instance
    """
    from discount_engine.settings import settings
    app_info.labels(
        version="0.1.0",
        environment=settings.APP_ENV,
        service_name=settings.SERVICE_NAME
    ).set(1)


# Metrics router for Prometheus scraping
metrics_router = APIRouter()


@metrics_router.get("/metrics")
def get_metrics() -> PlainTextResponse:
    """Expose Prometheus metrics for scraping.

    Returns:
        Prometheus metrics in text format
    """
    return PlainTextResponse(
        generate_latest(REGISTRY).decode("utf-8"),
        media_type="text/plain"
    )
