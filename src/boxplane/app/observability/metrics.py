"""Prometheus metrics for the box control plane.

Usage::

    from boxplane.app.observability.metrics import DEPLOY_STEPS_TOTAL

    DEPLOY_STEPS_TOTAL.labels(step="health-check", status="failed").inc()
"""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ---------------------------------------------------------------------------
# HTTP request metrics
# ---------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    "boxplane_http_requests_total",
    "Total HTTP requests by method, path pattern, and status code.",
    labelnames=["method", "path", "status"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "boxplane_http_request_duration_seconds",
    "HTTP request latency in seconds.",
    labelnames=["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_FLIGHT = Gauge(
    "boxplane_http_requests_in_flight",
    "Number of HTTP requests currently being processed.",
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Deploy workflow metrics
# ---------------------------------------------------------------------------

DEPLOYMENTS_TOTAL = Counter(
    "boxplane_deployments_total",
    "Deployment attempts by outcome (submitted, running, error, stale).",
    labelnames=["outcome"],
    registry=REGISTRY,
)

# Step keys of skill installs carry the skill id; ``step`` is the step
# family (``install-skill``, ``setup``) to keep cardinality bounded.
DEPLOY_STEPS_TOTAL = Counter(
    "boxplane_deploy_steps_total",
    "Deploy step terminal outcomes by step family and status.",
    labelnames=["step", "status"],
    registry=REGISTRY,
)

CRON_EXECUTIONS_TOTAL = Counter(
    "boxplane_cron_executions_total",
    "Cronjob trigger executions by terminal status.",
    labelnames=["status"],
    registry=REGISTRY,
)


def step_family(step_key: str) -> str:
    return step_key.split(":", 1)[0]


def render_latest() -> tuple[bytes, str]:
    """Exposition payload and content type for a /metrics endpoint."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
