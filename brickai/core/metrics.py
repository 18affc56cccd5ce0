"""
Prometheus Metrics for Observability

Tracks pipeline performance, identity provider calls and HTTP traffic.
Exposes /metrics endpoint for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_latency_seconds = Histogram(
    "pipeline_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# Pipeline Runs by terminal status
pipeline_runs_total = Counter(
    "pipeline_runs_total",
    "Total number of pipeline runs by terminal status",
    labelnames=["status"]
)

# Active Pipelines
active_pipelines_gauge = Gauge(
    "active_pipelines",
    "Number of pipeline runs currently in progress"
)

# Identity Provider Calls
identity_provider_calls_total = Counter(
    "identity_provider_calls_total",
    "Total number of identity provider token calls",
    labelnames=["grant_type", "outcome"]
)

# Stream events seen from the transformation service
transform_stream_events_total = Counter(
    "transform_stream_events_total",
    "Server-sent events read from the transformation service",
    labelnames=["kind"]  # content, empty, malformed, done
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 120.0]
)

# Application Info
app_info = Info(
    "brickai_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("download"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        duration = time.time() - start
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(duration)


def record_pipeline_started():
    active_pipelines_gauge.inc()


def record_pipeline_finished(status: str):
    """Record a pipeline run reaching a terminal status."""
    pipeline_runs_total.labels(status=status).inc()
    active_pipelines_gauge.dec()


def record_provider_call(grant_type: str, outcome: str):
    """Record an identity provider token call."""
    identity_provider_calls_total.labels(grant_type=grant_type, outcome=outcome).inc()


def record_stream_event(kind: str):
    transform_stream_events_total.labels(kind=kind).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
