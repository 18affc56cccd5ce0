"""
Metrics Endpoint

GET /metrics - Prometheus metrics endpoint
"""

from fastapi import APIRouter, Response

from brickai.core.metrics import get_metrics, get_metrics_content_type

router = APIRouter()


@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Exposes:
    - pipeline_latency_seconds (per stage)
    - pipeline_runs_total / active_pipelines
    - identity_provider_calls_total
    - transform_stream_events_total
    - http_requests_total
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
