"""
Metrics Endpoint

GET /api/v1/metrics - Prometheus metrics endpoint
"""

from fastapi import APIRouter, Response

from imagery.core.metrics import get_metrics, get_metrics_content_type

router = APIRouter()


@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Exposes:
    - analyses_total (per classification)
    - model_latency_seconds / model_invocations_total (per model)
    - engine_queue_depth (per tier), engine_active_workers
    - engine_errors_total / engine_dead_letter_total (per error code)
    - http_requests_total
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
