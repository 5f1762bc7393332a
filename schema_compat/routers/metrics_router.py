"""
Metrics router for Prometheus endpoint.
"""
from fastapi import APIRouter, Response

from schema_compat.core.metrics import get_metrics

router = APIRouter(tags=["metrics"])


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Returns Prometheus-formatted metrics for monitoring.",
    response_class=Response
)
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format for scraping.
    """
    content, content_type = get_metrics()
    return Response(content=content, media_type=content_type)
