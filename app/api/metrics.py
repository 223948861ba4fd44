"""
Metrics endpoint for Prometheus scraping.
Auth required.
"""
from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from app.core.job_queue import build_queue
from app.core.metrics import metrics

router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=PlainTextResponse)
async def get_metrics() -> str:
    """
    Export counters plus queue depth in Prometheus text format.

    Requires authentication via X-API-Key header.
    """
    gauges = {f"queue_{state}": count for state, count in build_queue.stats().items()}
    return metrics.to_prometheus(gauges=gauges)
