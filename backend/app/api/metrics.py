"""
Prometheus metrics endpoint.

Exposes GET /metrics in Prometheus text exposition format. The number of
runs currently held by the supervisor is sampled at scrape time.
"""

from fastapi import APIRouter, Request
from fastapi.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from app.middleware.metrics import processing_active_runs

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
async def prometheus_metrics(request: Request):
    supervisor = getattr(request.app.state, "run_supervisor", None)
    if supervisor is not None:
        processing_active_runs.set(len(supervisor.active_run_ids()))
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
