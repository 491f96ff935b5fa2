"""Prometheus scrape endpoint.

Returns the in-process registry in text exposition format, e.g.:

  # TYPE completion_attempts_total counter
  completion_attempts_total{kind="video",result="queued"} 3.0
  # TYPE retry_queue_depth gauge
  retry_queue_depth 1.0

Restrict access to /metrics in production; the endpoint labels reveal
route templates and request rates.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
