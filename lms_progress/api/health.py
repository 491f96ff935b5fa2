"""Health and readiness endpoints.

  /health  liveness + dependency status + SLO compliance.  Always 200;
           the "status" field says "ok" or "degraded".  Restarting the
           process would drop every learner's in-memory retry timers, so
           a partial outage must not fail liveness.

  /ready   readiness.  503 when the configured row store cannot be
           reached: completions would all be queued, so this instance
           should stop taking traffic until it can write again.  Redis
           is not critical here; the attempt log and cache degrade to
           logged warnings.

SLO values are per-process approximations read from the in-process
Prometheus registry.  The consistency SLO reflects the last diagnosis
this process ran (progress_inconsistent_pairs is set by it).
"""

from __future__ import annotations

from fastapi import APIRouter, Response
from prometheus_client import REGISTRY
from sqlalchemy import text

from lms_progress.core.slo import (
    evaluate_availability,
    evaluate_completion_delivery,
    evaluate_progress_consistency,
)
from lms_progress.db.engine import engine
from lms_progress.db.redis import redis_pool
from lms_progress.services.sessions import session_registry

router = APIRouter(tags=["health"])


def _sum_counter(metric_name: str, label_filter: dict | None = None) -> float:
    """Sum a labelled counter across every label combination matching the filter."""
    total = 0.0
    for metric in REGISTRY.collect():
        for sample in metric.samples:
            if sample.name != metric_name:
                continue
            if label_filter and not all(
                sample.labels.get(k) == v for k, v in label_filter.items()
            ):
                continue
            total += sample.value
    return total


def _gauge_value(metric_name: str) -> float:
    for metric in REGISTRY.collect():
        for sample in metric.samples:
            if sample.name == metric_name:
                return sample.value
    return 0.0


async def _check_database() -> str:
    if engine is None:
        return "not_configured"
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        return "degraded"
    return "ok"


async def _check_redis() -> str:
    if redis_pool is None:
        return "not_configured"
    try:
        await redis_pool.ping()  # type: ignore[misc]
    except Exception:
        return "degraded"
    return "ok"


@router.get("/health")
async def health() -> dict:
    checks = {
        "database": await _check_database(),
        "redis": await _check_redis(),
    }
    overall = "degraded" if "degraded" in checks.values() else "ok"

    total_all = _sum_counter("http_requests_total")
    total_5xx = sum(
        _sum_counter("http_requests_total", {"status_code": str(code)})
        for code in range(500, 512)
    )
    availability = evaluate_availability(int(total_all), int(total_5xx))

    delivery = evaluate_completion_delivery(
        succeeded=int(_sum_counter("completion_retries_total", {"outcome": "succeeded"})),
        exhausted=int(_sum_counter("completion_retries_total", {"outcome": "exhausted"})),
    )

    # Pairs, not users, but zero is the only value that matters here.
    inconsistent = _gauge_value("progress_inconsistent_pairs")
    consistency = evaluate_progress_consistency(100.0 if inconsistent == 0 else 0.0)

    slos = {}
    for s in [availability, delivery, consistency]:
        slos[s.slo.name] = {
            "current": s.current,
            "target": s.slo.target,
            "healthy": s.healthy,
        }

    return {
        "status": overall,
        "checks": checks,
        "sessions": len(session_registry),
        "retry_queue_depth": int(_gauge_value("retry_queue_depth")),
        "slos": slos,
    }


@router.get("/ready")
async def ready() -> Response:
    if await _check_database() == "degraded":
        return Response(status_code=503)
    return Response(status_code=200)
