"""
api/routes/health.py
--------------------
GET /v1/health         liveness: the process is serving requests
GET /v1/health/ready   readiness: the enabled backing stores answer
"""
from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

import config
from db.connection import ping_postgres
from db.redis_client import ping_redis

logger = logging.getLogger(__name__)

router = APIRouter()

SERVICE_NAME = "outing-planner"


def _check(enabled: bool, probe) -> str:
    if not enabled:
        return "disabled"
    try:
        probe()
    except Exception as exc:
        logger.warning("[health] %s probe failed: %s", probe.__name__, exc)
        return f"error: {exc}"
    return "ok"


@router.get("/health", summary="Liveness check")
def health() -> dict:
    return {"status": "ok", "service": SERVICE_NAME}


@router.get("/health/ready", summary="Readiness check")
def ready() -> JSONResponse:
    """503 when an enabled store (Postgres, Redis) does not answer."""
    checks = {
        "postgres": _check(config.USE_POSTGRES, ping_postgres),
        "redis": _check(config.USE_REDIS_CONTEXT, ping_redis),
    }
    healthy = all(v in ("ok", "disabled") for v in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "ok" if healthy else "degraded", "service": SERVICE_NAME, "checks": checks},
    )
