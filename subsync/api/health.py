"""
Health endpoints for operational monitoring. No secrets are returned.
"""

import logging
import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from subsync.core.database import get_engine, metadata
from subsync.core.logging import latency_bucket_ms, get_request_id

logger = logging.getLogger("subsync")

root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + billing tables."""
    required_tables = sorted(metadata.tables)

    start = time.perf_counter()
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [t for t in required_tables if not inspector.has_table(t)]
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}", extra={"request_id": get_request_id()})
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    logger.info(
        "health.ready",
        extra={
            "request_id": get_request_id(),
            "latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000),
        },
    )
    return {"status": "ok"}
