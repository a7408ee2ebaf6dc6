"""
Health endpoints.

Liveness plus a database probe that never exposes connection details.
"""

import logging
import time
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel
from sqlalchemy import inspect

from personachat.core.database import check_connection, get_engine
from personachat.core.logging import get_request_id, latency_bucket_ms

logger = logging.getLogger("personachat")

router = APIRouter(tags=["health"])


class DBHealth(BaseModel):
    connected: bool
    latency_ms: Optional[float] = None
    tables_present: List[str] = []


class HealthResponse(BaseModel):
    ok: bool
    db: DBHealth
    computed_at: str


@router.get("/healthz")
def healthz():
    """Liveness only; touches nothing."""
    return {"status": "ok"}


@router.get("/health/db", response_model=HealthResponse)
def health_db(now: Optional[str] = Query(None)):
    """
    Database connectivity and table listing.

    Args:
        now: Optional ISO timestamp; when given, latency is omitted so the
            response is deterministic.
    """
    start = time.perf_counter()
    connected = check_connection()
    latency_ms = (time.perf_counter() - start) * 1000

    db_health = DBHealth(connected=connected, latency_ms=None if now else latency_ms)
    if connected:
        try:
            db_health.tables_present = sorted(inspect(get_engine()).get_table_names())
        except Exception as e:
            logger.warning(f"[health] failed to list tables: {e}")

    logger.info(
        "health.db",
        extra={
            "request_id": get_request_id(),
            "ok": connected,
            "latency_bucket": latency_bucket_ms(None if now else latency_ms),
        },
    )
    return HealthResponse(
        ok=connected,
        db=db_health,
        computed_at=now or datetime.now(timezone.utc).isoformat(),
    )
