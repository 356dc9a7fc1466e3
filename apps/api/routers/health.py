"""
Health check endpoints.
"""

from typing import Dict

from fastapi import APIRouter
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from config import settings, validate_security_settings
from database import engine
from services.allocation_queue import get_allocation_queue

router = APIRouter()


async def _database_status() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        return f"down: {exc}"
    return "up"


def _pending_allocation_jobs() -> int:
    return get_allocation_queue().count


async def _queue_status() -> Dict[str, object]:
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
        pending = await run_in_threadpool(_pending_allocation_jobs)
    except (RedisError, OSError) as exc:
        return {"redis": f"down: {exc}", "allocation_jobs_pending": None}
    finally:
        await client.aclose()
    return {"redis": "up", "allocation_jobs_pending": int(pending)}


@router.get("/health")
async def health_check():
    """
    Overall status of the ledger database and the allocation queue.
    Redis is optional for serving balances, so it only degrades the status.
    """
    database = await _database_status()
    queue = await _queue_status()
    healthy = database == "up" and queue["redis"] == "up"
    return {
        "status": "healthy" if healthy else "degraded",
        "api": "up",
        "database": database,
        **queue,
        "allocation_loop": "enabled" if settings.ALLOCATION_LOOP_ENABLED else "disabled",
    }


@router.get("/health/ready")
async def readiness_check():
    """Ready once secrets are configured and the ledger database answers."""
    problems = []
    try:
        validate_security_settings()
    except ValueError:
        problems.append("JWT_SECRET")
    if await _database_status() != "up":
        problems.append("DATABASE_URL")

    if problems:
        return JSONResponse(status_code=503, content={"ready": False, "missing": problems})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
