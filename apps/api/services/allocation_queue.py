"""Durable allocation-run queue helpers (Redis/RQ)."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings
from services.ledger import as_utc, utcnow


ALLOCATION_QUEUE_NAME = "allocation_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_allocation_queue() -> Queue:
    """Return the configured allocation queue."""
    return Queue(
        name=ALLOCATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=900,
    )


def allocation_job_id(now: datetime) -> str:
    return f"allocation-run:{now.strftime('%Y-%m-%d')}"


def enqueue_allocation_run(now: Optional[datetime] = None) -> Job:
    """Enqueue a run_due pass; retried by RQ because runs are idempotent."""
    current = as_utc(now) or utcnow()
    queue = get_allocation_queue()
    return queue.enqueue(
        "services.allocations.run_due_job",
        current.isoformat(),
        job_id=allocation_job_id(current),
        retry=Retry(max=3, interval=[30, 120, 600]),
        job_timeout=900,
        result_ttl=86400,
        failure_ttl=86400,
    )
