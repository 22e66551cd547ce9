"""Durable billing job queue helpers (Redis/RQ)."""

from __future__ import annotations

from typing import Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


BILLING_QUEUE_NAME = "billing_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_billing_queue() -> Queue:
    """Return the configured billing queue."""
    return Queue(
        name=BILLING_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=300,
    )


def enqueue_sync_job(account_id: str, subscription_id: Optional[str] = None) -> Job:
    """Enqueue an account sync; transient platform failures are retried with backoff."""
    queue = get_billing_queue()
    return queue.enqueue(
        "services.billing_sync.run_sync_account_job",
        account_id,
        subscription_id,
        job_id=f"billing-sync:{account_id}",
        retry=Retry(max=3, interval=[15, 60, 180]),
        job_timeout=300,
        result_ttl=86400,
        failure_ttl=86400,
    )
