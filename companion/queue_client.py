# companion/queue_client.py
"""
RQ queue client for background jobs.

The monthly premium credit runs on an rq worker so it can be triggered by a
scheduler or the admin API without blocking a request.
"""
from typing import Optional

from redis import Redis
from rq import Queue

from companion.core.config import settings
from companion.workers.monthly_token_credit import run_monthly_credit

_queue: Optional[Queue] = None


def get_queue() -> Queue:
    global _queue
    if _queue is None:
        redis_conn = Redis.from_url(settings.REDIS_URL or "redis://localhost:6379/0")
        _queue = Queue(connection=redis_conn)
    return _queue


def enqueue_monthly_credit(dry_run: bool = False, queue: Optional[Queue] = None) -> str:
    """
    Enqueue the monthly premium token credit.

    Returns:
        Job ID
    """
    job = (queue or get_queue()).enqueue(
        run_monthly_credit,
        dry_run=dry_run,
        job_timeout="30m",
        result_ttl=86400,  # Keep the report for a day
    )
    return job.id
