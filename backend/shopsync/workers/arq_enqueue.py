"""ARQ job enqueueing utilities.

WHAT:
    Async helper to enqueue shop sync jobs to the ARQ worker.

WHY:
    - Lets API routes hand long first syncs to the worker
    - Creates the Redis pool on demand and reuses it

USAGE:
    from shopsync.workers.arq_enqueue import enqueue_shop_sync_job

    await enqueue_shop_sync_job(account_id, shop_id, ["orders"])
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from arq import create_pool
from arq.connections import ArqRedis
from arq.jobs import Job

from shopsync.workers.arq_worker import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)

_arq_pool: Optional[ArqRedis] = None


async def get_arq_pool() -> ArqRedis:
    """Get or create ARQ Redis pool."""
    global _arq_pool
    if _arq_pool is None:
        logger.info("[ARQ-ENQUEUE] Creating new Redis pool...")
        _arq_pool = await create_pool(get_redis_settings())
    return _arq_pool


async def reset_arq_pool() -> None:
    """Close and drop the pool (reconnection or tests)."""
    global _arq_pool
    if _arq_pool is not None:
        await _arq_pool.close()
        _arq_pool = None
        logger.info("[ARQ-ENQUEUE] Redis pool reset")


async def enqueue_shop_sync_job(
    account_id: str | UUID,
    shop_id: Optional[str] = None,
    resources: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Enqueue a shop sync job.

    Returns:
        Dict with job_id and status
    """
    pool = await get_arq_pool()

    job = await pool.enqueue_job(
        "process_shop_sync_job",
        str(account_id),
        shop_id,
        resources,
        _queue_name=QUEUE_NAME,
    )

    if job:
        logger.info("[ARQ-ENQUEUE] Enqueued shop sync %s for account %s", job.job_id, account_id)
        return {"job_id": job.job_id, "status": "enqueued"}
    logger.warning("[ARQ-ENQUEUE] Job might already exist for account %s", account_id)
    return {"job_id": None, "status": "skipped_or_duplicate"}


async def get_job_status(job_id: str) -> Dict[str, Any]:
    """Get status (and result once complete) of an ARQ job."""
    pool = await get_arq_pool()
    job = Job(job_id, pool, _queue_name=QUEUE_NAME)

    status = await job.status()
    result = await job.result(timeout=0) if status.name == "complete" else None

    return {"job_id": job_id, "status": status.name, "result": result}
