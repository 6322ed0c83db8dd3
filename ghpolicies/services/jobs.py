from __future__ import annotations

import asyncio
import logging
from typing import Any
from uuid import uuid4

from arq import create_pool
from arq.connections import RedisSettings

from ghpolicies.core.config import get_settings


logger = logging.getLogger(__name__)

JOB_PERFORM_SCAN = "perform_scan"
JOB_PROCESS_ACTIONS = "process_actions_for_scan"
JOB_PULL_REQUEST_EVENT = "handle_pull_request_event"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Hold references so inline tasks are not garbage collected mid-flight.
_inline_tasks: set[asyncio.Task[Any]] = set()


def _inline_mode() -> bool:
    return get_settings().job_execution_mode.lower() == "inline"


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.job_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def _run_inline(function: str, *args: Any) -> Any:
    # Inline mode shares the worker's job functions so both paths behave the same.
    from ghpolicies.workers.compliance_worker import JOB_FUNCTIONS

    try:
        return await JOB_FUNCTIONS[function]({}, *args)
    except Exception:  # noqa: BLE001 - background job failures surface in logs only
        logger.exception("inline_job_failed function=%s", function)
        return None


async def enqueue_job(function: str, *args: Any, job_id: str | None = None) -> str:
    job_id = job_id or uuid4().hex
    if _inline_mode():
        task = asyncio.create_task(_run_inline(function, *args))
        _inline_tasks.add(task)
        task.add_done_callback(_inline_tasks.discard)
        logger.info("job_started_inline function=%s job_id=%s", function, job_id)
        return job_id
    settings = get_settings()
    redis = await get_redis_pool()
    job = await redis.enqueue_job(function, *args, _job_id=job_id, _queue_name=settings.job_queue_name)
    logger.info("job_enqueued function=%s job_id=%s duplicate=%s", function, job_id, job is None)
    # arq returns None when the job id is already queued; keep tracing with the same id.
    return job.job_id if job else job_id


async def enqueue_scan() -> str:
    return await enqueue_job(JOB_PERFORM_SCAN)


async def enqueue_process_actions(scan_id: str) -> str:
    # One remediation job per scan.
    return await enqueue_job(JOB_PROCESS_ACTIONS, scan_id, job_id=f"actions:{scan_id}")


async def enqueue_pull_request_event(
    event_type: str,
    action: str | None,
    payload: str,
    delivery_id: str | None,
) -> str:
    job_id = f"webhook:{delivery_id}" if delivery_id else None
    return await enqueue_job(JOB_PULL_REQUEST_EVENT, event_type, action, payload, delivery_id, job_id=job_id)


async def wait_for_inline_jobs() -> None:
    # Used by tests and shutdown hooks to drain inline work.
    while _inline_tasks:
        await asyncio.gather(*list(_inline_tasks), return_exceptions=True)
