from __future__ import annotations

from dataclasses import asdict
import logging
from typing import Any

from arq.connections import RedisSettings

from ghpolicies.core.config import get_settings
from ghpolicies.core.logging import configure_logging
from ghpolicies.services.jobs import JOB_PERFORM_SCAN, JOB_PROCESS_ACTIONS, JOB_PULL_REQUEST_EVENT
from ghpolicies.services.runtime import (
    get_action_executor,
    get_github_client,
    get_scan_orchestrator,
    get_webhook_handler,
)

logger = logging.getLogger(__name__)


async def perform_scan(ctx) -> dict[str, Any]:
    # Entry point for the external scheduler and manual triggers.
    result = await get_scan_orchestrator().perform_scan()
    return asdict(result)


async def process_actions_for_scan(ctx, scan_id: str) -> dict[str, Any]:
    summary = await get_action_executor().process_actions_for_scan(scan_id)
    return asdict(summary)


async def handle_pull_request_event(
    ctx,
    event_type: str,
    action: str | None,
    payload: str,
    delivery_id: str | None,
) -> dict[str, Any]:
    result = await get_webhook_handler().handle_pull_request_event(event_type, action, payload, delivery_id)
    return asdict(result)


JOB_FUNCTIONS = {
    JOB_PERFORM_SCAN: perform_scan,
    JOB_PROCESS_ACTIONS: process_actions_for_scan,
    JOB_PULL_REQUEST_EVENT: handle_pull_request_event,
}


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("compliance_worker_started")


async def _shutdown(ctx) -> None:
    # Close the shared GitHub connection pool with the worker.
    await get_github_client().aclose()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.job_queue_name
    job_timeout = max(60, int(settings.job_timeout_s))
    # Failed work is recorded, not retried; the next scheduled scan is the retry.
    max_tries = 1
    functions = [perform_scan, process_actions_for_scan, handle_pull_request_event]
    on_startup = _startup
    on_shutdown = _shutdown
