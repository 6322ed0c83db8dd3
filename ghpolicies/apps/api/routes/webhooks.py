from __future__ import annotations

import json
import logging

from fastapi import APIRouter, HTTPException, Request, status

from ghpolicies.core.config import get_settings
from ghpolicies.services.jobs import enqueue_pull_request_event
from ghpolicies.services.webhooks import sanitize_header, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=message)


def _payload_action(raw_body: bytes) -> str | None:
    # The event action lives in the body; a malformed body is left for the handler to reject.
    try:
        body = json.loads(raw_body)
    except ValueError:
        return None
    action = body.get("action") if isinstance(body, dict) else None
    return action if isinstance(action, str) else None


@router.post("/api/webhooks/github")
async def github_webhook(request: Request) -> dict:
    # Verify the signature over the exact bytes GitHub sent before parsing anything.
    raw_body = await request.body()
    event_type = sanitize_header(request.headers.get("X-GitHub-Event")) or ""
    delivery_id = sanitize_header(request.headers.get("X-GitHub-Delivery"))
    secret = get_settings().github_webhook_secret
    if not secret:
        logger.error("webhook_rejected reason=secret_not_configured delivery=%s", delivery_id)
        raise _unauthorized("Webhook secret is not configured")
    signature = request.headers.get("X-Hub-Signature-256")
    if not signature:
        logger.warning("webhook_rejected reason=missing_signature delivery=%s", delivery_id)
        raise _unauthorized("Missing signature")
    if not verify_signature(secret, raw_body, signature):
        logger.warning("webhook_rejected reason=invalid_signature delivery=%s", delivery_id)
        raise _unauthorized("Invalid signature")

    if event_type == "ping":
        return {"message": "pong"}
    if event_type != "pull_request":
        logger.info("webhook_event_ignored event=%s delivery=%s", event_type, delivery_id)
        return {"message": f"Event {event_type} ignored"}
    action = sanitize_header(_payload_action(raw_body))
    job_id = await enqueue_pull_request_event(
        event_type,
        action,
        raw_body.decode("utf-8", errors="replace"),
        delivery_id,
    )
    logger.info("webhook_accepted event=%s action=%s delivery=%s", event_type, action, delivery_id)
    return {"message": "Webhook accepted", "job_id": job_id}
