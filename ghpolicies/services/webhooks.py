from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import json
import logging
import re
from typing import Any

from ghpolicies.services.actions import (
    ACTION_BLOCK_PRS,
    ACTION_COMMENT_ON_PRS,
    ActionExecutor,
    normalize_action,
)
from ghpolicies.services.configuration import ConfigurationCache
from ghpolicies.services.policies.engine import PolicyEvaluationEngine


logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def compute_signature(secret: str, payload: bytes) -> str:
    # GitHub signs the raw request body with HMAC SHA256.
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: str | None, payload: bytes, signature_header: str | None) -> bool:
    if not secret or not signature_header:
        return False
    if not signature_header.startswith(SIGNATURE_PREFIX):
        return False
    expected = compute_signature(secret, payload)
    return hmac.compare_digest(expected.encode("utf-8"), signature_header.strip().encode("utf-8"))


def sanitize_header(value: str | None) -> str | None:
    # Strip CR/LF and other control characters before values reach the logs.
    if value is None:
        return None
    return _CONTROL_CHARS.sub("", value)


@dataclass(frozen=True)
class PullRequestEvent:
    github_repository_id: int
    pr_number: int
    head_sha: str


def parse_pull_request_event(payload: bytes | str | dict[str, Any]) -> PullRequestEvent | None:
    """Extract repository id, PR number and head sha; None when the payload lacks them."""
    if isinstance(payload, dict):
        body = payload
    else:
        try:
            body = json.loads(payload)
        except (TypeError, ValueError):
            return None
    if not isinstance(body, dict):
        return None
    pull_request = body.get("pull_request")
    repository = body.get("repository")
    if not isinstance(pull_request, dict) or not isinstance(repository, dict):
        return None
    head = pull_request.get("head") or {}
    number = pull_request.get("number")
    head_sha = head.get("sha") if isinstance(head, dict) else None
    repository_id = repository.get("id")
    if number is None or not head_sha or repository_id is None:
        return None
    try:
        return PullRequestEvent(
            github_repository_id=int(repository_id),
            pr_number=int(number),
            head_sha=str(head_sha),
        )
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class WebhookHandlingResult:
    processed: bool
    message: str
    violations: int = 0


class PullRequestWebhookHandler:
    """Re-evaluate a repository on PR activity and drive the PR-scoped actions."""

    def __init__(
        self,
        *,
        github: Any,
        config_cache: ConfigurationCache,
        engine: PolicyEvaluationEngine,
        executor: ActionExecutor,
    ) -> None:
        self._github = github
        self._config_cache = config_cache
        self._engine = engine
        self._executor = executor

    async def handle_pull_request_event(
        self,
        event_type: str,
        action: str | None,
        payload: bytes | str | dict[str, Any],
        delivery_id: str | None = None,
    ) -> WebhookHandlingResult:
        safe_action = sanitize_header(action)
        safe_delivery = sanitize_header(delivery_id)
        if event_type != "pull_request":
            logger.info("webhook_event_ignored event=%s delivery=%s", sanitize_header(event_type), safe_delivery)
            return WebhookHandlingResult(False, "Event type not handled")
        event = parse_pull_request_event(payload)
        if event is None:
            logger.warning("webhook_payload_incomplete action=%s delivery=%s", safe_action, safe_delivery)
            return WebhookHandlingResult(False, "Payload missing pull request, head sha or repository")
        try:
            return await self._process(event, safe_action, safe_delivery)
        except Exception as exc:  # noqa: BLE001
            # The trigger is fire-and-forget; failures are visible only in logs.
            logger.error(
                "webhook_processing_failed repository_id=%s pr=%s delivery=%s error=%s",
                event.github_repository_id,
                event.pr_number,
                safe_delivery,
                exc,
            )
            return WebhookHandlingResult(False, f"Processing failed: {type(exc).__name__}")

    async def _process(
        self, event: PullRequestEvent, action: str | None, delivery_id: str | None
    ) -> WebhookHandlingResult:
        repository = await self._github.get_repository(event.github_repository_id)
        config = await self._config_cache.get_config()
        found = await self._engine.evaluate_repository(repository, config.policies)
        by_type: dict[str, list[str]] = {}
        for violation in found:
            by_type.setdefault(violation.policy_type.lower(), []).append(violation.policy_type)
        logger.info(
            "webhook_pull_request_evaluated repository=%s pr=%s action=%s delivery=%s violations=%s",
            repository.full_name,
            event.pr_number,
            action,
            delivery_id,
            len(found),
        )

        for policy in config.policies:
            policy_violations = by_type.get(policy.type.lower(), [])
            for configured in policy.actions:
                normalized = normalize_action(configured)
                try:
                    if normalized == ACTION_COMMENT_ON_PRS:
                        if not policy_violations:
                            continue
                        outcome = await self._executor.comment_on_pull_request(
                            event.github_repository_id, event.pr_number, policy_violations, policy
                        )
                    elif normalized == ACTION_BLOCK_PRS:
                        # Always runs so a fixed violation flips the check back to success.
                        outcome = await self._executor.update_pull_request_status_check(
                            event.github_repository_id, event.head_sha, policy_violations, policy
                        )
                    else:
                        continue
                    await self._executor.record_webhook_outcome(
                        github_repository_id=event.github_repository_id,
                        policy_type=policy.type,
                        action=configured,
                        outcome=outcome,
                    )
                except Exception as exc:  # noqa: BLE001
                    logger.error(
                        "webhook_action_failed repository=%s pr=%s policy=%s action=%s error=%s",
                        repository.full_name,
                        event.pr_number,
                        policy.type,
                        configured,
                        exc,
                    )
        return WebhookHandlingResult(True, "Processed", violations=len(found))
