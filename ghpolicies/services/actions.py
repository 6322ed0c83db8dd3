from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import weakref
from typing import Any, Callable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ghpolicies.core.errors import GitHubForbiddenError, GitHubNotFoundError
from ghpolicies.domain.models import (
    ACTION_STATUS_FAILED,
    ACTION_STATUS_SKIPPED,
    ACTION_STATUS_SUCCESS,
    Policy,
    PolicyViolation,
    Repository,
)
from ghpolicies.persistence.repos import action_logs as action_logs_repo
from ghpolicies.persistence.repos import policies as policies_repo
from ghpolicies.persistence.repos import repositories as repositories_repo
from ghpolicies.persistence.repos import violations as violations_repo
from ghpolicies.services.configuration import ConfigurationCache, PolicyConfig
from ghpolicies.services.github.models import Comment
from ghpolicies.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ACTION_CREATE_ISSUE = "create-issue"
ACTION_ARCHIVE_REPO = "archive-repo"
ACTION_COMMENT_ON_PRS = "comment-on-prs"
ACTION_BLOCK_PRS = "block-prs"
ACTION_LOG_ONLY = "log-only"

DEFAULT_ISSUE_LABELS = ("policy-violation", "compliance")
DEFAULT_STATUS_CHECK_NAME = "Policy Compliance Check"
# Comments match as duplicates on this many leading characters of the message.
DUPLICATE_COMMENT_PREFIX_LENGTH = 50


def normalize_action(action: str) -> str:
    # `create_issue`, `Create-Issue` and `create-issue` are the same action.
    return action.strip().lower().replace("_", "-")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ActionOutcome:
    status: str
    details: str


@dataclass(frozen=True)
class ActionRunSummary:
    scan_id: str
    violations: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0


def default_issue_title(policy_type: str) -> str:
    return f"Compliance Violation: {policy_type}"


def default_issue_body(policy_type: str) -> str:
    return f"This repository violates the {policy_type} policy. Please review and take appropriate action."


def build_pr_comment(policy_types: Sequence[str], policy_config: PolicyConfig | None = None) -> str:
    details = policy_config.pr_comment_details if policy_config else None
    if details is not None and details.message and details.message.strip():
        return details.message
    lines = "\n".join(f"- {policy_type}" for policy_type in policy_types)
    return (
        "⚠️ **Policy Compliance Violations Detected**\n\n"
        "This pull request is associated with a repository that violates the following policies:\n\n"
        f"{lines}\n\n"
        "Please address these violations before merging."
    )


def is_bot_comment(comment: Comment) -> bool:
    login = comment.user_login.lower()
    return comment.user_type.lower() == "bot" or login.endswith("[bot]") or "bot" in login


def is_duplicate_comment(comments: Sequence[Comment], message: str) -> bool:
    prefix = message[:DUPLICATE_COMMENT_PREFIX_LENGTH].lower()
    return any(prefix in comment.body.lower() for comment in comments if is_bot_comment(comment))


class RepositoryLocks:
    """In-process lock per repository so duplicate checks never race each other.

    Locks are held weakly: an entry lives while a caller holds or awaits it and
    is dropped once idle, so the registry stays as small as the active work.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    def for_repository(self, github_repository_id: int) -> asyncio.Lock:
        lock = self._locks.get(github_repository_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[github_repository_id] = lock
        return lock

    def active_count(self) -> int:
        return len(self._locks)


class ActionExecutor:
    """Perform configured remediation actions and record one ActionLog per attempt."""

    def __init__(
        self,
        *,
        github: Any,
        config_cache: ConfigurationCache,
        session_factory: async_sessionmaker[AsyncSession],
        max_concurrency: int = 4,
        locks: RepositoryLocks | None = None,
        time_source: Callable[[], datetime] | None = None,
    ) -> None:
        self._github = github
        self._config_cache = config_cache
        self._session_factory = session_factory
        self._max_concurrency = max(1, int(max_concurrency))
        self._locks = locks if locks is not None else RepositoryLocks()
        self._time_source = time_source or _utc_now

    # Batch path

    async def process_actions_for_scan(self, scan_id: str) -> ActionRunSummary:
        async with self._session_factory() as session:
            rows = await violations_repo.list_violations_with_context(session, scan_id)
        if not rows:
            logger.info("scan_actions_skipped scan_id=%s reason=no_violations", scan_id)
            return ActionRunSummary(scan_id=scan_id)
        config = await self._config_cache.get_config()

        grouped: dict[str, list[tuple[PolicyViolation, Repository, Policy]]] = defaultdict(list)
        for row in rows:
            grouped[row[1].id].append(row)

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _run_group(group: list[tuple[PolicyViolation, Repository, Policy]]) -> list[ActionOutcome]:
            repository = group[0][1]
            async with semaphore, self._locks.for_repository(repository.github_repository_id):
                outcomes: list[ActionOutcome] = []
                async with self._session_factory() as session:
                    for violation, _repository, policy in group:
                        policy_config = config.policy_for(policy.policy_key)
                        if policy_config is None:
                            logger.warning(
                                "policy_config_missing scan_id=%s policy=%s", scan_id, policy.policy_key
                            )
                            continue
                        for action in policy_config.actions:
                            results = await self._execute_guarded(action, repository, policy_config)
                            for outcome in results:
                                await self._record(
                                    session,
                                    repository_id=repository.id,
                                    policy_id=policy.id,
                                    violation_id=violation.id,
                                    action=action,
                                    outcome=outcome,
                                )
                            outcomes.extend(results)
                return outcomes

        results = await asyncio.gather(*(_run_group(group) for group in grouped.values()))
        outcomes = [outcome for group_outcomes in results for outcome in group_outcomes]
        summary = ActionRunSummary(
            scan_id=scan_id,
            violations=len(rows),
            succeeded=sum(1 for outcome in outcomes if outcome.status == ACTION_STATUS_SUCCESS),
            skipped=sum(1 for outcome in outcomes if outcome.status == ACTION_STATUS_SKIPPED),
            failed=sum(1 for outcome in outcomes if outcome.status == ACTION_STATUS_FAILED),
        )
        logger.info(
            "scan_actions_processed scan_id=%s violations=%s succeeded=%s skipped=%s failed=%s",
            scan_id,
            summary.violations,
            summary.succeeded,
            summary.skipped,
            summary.failed,
        )
        return summary

    async def _record(
        self,
        session: AsyncSession,
        *,
        repository_id: str,
        policy_id: str,
        violation_id: str | None,
        action: str,
        outcome: ActionOutcome,
    ) -> None:
        await action_logs_repo.create_action_log(
            session,
            repository_id=repository_id,
            policy_id=policy_id,
            violation_id=violation_id,
            action_type=action,
            status=outcome.status,
            details=outcome.details,
            timestamp=self._time_source(),
        )
        await session.commit()
        increment_counter(f"actions_{outcome.status.lower()}")

    async def _execute_guarded(
        self, action: str, repository: Repository, policy_config: PolicyConfig
    ) -> list[ActionOutcome]:
        try:
            return await self.execute_action(action, repository, policy_config)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "action_failed repository=%s action=%s error=%s", repository.name, action, exc
            )
            return [ActionOutcome(ACTION_STATUS_FAILED, f"Exception: {exc}")]

    async def execute_action(
        self, action: str, repository: Repository, policy_config: PolicyConfig
    ) -> list[ActionOutcome]:
        normalized = normalize_action(action)
        github_id = repository.github_repository_id
        if normalized == ACTION_CREATE_ISSUE:
            return [await self._create_issue(github_id, policy_config)]
        if normalized == ACTION_ARCHIVE_REPO:
            return [await self._archive_repository(github_id)]
        if normalized == ACTION_COMMENT_ON_PRS:
            return await self._comment_on_open_pull_requests(github_id, policy_config)
        if normalized == ACTION_BLOCK_PRS:
            return await self._block_open_pull_requests(github_id, policy_config)
        if normalized == ACTION_LOG_ONLY:
            logger.info("violation_logged repository=%s policy=%s", repository.name, policy_config.type)
            return [ActionOutcome(ACTION_STATUS_SUCCESS, "Violation logged as configured")]
        logger.warning("action_unknown repository=%s action=%s", repository.name, action)
        return [ActionOutcome(ACTION_STATUS_FAILED, f"Unknown action type: {action}")]

    async def _create_issue(self, github_id: int, policy_config: PolicyConfig) -> ActionOutcome:
        details = policy_config.issue_details
        title = (details.title if details and details.title else None) or default_issue_title(policy_config.type)
        body = (details.body if details and details.body else None) or default_issue_body(policy_config.type)
        labels = [label for label in (details.labels if details else []) if label.strip()]
        if not labels:
            labels = list(DEFAULT_ISSUE_LABELS)
        existing = await self._github.list_open_issues(github_id, labels=[labels[0]])
        wanted = title.casefold()
        for issue in existing:
            if issue.title.casefold() == wanted:
                return ActionOutcome(ACTION_STATUS_SKIPPED, f"Duplicate issue already exists: {issue.html_url}")
        created = await self._github.create_issue(github_id, title=title, body=body, labels=labels)
        logger.info("issue_created repository_id=%s number=%s", github_id, created.number)
        return ActionOutcome(ACTION_STATUS_SUCCESS, f"Created issue #{created.number}: {created.html_url}")

    async def _archive_repository(self, github_id: int) -> ActionOutcome:
        try:
            current = await self._github.get_repository(github_id)
            if current.archived:
                return ActionOutcome(ACTION_STATUS_SKIPPED, "Repository is already archived")
            await self._github.archive_repository(current.full_name)
        except GitHubNotFoundError as exc:
            logger.warning("archive_repository_not_found repository_id=%s", github_id)
            return ActionOutcome(ACTION_STATUS_FAILED, f"Repository not found: {exc}")
        except GitHubForbiddenError as exc:
            logger.warning("archive_repository_forbidden repository_id=%s", github_id)
            return ActionOutcome(ACTION_STATUS_FAILED, f"Insufficient permissions: {exc}")
        return ActionOutcome(ACTION_STATUS_SUCCESS, f"Archived repository {current.full_name}")

    async def _comment_on_open_pull_requests(
        self, github_id: int, policy_config: PolicyConfig
    ) -> list[ActionOutcome]:
        pull_requests = await self._github.list_open_pull_requests(github_id)
        if not pull_requests:
            return [ActionOutcome(ACTION_STATUS_SKIPPED, "No open pull requests found")]
        outcomes = []
        for pull_request in pull_requests:
            # One PR failing never stops the others; each gets its own log entry.
            try:
                outcome = await self._comment(github_id, pull_request.number, [policy_config.type], policy_config)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "pr_comment_failed repository_id=%s pr=%s error=%s", github_id, pull_request.number, exc
                )
                outcome = ActionOutcome(ACTION_STATUS_FAILED, f"Failed to comment on PR #{pull_request.number}: {exc}")
            outcomes.append(outcome)
        return outcomes

    async def _block_open_pull_requests(
        self, github_id: int, policy_config: PolicyConfig
    ) -> list[ActionOutcome]:
        pull_requests = await self._github.list_open_pull_requests(github_id)
        if not pull_requests:
            return [ActionOutcome(ACTION_STATUS_SKIPPED, "No open pull requests found")]
        outcomes = []
        for pull_request in pull_requests:
            if not pull_request.head_sha:
                outcomes.append(
                    ActionOutcome(ACTION_STATUS_SKIPPED, f"PR #{pull_request.number} has no head commit")
                )
                continue
            try:
                await self._status_check(github_id, pull_request.head_sha, [policy_config.type], policy_config)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "pr_status_check_failed repository_id=%s pr=%s error=%s", github_id, pull_request.number, exc
                )
                outcomes.append(
                    ActionOutcome(
                        ACTION_STATUS_FAILED, f"Failed to update status check for PR #{pull_request.number}: {exc}"
                    )
                )
                continue
            outcomes.append(
                ActionOutcome(
                    ACTION_STATUS_SUCCESS, f"Created/updated status check for PR #{pull_request.number}"
                )
            )
        return outcomes

    # Webhook path

    async def comment_on_pull_request(
        self,
        github_repository_id: int,
        pr_number: int,
        violations: Sequence[str],
        policy_config: PolicyConfig | None = None,
    ) -> ActionOutcome:
        """Post the violation comment on one PR unless a bot already left it."""
        if not violations:
            return ActionOutcome(ACTION_STATUS_SKIPPED, "No violations to report")
        async with self._locks.for_repository(github_repository_id):
            return await self._comment(github_repository_id, pr_number, violations, policy_config)

    async def update_pull_request_status_check(
        self,
        github_repository_id: int,
        head_sha: str,
        violations: Sequence[str],
        policy_config: PolicyConfig | None = None,
    ) -> ActionOutcome:
        """Create or update the compliance check-run on the PR head commit."""
        async with self._locks.for_repository(github_repository_id):
            conclusion = await self._status_check(github_repository_id, head_sha, violations, policy_config)
        return ActionOutcome(ACTION_STATUS_SUCCESS, f"Status check concluded {conclusion}")

    async def _comment(
        self,
        github_id: int,
        pr_number: int,
        violations: Sequence[str],
        policy_config: PolicyConfig | None,
    ) -> ActionOutcome:
        message = build_pr_comment(violations, policy_config)
        comments = await self._github.list_pull_request_comments(github_id, pr_number)
        if is_duplicate_comment(comments, message):
            logger.info("pr_comment_duplicate repository_id=%s pr=%s", github_id, pr_number)
            return ActionOutcome(ACTION_STATUS_SKIPPED, f"Comment already present on PR #{pr_number}")
        await self._github.create_pull_request_comment(github_id, pr_number, message)
        logger.info("pr_comment_created repository_id=%s pr=%s", github_id, pr_number)
        return ActionOutcome(ACTION_STATUS_SUCCESS, f"Commented on PR #{pr_number}")

    async def _status_check(
        self,
        github_id: int,
        head_sha: str,
        violations: Sequence[str],
        policy_config: PolicyConfig | None,
    ) -> str:
        details = policy_config.block_prs_details if policy_config else None
        name = (details.status_check_name if details and details.status_check_name else None) or (
            DEFAULT_STATUS_CHECK_NAME
        )
        if violations:
            conclusion = "failure"
            title = "Policy violations detected"
            summary = "This repository violates the following policies:\n\n" + "\n".join(
                f"- {policy_type}" for policy_type in violations
            )
        else:
            conclusion = "success"
            title = "All policy checks passed"
            summary = "This repository complies with all configured policies."
        existing = await self._github.list_check_runs(github_id, head_sha)
        wanted = name.casefold()
        match = next((run for run in existing if run.name.casefold() == wanted), None)
        if match is not None:
            await self._github.update_check_run(
                github_id, match.id, conclusion=conclusion, title=title, summary=summary
            )
        else:
            await self._github.create_check_run(
                github_id, name=name, head_sha=head_sha, conclusion=conclusion, title=title, summary=summary
            )
        logger.info(
            "status_check_updated repository_id=%s sha=%s conclusion=%s existing=%s",
            github_id,
            head_sha,
            conclusion,
            match is not None,
        )
        return conclusion

    async def record_webhook_outcome(
        self,
        *,
        github_repository_id: int,
        policy_type: str,
        action: str,
        outcome: ActionOutcome,
    ) -> bool:
        """Append an ActionLog for a webhook attempt when the repository and policy are tracked."""
        async with self._session_factory() as session:
            repository = await repositories_repo.get_by_github_id(session, github_repository_id)
            policy = await policies_repo.get_policy_by_key(session, policy_type)
            if repository is None or policy is None:
                return False
            await self._record(
                session,
                repository_id=repository.id,
                policy_id=policy.id,
                violation_id=None,
                action=action,
                outcome=outcome,
            )
        return True
