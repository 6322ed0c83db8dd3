from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ghpolicies.core.errors import InvalidScanTransitionError
from ghpolicies.domain.models import (
    Policy,
    REPOSITORY_STATUS_COMPLIANT,
    REPOSITORY_STATUS_NON_COMPLIANT,
    Repository,
    SCAN_STATUS_COMPLETED,
    SCAN_STATUS_FAILED,
    SCAN_STATUS_IN_PROGRESS,
    SCAN_STATUS_PENDING,
    Scan,
)
from ghpolicies.persistence.repos import policies as policies_repo
from ghpolicies.persistence.repos import repositories as repositories_repo
from ghpolicies.persistence.repos import scans as scans_repo
from ghpolicies.persistence.repos import violations as violations_repo
from ghpolicies.services.configuration import AppConfig, ConfigurationCache, PolicyConfig
from ghpolicies.services.github.models import GitHubRepository
from ghpolicies.services.policies.base import PolicyViolationResult
from ghpolicies.services.policies.engine import PolicyEvaluationEngine
from ghpolicies.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ActionDispatcher = Callable[[str], Awaitable[Any]]

_MAX_ERROR_LENGTH = 500


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _scan_transition_allowed(current: str, target: str) -> bool:
    # Completed and Failed are terminal; a scan never re-enters InProgress.
    allowed: dict[str, set[str]] = {
        SCAN_STATUS_PENDING: {SCAN_STATUS_IN_PROGRESS, SCAN_STATUS_FAILED},
        SCAN_STATUS_IN_PROGRESS: {SCAN_STATUS_COMPLETED, SCAN_STATUS_FAILED},
        SCAN_STATUS_COMPLETED: set(),
        SCAN_STATUS_FAILED: set(),
    }
    return target in allowed.get(current, set())


@dataclass(frozen=True)
class ScanResult:
    scan_id: str
    status: str
    repositories_scanned: int = 0
    repositories_removed: int = 0
    violations: int = 0
    error: str | None = None


@dataclass(frozen=True)
class _RepositoryEvaluation:
    remote: GitHubRepository
    violations: list[PolicyViolationResult]


class ScanOrchestrator:
    """Reconcile the tracked inventory with the organization and evaluate every repository."""

    def __init__(
        self,
        *,
        github: Any,
        config_cache: ConfigurationCache,
        engine: PolicyEvaluationEngine,
        session_factory: async_sessionmaker[AsyncSession],
        dispatch_actions: ActionDispatcher | None = None,
        max_concurrency: int = 8,
        time_source: Callable[[], datetime] | None = None,
    ) -> None:
        self._github = github
        self._config_cache = config_cache
        self._engine = engine
        self._session_factory = session_factory
        self._dispatch_actions = dispatch_actions
        self._max_concurrency = max(1, int(max_concurrency))
        self._time_source = time_source or _utc_now

    async def _transition(
        self,
        session: AsyncSession,
        scan: Scan,
        target: str,
        *,
        error: str | None = None,
    ) -> None:
        if not _scan_transition_allowed(scan.status, target):
            raise InvalidScanTransitionError(f"Scan {scan.id} cannot move from {scan.status} to {target}")
        scan.status = target
        if target in {SCAN_STATUS_COMPLETED, SCAN_STATUS_FAILED}:
            scan.completed_at = self._time_source()
        if error is not None:
            scan.error = error[:_MAX_ERROR_LENGTH]
        await session.commit()
        logger.info("scan_status_changed scan_id=%s status=%s", scan.id, target)

    async def perform_scan(self) -> ScanResult:
        """Run one reconciliation; always creates a new Scan row."""
        async with self._session_factory() as session:
            scan = await scans_repo.create_scan(session, started_at=self._time_source())
            await session.commit()
            scan_id = scan.id
            await self._transition(session, scan, SCAN_STATUS_IN_PROGRESS)
            try:
                config = await self._config_cache.get_config()
                remote_repositories = await self._github.list_organization_repositories()
                tracked, removed, policies = await self._reconcile(session, remote_repositories, config.policies)
                violation_count = await self._evaluate_all(
                    session, scan_id, config, remote_repositories, tracked, policies
                )
            except Exception as exc:  # noqa: BLE001
                # Work already committed per repository stays; only the scan is marked Failed.
                await session.rollback()
                logger.exception("scan_failed scan_id=%s", scan_id)
                failed_scan = await scans_repo.get_scan(session, scan_id)
                if failed_scan is not None:
                    await self._transition(
                        session, failed_scan, SCAN_STATUS_FAILED, error=f"{type(exc).__name__}: {exc}"
                    )
                increment_counter("scans_failed")
                return ScanResult(scan_id=scan_id, status=SCAN_STATUS_FAILED, error=str(exc))
            # Re-read: a reconcile retry rolls back and expires every loaded row.
            scan = await scans_repo.get_scan(session, scan_id)
            scan.repositories_scanned = len(tracked)
            await self._transition(session, scan, SCAN_STATUS_COMPLETED)
        increment_counter("scans_completed")
        logger.info(
            "scan_completed scan_id=%s repositories=%s removed=%s violations=%s",
            scan_id,
            len(remote_repositories),
            removed,
            violation_count,
        )
        if violation_count > 0:
            await self._hand_off(scan_id)
        return ScanResult(
            scan_id=scan_id,
            status=SCAN_STATUS_COMPLETED,
            repositories_scanned=len(remote_repositories),
            repositories_removed=removed,
            violations=violation_count,
        )

    async def _hand_off(self, scan_id: str) -> None:
        if self._dispatch_actions is None:
            return
        try:
            await self._dispatch_actions(scan_id)
        except Exception as exc:  # noqa: BLE001
            # The scan is already Completed; remediation can be re-triggered for it.
            logger.error("scan_action_dispatch_failed scan_id=%s error=%s", scan_id, exc)

    async def _reconcile(
        self,
        session: AsyncSession,
        remote_repositories: Sequence[GitHubRepository],
        policy_configs: Sequence[PolicyConfig],
    ) -> tuple[dict[int, Repository], int, dict[str, Policy]]:
        try:
            return await self._reconcile_once(session, remote_repositories, policy_configs)
        except IntegrityError:
            # A concurrent scan inserted the same repository or policy first; reconcile against its rows.
            await session.rollback()
            logger.info("scan_reconcile_conflict_retry")
        return await self._reconcile_once(session, remote_repositories, policy_configs)

    async def _reconcile_once(
        self,
        session: AsyncSession,
        remote_repositories: Sequence[GitHubRepository],
        policy_configs: Sequence[PolicyConfig],
    ) -> tuple[dict[int, Repository], int, dict[str, Policy]]:
        tracked, removed = await self._sync_repositories(session, remote_repositories)
        policies = await self._sync_policies(session, policy_configs)
        return tracked, removed, policies

    async def _sync_repositories(
        self,
        session: AsyncSession,
        remote_repositories: Sequence[GitHubRepository],
    ) -> tuple[dict[int, Repository], int]:
        existing = {row.github_repository_id: row for row in await repositories_repo.list_repositories(session)}
        tracked: dict[int, Repository] = {}
        for remote in remote_repositories:
            row = existing.get(remote.id)
            if row is None:
                row = await repositories_repo.create_repository(
                    session, github_repository_id=remote.id, name=remote.full_name
                )
                logger.info("repository_tracked repository=%s github_id=%s", remote.full_name, remote.id)
            elif row.name != remote.full_name:
                logger.info("repository_renamed old=%s new=%s", row.name, remote.full_name)
                row.name = remote.full_name
            tracked[remote.id] = row
        stale_ids = [row.id for github_id, row in existing.items() if github_id not in tracked]
        removed = await repositories_repo.purge_repositories(session, stale_ids)
        if removed:
            logger.info("repositories_purged count=%s", removed)
        await session.commit()
        return tracked, removed

    async def _sync_policies(
        self, session: AsyncSession, policy_configs: Sequence[PolicyConfig]
    ) -> dict[str, Policy]:
        existing = {row.policy_key.lower(): row for row in await policies_repo.list_policies(session)}
        for policy in policy_configs:
            key = policy.type.lower()
            if self._engine.evaluator_for(policy.type) is None:
                logger.warning("policy_type_unknown policy=%s", policy.type)
            description = policy.name or policy.type
            row = existing.get(key)
            if row is None:
                row = await policies_repo.create_policy(
                    session, policy_key=policy.type, description=description, actions=policy.actions
                )
                existing[key] = row
            else:
                row.description = description
                row.actions_json = list(policy.actions)
        await session.commit()
        return existing

    async def _evaluate_all(
        self,
        session: AsyncSession,
        scan_id: str,
        config: AppConfig,
        remote_repositories: Sequence[GitHubRepository],
        tracked: dict[int, Repository],
        policies: dict[str, Policy],
    ) -> int:
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _evaluate(remote: GitHubRepository) -> _RepositoryEvaluation:
            async with semaphore:
                found = await self._engine.evaluate_repository(remote, config.policies)
            return _RepositoryEvaluation(remote=remote, violations=found)

        tasks = [asyncio.create_task(_evaluate(remote)) for remote in remote_repositories]
        total = 0
        try:
            # Persist each repository as soon as its evaluation lands.
            for next_done in asyncio.as_completed(tasks):
                evaluation = await next_done
                total += await self._persist_evaluation(
                    session, scan_id, evaluation, tracked[evaluation.remote.id], policies
                )
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        return total

    async def _persist_evaluation(
        self,
        session: AsyncSession,
        scan_id: str,
        evaluation: _RepositoryEvaluation,
        repository: Repository,
        policies: dict[str, Policy],
    ) -> int:
        recorded: set[str] = set()
        for violation in evaluation.violations:
            policy = policies.get(violation.policy_type.lower())
            if policy is None or policy.id in recorded:
                continue
            recorded.add(policy.id)
            await violations_repo.create_violation(
                session, scan_id=scan_id, repository_id=repository.id, policy_id=policy.id
            )
        status = REPOSITORY_STATUS_NON_COMPLIANT if recorded else REPOSITORY_STATUS_COMPLIANT
        await repositories_repo.set_compliance_status(
            session, repository, status=status, scanned_at=self._time_source()
        )
        await session.commit()
        return len(recorded)
