from __future__ import annotations

import pytest
from sqlalchemy import select

from ghpolicies.core.errors import GitHubForbiddenError
from ghpolicies.domain.models import (
    ACTION_STATUS_FAILED,
    ACTION_STATUS_SKIPPED,
    ACTION_STATUS_SUCCESS,
    ActionLog,
)
from ghpolicies.persistence.db import SessionLocal
from ghpolicies.services.actions import ActionExecutor
from ghpolicies.services.policies import PolicyEvaluationEngine, build_default_evaluators
from ghpolicies.services.scanning import ScanOrchestrator
from ghpolicies.tests.utils.fake_github import DEFAULT_CONFIG, FakeGitHub, make_config_cache


def _config(action: str, policy_type: str = "has_agents_md") -> str:
    return (
        "access_control:\n"
        "  authorized_team: acme/compliance-admins\n"
        "policies:\n"
        f"  - type: {policy_type}\n"
        f"    action: {action}\n"
    )


async def _scan(github: FakeGitHub, config: str = DEFAULT_CONFIG) -> str:
    orchestrator = ScanOrchestrator(
        github=github,
        config_cache=make_config_cache(github, config),
        engine=PolicyEvaluationEngine(build_default_evaluators(github)),
        session_factory=SessionLocal,
    )
    result = await orchestrator.perform_scan()
    return result.scan_id


def _executor(github: FakeGitHub, config: str = DEFAULT_CONFIG) -> ActionExecutor:
    return ActionExecutor(
        github=github,
        config_cache=make_config_cache(github, config),
        session_factory=SessionLocal,
        max_concurrency=2,
    )


async def _logs() -> list[ActionLog]:
    async with SessionLocal() as session:
        result = await session.execute(select(ActionLog).order_by(ActionLog.timestamp, ActionLog.id))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_create_issue_is_idempotent_across_scans(fake_github: FakeGitHub) -> None:
    fake_github.add_repository(1, "acme/svc")
    first_scan = await _scan(fake_github)
    summary = await _executor(fake_github).process_actions_for_scan(first_scan)
    assert summary.succeeded == 1

    second_scan = await _scan(fake_github)
    summary = await _executor(fake_github).process_actions_for_scan(second_scan)
    assert summary.skipped == 1

    assert fake_github.calls["create_issue"] == 1
    issue = fake_github.issues[1][0]
    assert issue.title == "Compliance Violation: has_catalog_info_yaml"
    assert set(issue.labels) == {"policy-violation", "compliance"}
    logs = await _logs()
    assert [log.status for log in logs] == [ACTION_STATUS_SUCCESS, ACTION_STATUS_SKIPPED]
    assert logs[0].details == f"Created issue #1: {issue.html_url}"
    assert logs[1].details == f"Duplicate issue already exists: {issue.html_url}"
    assert all(log.violation_id is not None for log in logs)


@pytest.mark.asyncio
async def test_issue_details_override_defaults(fake_github: FakeGitHub) -> None:
    fake_github.add_repository(1, "acme/svc")
    config = _config("create-issue") + (
        "    issue_details:\n"
        "      title: Add an AGENTS.md\n"
        "      body: Agents need instructions.\n"
        "      labels: [docs]\n"
    )
    scan_id = await _scan(fake_github, config)
    await _executor(fake_github, config).process_actions_for_scan(scan_id)
    issue = fake_github.issues[1][0]
    assert issue.title == "Add an AGENTS.md"
    assert issue.labels == ("docs",)


@pytest.mark.asyncio
async def test_archive_skips_already_archived_repository(fake_github: FakeGitHub) -> None:
    fake_github.add_repository(1, "acme/legacy", archived=True)
    config = _config("archive-repo")
    scan_id = await _scan(fake_github, config)
    summary = await _executor(fake_github, config).process_actions_for_scan(scan_id)
    assert summary.skipped == 1
    assert fake_github.calls["archive_repository"] == 0


@pytest.mark.asyncio
async def test_archive_archives_active_repository(fake_github: FakeGitHub) -> None:
    fake_github.add_repository(1, "acme/legacy")
    config = _config("archive_repo")
    scan_id = await _scan(fake_github, config)
    summary = await _executor(fake_github, config).process_actions_for_scan(scan_id)
    assert summary.succeeded == 1
    assert fake_github.archived == ["acme/legacy"]


@pytest.mark.asyncio
async def test_archive_reports_missing_repository_and_permissions(fake_github: FakeGitHub) -> None:
    fake_github.add_repository(1, "acme/gone")
    fake_github.add_repository(2, "acme/locked")
    config = _config("archive-repo")
    scan_id = await _scan(fake_github, config)
    fake_github.remove_repository(1)
    fake_github.failures["archive_repository"] = GitHubForbiddenError("admin rights required", status_code=403)

    summary = await _executor(fake_github, config).process_actions_for_scan(scan_id)

    assert summary.failed == 2
    details = sorted(log.details for log in await _logs())
    assert details[0].startswith("Insufficient permissions:")
    assert details[1].startswith("Repository not found:")


@pytest.mark.asyncio
async def test_unknown_action_fails_with_literal_value(fake_github: FakeGitHub) -> None:
    fake_github.add_repository(1, "acme/svc")
    config = _config("[Create_Issue, delete-repo]")
    scan_id = await _scan(fake_github, config)
    await _executor(fake_github, config).process_actions_for_scan(scan_id)
    logs = await _logs()
    by_action = {log.action_type: log for log in logs}
    assert by_action["Create_Issue"].status == ACTION_STATUS_SUCCESS
    assert by_action["delete-repo"].status == ACTION_STATUS_FAILED
    assert by_action["delete-repo"].details == "Unknown action type: delete-repo"


@pytest.mark.asyncio
async def test_pull_request_actions_without_open_prs_are_skipped(fake_github: FakeGitHub) -> None:
    fake_github.add_repository(1, "acme/svc")
    fake_github.set_file(1, "catalog-info.yaml", "spec:\n  owner: team-a\n")
    fake_github.workflow_permissions[1] = "write"
    scan_id = await _scan(fake_github)
    summary = await _executor(fake_github).process_actions_for_scan(scan_id)
    assert summary.skipped == 2
    assert {log.details for log in await _logs()} == {"No open pull requests found"}


@pytest.mark.asyncio
async def test_block_prs_logs_one_entry_per_pull_request(fake_github: FakeGitHub) -> None:
    fake_github.add_repository(1, "acme/svc")
    fake_github.set_file(1, "catalog-info.yaml", "spec:\n  owner: team-a\n")
    fake_github.workflow_permissions[1] = "write"
    fake_github.add_pull_request(1, 7, head_sha="sha-7")
    fake_github.add_pull_request(1, 8, head_sha="sha-8")
    config = _config("block-prs", policy_type="correct_workflow_permissions")

    scan_id = await _scan(fake_github, config)
    await _executor(fake_github, config).process_actions_for_scan(scan_id)

    assert sorted(log.details for log in await _logs()) == [
        "Created/updated status check for PR #7",
        "Created/updated status check for PR #8",
    ]
    assert fake_github.check_runs[(1, "sha-7")][0].conclusion == "failure"


@pytest.mark.asyncio
async def test_comment_failure_on_one_pull_request_keeps_going(fake_github: FakeGitHub) -> None:
    fake_github.add_repository(1, "acme/svc")
    fake_github.add_pull_request(1, 7)
    fake_github.add_pull_request(1, 8)
    fake_github.failures["create_pull_request_comment"] = (
        lambda repository, number: RuntimeError(f"boom on {number}") if number == 7 else None
    )
    config = _config("comment-on-prs")

    scan_id = await _scan(fake_github, config)
    summary = await _executor(fake_github, config).process_actions_for_scan(scan_id)

    assert (summary.failed, summary.succeeded) == (1, 1)
    assert sorted((log.status, log.details) for log in await _logs()) == [
        (ACTION_STATUS_FAILED, "Failed to comment on PR #7: boom on 7"),
        (ACTION_STATUS_SUCCESS, "Commented on PR #8"),
    ]
    assert fake_github.comments[(1, 7)] == []
    assert len(fake_github.comments[(1, 8)]) == 1


@pytest.mark.asyncio
async def test_status_check_failure_on_one_pull_request_keeps_going(fake_github: FakeGitHub) -> None:
    fake_github.add_repository(1, "acme/svc")
    fake_github.add_pull_request(1, 7, head_sha="sha-7")
    fake_github.add_pull_request(1, 8, head_sha="sha-8")
    fake_github.failures["list_check_runs"] = (
        lambda repository, head_sha: RuntimeError("checks unavailable") if head_sha == "sha-7" else None
    )
    config = _config("block-prs")

    scan_id = await _scan(fake_github, config)
    await _executor(fake_github, config).process_actions_for_scan(scan_id)

    assert sorted(log.details for log in await _logs()) == [
        "Created/updated status check for PR #8",
        "Failed to update status check for PR #7: checks unavailable",
    ]
    assert (1, "sha-7") not in fake_github.check_runs
    assert fake_github.check_runs[(1, "sha-8")][0].conclusion == "failure"


@pytest.mark.asyncio
async def test_violation_without_policy_config_is_skipped(fake_github: FakeGitHub) -> None:
    fake_github.add_repository(1, "acme/svc")
    scan_id = await _scan(fake_github, _config("log-only"))
    # The policy was removed from configuration between the scan and the action run.
    executor = _executor(fake_github, _config("log-only", policy_type="has_catalog_info_yaml"))
    summary = await executor.process_actions_for_scan(scan_id)
    assert summary.violations == 1
    assert await _logs() == []


@pytest.mark.asyncio
async def test_failing_action_does_not_stop_the_next_one(fake_github: FakeGitHub) -> None:
    fake_github.add_repository(1, "acme/svc")
    fake_github.failures["list_open_issues"] = RuntimeError("socket closed")
    config = _config("[create-issue, log-only]")
    scan_id = await _scan(fake_github, config)
    summary = await _executor(fake_github, config).process_actions_for_scan(scan_id)
    assert (summary.failed, summary.succeeded) == (1, 1)
    failed = [log for log in await _logs() if log.status == ACTION_STATUS_FAILED]
    assert failed[0].details == "Exception: socket closed"


@pytest.mark.asyncio
async def test_scan_without_violations_runs_nothing(fake_github: FakeGitHub) -> None:
    fake_github.add_repository(1, "acme/svc")
    fake_github.set_file(1, "AGENTS.md", "# Agents\n")
    config = _config("create-issue")
    scan_id = await _scan(fake_github, config)
    summary = await _executor(fake_github, config).process_actions_for_scan(scan_id)
    assert summary.violations == 0
    assert fake_github.calls["list_open_issues"] == 0
