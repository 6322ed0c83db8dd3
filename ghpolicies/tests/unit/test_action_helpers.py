from __future__ import annotations

import asyncio
import gc

import pytest

from ghpolicies.domain.models import ACTION_STATUS_SKIPPED, ACTION_STATUS_SUCCESS
from ghpolicies.persistence.db import SessionLocal
from ghpolicies.services.actions import (
    DEFAULT_STATUS_CHECK_NAME,
    ActionExecutor,
    RepositoryLocks,
    build_pr_comment,
    is_bot_comment,
    is_duplicate_comment,
    normalize_action,
)
from ghpolicies.services.configuration import PolicyConfig
from ghpolicies.services.github.models import Comment
from ghpolicies.tests.utils.fake_github import FakeGitHub, make_config_cache


def _executor(github: FakeGitHub) -> ActionExecutor:
    return ActionExecutor(github=github, config_cache=make_config_cache(github), session_factory=SessionLocal)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("create_issue", "create-issue"), ("create-issue", "create-issue"), (" Archive_Repo ", "archive-repo")],
)
def test_normalize_action(raw: str, expected: str) -> None:
    assert normalize_action(raw) == expected


def test_bot_detection() -> None:
    assert is_bot_comment(Comment(id=1, body="", user_login="dependabot[bot]", user_type="Bot"))
    assert is_bot_comment(Comment(id=2, body="", user_login="compliance-bot", user_type="User"))
    assert not is_bot_comment(Comment(id=3, body="", user_login="octocat", user_type="User"))


def test_duplicate_detection_uses_message_prefix_from_bots_only() -> None:
    message = build_pr_comment(["has_agents_md"])
    prefix_only = message[:50].upper() + " (older wording)"
    assert is_duplicate_comment([Comment(id=1, body=prefix_only, user_login="x[bot]", user_type="Bot")], message)
    assert not is_duplicate_comment([Comment(id=2, body=message, user_login="octocat", user_type="User")], message)


def test_default_comment_lists_every_policy_and_custom_message_wins() -> None:
    message = build_pr_comment(["has_agents_md", "correct_workflow_permissions"])
    assert message.startswith("⚠️ **Policy Compliance Violations Detected**")
    assert "- has_agents_md\n- correct_workflow_permissions" in message
    custom = PolicyConfig.model_validate(
        {"type": "has_agents_md", "action": "comment-on-prs", "pr_comment_details": {"message": "Add AGENTS.md"}}
    )
    assert build_pr_comment(["has_agents_md"], custom) == "Add AGENTS.md"


@pytest.mark.asyncio
async def test_existing_bot_comment_prevents_duplicate(fake_github: FakeGitHub) -> None:
    fake_github.add_repository(10, "acme/svc")
    message = build_pr_comment(["has_agents_md"])
    fake_github.add_comment(10, 12, message, login="ghpolicies[bot]", user_type="Bot")
    executor = _executor(fake_github)
    outcome = await executor.comment_on_pull_request(10, 12, ["has_agents_md"])
    assert outcome.status == ACTION_STATUS_SKIPPED
    assert fake_github.calls["create_pull_request_comment"] == 0


@pytest.mark.asyncio
async def test_no_violations_means_no_comment(fake_github: FakeGitHub) -> None:
    executor = _executor(fake_github)
    outcome = await executor.comment_on_pull_request(10, 12, [])
    assert outcome.status == ACTION_STATUS_SKIPPED
    assert fake_github.calls["list_pull_request_comments"] == 0


@pytest.mark.asyncio
async def test_concurrent_comments_on_same_repository_post_once(fake_github: FakeGitHub) -> None:
    executor = _executor(fake_github)
    outcomes = await asyncio.gather(
        *(executor.comment_on_pull_request(10, 12, ["has_agents_md"]) for _ in range(3))
    )
    assert sorted(outcome.status for outcome in outcomes) == [
        ACTION_STATUS_SKIPPED,
        ACTION_STATUS_SKIPPED,
        ACTION_STATUS_SUCCESS,
    ]
    assert fake_github.calls["create_pull_request_comment"] == 1


@pytest.mark.asyncio
async def test_status_check_is_updated_in_place(fake_github: FakeGitHub) -> None:
    executor = _executor(fake_github)
    await executor.update_pull_request_status_check(10, "sha1", ["correct_workflow_permissions"])
    await executor.update_pull_request_status_check(10, "sha1", [])
    runs = fake_github.check_runs[(10, "sha1")]
    assert len(runs) == 1
    assert runs[0].name == DEFAULT_STATUS_CHECK_NAME
    assert runs[0].conclusion == "success"
    assert fake_github.updated_check_runs == [(runs[0].id, "success")]


@pytest.mark.asyncio
async def test_status_check_matches_configured_name_case_insensitively(fake_github: FakeGitHub) -> None:
    policy = PolicyConfig.model_validate(
        {"type": "x", "action": "block-prs", "block_prs_details": {"status_check_name": "Workflow Guard"}}
    )
    await fake_github.create_check_run(
        10, name="workflow guard", head_sha="sha2", conclusion="success", title="t", summary="s"
    )
    executor = _executor(fake_github)
    await executor.update_pull_request_status_check(10, "sha2", ["x"], policy)
    runs = fake_github.check_runs[(10, "sha2")]
    assert len(runs) == 1
    assert runs[0].conclusion == "failure"


@pytest.mark.asyncio
async def test_repository_locks_are_shared_while_held_and_dropped_when_idle() -> None:
    locks = RepositoryLocks()
    lock = locks.for_repository(10)
    assert locks.for_repository(10) is lock
    async with lock:
        assert locks.active_count() == 1
    del lock
    gc.collect()
    assert locks.active_count() == 0
    assert not locks.for_repository(10).locked()


@pytest.mark.asyncio
async def test_executor_keeps_an_empty_shared_lock_registry() -> None:
    github = FakeGitHub()
    shared = RepositoryLocks()
    executor = ActionExecutor(
        github=github, config_cache=make_config_cache(github), session_factory=SessionLocal, locks=shared
    )
    async with shared.for_repository(10):
        task = asyncio.create_task(executor.comment_on_pull_request(10, 12, ["has_agents_md"]))
        await asyncio.sleep(0)
        assert not task.done()
    await task
    assert github.calls["create_pull_request_comment"] == 1
