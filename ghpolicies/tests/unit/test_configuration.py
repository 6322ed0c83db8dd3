from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ghpolicies.core.errors import ConfigurationNotFoundError, InvalidConfigurationError
from ghpolicies.services.configuration import ConfigurationCache, parse_app_config


_VALID = """
access_control:
  authorized_team: acme/platform
policies:
  - type: has_agents_md
    action: create_issue
  - type: correct_workflow_permissions
    action: [block-prs, "", comment-on-prs]
    block_prs_details:
      status_check_name: Workflow Guard
"""


def test_action_string_and_list_normalize_to_ordered_lists() -> None:
    config = parse_app_config(_VALID)
    assert config.access_control.authorized_team == "acme/platform"
    assert config.policies[0].actions == ["create_issue"]
    # Blank entries are dropped, order is kept.
    assert config.policies[1].actions == ["block-prs", "comment-on-prs"]
    assert config.policies[1].block_prs_details.status_check_name == "Workflow Guard"
    assert config.policy_for("Correct_Workflow_Permissions") is config.policies[1]


def test_missing_authorized_team_is_invalid() -> None:
    with pytest.raises(InvalidConfigurationError, match="authorized_team must be set"):
        parse_app_config("access_control:\n  authorized_team: '  '\npolicies: []\n")


def test_yaml_syntax_error_is_malformed() -> None:
    with pytest.raises(InvalidConfigurationError, match="malformed"):
        parse_app_config("access_control: [unclosed\n")


def test_empty_document_is_not_found() -> None:
    with pytest.raises(ConfigurationNotFoundError):
        parse_app_config(b"   \n")


def test_policy_without_actions_is_invalid() -> None:
    text = "access_control:\n  authorized_team: a/b\npolicies:\n  - type: has_agents_md\n    action: []\n"
    with pytest.raises(InvalidConfigurationError):
        parse_app_config(text)


def test_empty_policies_section_is_allowed() -> None:
    config = parse_app_config("access_control:\n  authorized_team: a/b\npolicies:\n")
    assert config.policies == []


class _CountingLoader:
    def __init__(self, content: bytes | None) -> None:
        self.content = content
        self.calls = 0
        self.gate: asyncio.Event | None = None

    async def __call__(self) -> bytes | None:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        return self.content


@pytest.mark.asyncio
async def test_concurrent_misses_fetch_once() -> None:
    loader = _CountingLoader(_VALID.encode("utf-8"))
    loader.gate = asyncio.Event()
    cache = ConfigurationCache(loader=loader, ttl_s=900)
    waiters = [asyncio.create_task(cache.get_config()) for _ in range(8)]
    await asyncio.sleep(0)
    loader.gate.set()
    configs = await asyncio.gather(*waiters)
    assert loader.calls == 1
    assert all(config is configs[0] for config in configs)


@pytest.mark.asyncio
async def test_ttl_expiry_and_force_refresh() -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    clock = {"now": now}
    loader = _CountingLoader(_VALID.encode("utf-8"))
    cache = ConfigurationCache(loader=loader, ttl_s=900, time_source=lambda: clock["now"])

    await cache.get_config()
    clock["now"] = now + timedelta(seconds=899)
    await cache.get_config()
    assert loader.calls == 1

    clock["now"] = now + timedelta(seconds=900)
    await cache.get_config()
    assert loader.calls == 2

    await cache.get_config(force_refresh=True)
    assert loader.calls == 3


@pytest.mark.asyncio
async def test_missing_file_is_not_cached() -> None:
    loader = _CountingLoader(None)
    cache = ConfigurationCache(loader=loader, ttl_s=900)
    with pytest.raises(ConfigurationNotFoundError):
        await cache.get_config()
    loader.content = _VALID.encode("utf-8")
    config = await cache.get_config()
    assert len(config.policies) == 2
    assert loader.calls == 2
