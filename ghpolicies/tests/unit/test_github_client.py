from __future__ import annotations

import base64
import json

import httpx
import pytest

from ghpolicies.core.errors import GitHubForbiddenError, GitHubNotFoundError, GitHubRateLimitedError
from ghpolicies.services.github.client import GitHubClient
from ghpolicies.services.telemetry import external_call_stats


async def _installation_token() -> str:
    return "installation-token"


def _client(handler) -> GitHubClient:
    return GitHubClient(
        token_provider=_installation_token,
        organization="acme",
        api_url="https://api.github.test",
        transport=httpx.MockTransport(handler),
    )


def _repo_payload(repository_id: int) -> dict:
    return {"id": repository_id, "name": f"svc-{repository_id}", "full_name": f"acme/svc-{repository_id}"}


@pytest.mark.asyncio
async def test_list_organization_repositories_walks_pages() -> None:
    pages: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer installation-token"
        page = request.url.params["page"]
        pages.append(page)
        if page == "1":
            return httpx.Response(200, json=[_repo_payload(i) for i in range(100)])
        return httpx.Response(200, json=[_repo_payload(100)])

    client = _client(_handler)
    repositories = await client.list_organization_repositories()
    await client.aclose()
    assert pages == ["1", "2"]
    assert len(repositories) == 101
    assert repositories[-1].full_name == "acme/svc-100"
    assert external_call_stats()["github"]["count"] == 2


@pytest.mark.asyncio
async def test_get_file_content_decodes_base64_and_maps_missing_to_none() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/repos/acme/.github/contents/config.yaml":
            encoded = base64.b64encode(b"policies: []\n").decode("ascii")
            return httpx.Response(200, json={"type": "file", "encoding": "base64", "content": encoded})
        return httpx.Response(404, json={"message": "Not Found"})

    client = _client(_handler)
    assert await client.get_file_content("acme/.github", "config.yaml") == b"policies: []\n"
    assert await client.get_file_content(7, "catalog-info.yaml") is None
    assert await client.file_exists(7, "AGENTS.md") is False
    await client.aclose()


@pytest.mark.asyncio
async def test_workflow_permissions_absent_resource_is_none() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/repositories/1/actions/permissions/workflow":
            return httpx.Response(200, json={"default_workflow_permissions": "write"})
        return httpx.Response(404, json={"message": "Not Found"})

    client = _client(_handler)
    assert await client.get_workflow_permissions(1) == "write"
    assert await client.get_workflow_permissions(2) is None
    await client.aclose()


@pytest.mark.asyncio
async def test_error_statuses_map_to_typed_errors() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/repositories/1":
            return httpx.Response(403, json={"message": "Resource not accessible by integration"})
        if request.url.path == "/repositories/2":
            return httpx.Response(403, headers={"x-ratelimit-remaining": "0"}, json={"message": "rate limit"})
        return httpx.Response(404, json={"message": "Not Found"})

    client = _client(_handler)
    with pytest.raises(GitHubForbiddenError):
        await client.get_repository(1)
    with pytest.raises(GitHubRateLimitedError):
        await client.get_repository(2)
    with pytest.raises(GitHubNotFoundError):
        await client.get_repository(3)
    await client.aclose()


@pytest.mark.asyncio
async def test_list_open_issues_drops_pull_requests() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["labels"] == "policy-violation"
        return httpx.Response(
            200,
            json=[
                {"number": 1, "title": "Compliance Violation: x", "html_url": "u1", "labels": [{"name": "policy-violation"}]},
                {"number": 2, "title": "A PR", "html_url": "u2", "pull_request": {"url": "..."}},
            ],
        )

    client = _client(_handler)
    issues = await client.list_open_issues(5, labels=["policy-violation"])
    await client.aclose()
    assert [issue.number for issue in issues] == [1]
    assert issues[0].labels == ("policy-violation",)


@pytest.mark.asyncio
async def test_archive_patches_repository_by_full_name() -> None:
    seen: dict[str, object] = {}

    def _handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_repo_payload(9))

    client = _client(_handler)
    await client.archive_repository("acme/svc-9")
    await client.aclose()
    assert seen == {"method": "PATCH", "path": "/repos/acme/svc-9", "body": {"archived": True}}


@pytest.mark.asyncio
async def test_team_membership_uses_user_token() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer user-token"
        if request.url.path == "/user":
            return httpx.Response(200, json={"login": "octocat"})
        if request.url.path == "/orgs/acme/teams/admins/memberships/octocat":
            return httpx.Response(200, json={"state": "active", "role": "member"})
        return httpx.Response(404, json={"message": "Not Found"})

    client = _client(_handler)
    assert await client.is_user_member_of_team("acme", "admins", "user-token") is True
    assert await client.is_user_member_of_team("acme", "other", "user-token") is False
    await client.aclose()


@pytest.mark.asyncio
async def test_check_run_creation_payload() -> None:
    seen: dict[str, object] = {}

    def _handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": 77, "name": "Policy Compliance Check", "status": "completed", "conclusion": "failure"})

    client = _client(_handler)
    run = await client.create_check_run(
        3, name="Policy Compliance Check", head_sha="deadbeef", conclusion="failure", title="t", summary="s"
    )
    await client.aclose()
    assert run.id == 77
    assert seen["path"] == "/repositories/3/check-runs"
    assert seen["body"]["status"] == "completed"
    assert seen["body"]["head_sha"] == "deadbeef"
