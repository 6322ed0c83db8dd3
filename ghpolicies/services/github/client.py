from __future__ import annotations

import base64
import binascii
import logging
import time
from typing import Any, Awaitable, Callable
from urllib.parse import quote

import httpx

from ghpolicies.core.errors import (
    GitHubApiError,
    GitHubForbiddenError,
    GitHubNotFoundError,
    GitHubRateLimitedError,
)
from ghpolicies.services.github.models import (
    CheckRun,
    Comment,
    GitHubRepository,
    Issue,
    PullRequest,
)
from ghpolicies.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_GITHUB_ACCEPT = "application/vnd.github+json"
_API_VERSION = "2022-11-28"
_PER_PAGE = 100

TokenProvider = Callable[[], Awaitable[str]]
# Repositories are addressed by numeric id, or by "owner/name" for the control repository.
RepositoryRef = int | str


def _repo_path(repository: RepositoryRef) -> str:
    if isinstance(repository, int):
        return f"/repositories/{repository}"
    return f"/repos/{repository.strip('/')}"


def _content_path(path: str) -> str:
    return quote(path.lstrip("/"), safe="/")


def _raise_for_status(response: httpx.Response, *, method: str, path: str) -> None:
    status = response.status_code
    if status < 400:
        return
    message = f"GitHub {method} {path} failed with status {status}"
    if status == 404:
        raise GitHubNotFoundError(message, status_code=status)
    if status == 429 or (status == 403 and response.headers.get("x-ratelimit-remaining") == "0"):
        raise GitHubRateLimitedError(message, status_code=status)
    if status == 403:
        raise GitHubForbiddenError(message, status_code=status)
    raise GitHubApiError(message, status_code=status)


class GitHubClient:
    """Thin async wrapper over the GitHub REST endpoints the compliance engine needs."""

    def __init__(
        self,
        *,
        token_provider: TokenProvider,
        organization: str,
        api_url: str = "https://api.github.com",
        timeout_s: float = 15.0,
        user_agent: str = "ghpolicies",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.organization = organization
        self._token_provider = token_provider
        self._client = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            timeout=timeout_s,
            transport=transport,
            headers={
                "Accept": _GITHUB_ACCEPT,
                "User-Agent": user_agent,
                "X-GitHub-Api-Version": _API_VERSION,
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        token: str | None = None,
    ) -> httpx.Response:
        # Installation token by default; user-token calls pass their own credential.
        bearer = token if token is not None else await self._token_provider()
        headers = {"Authorization": f"Bearer {bearer}"}
        start = time.monotonic()
        try:
            response = await self._client.request(method, path, params=params, json=json, headers=headers)
        except httpx.HTTPError as exc:
            record_external_call(
                integration="github",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("github_request_error method=%s path=%s error=%s", method, path, type(exc).__name__)
            raise GitHubApiError(f"GitHub {method} {path} failed: {type(exc).__name__}") from exc
        record_external_call(
            integration="github",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.status_code < 500,
        )
        _raise_for_status(response, method=method, path=path)
        return response

    async def _paginate(self, path: str, *, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        # Walk numbered pages until GitHub returns a short page.
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            query = dict(params or {})
            query.update({"per_page": _PER_PAGE, "page": page})
            response = await self._request("GET", path, params=query)
            batch = response.json()
            if not isinstance(batch, list):
                raise GitHubApiError(f"GitHub GET {path} returned a non-list page")
            items.extend(batch)
            if len(batch) < _PER_PAGE:
                return items
            page += 1

    async def list_organization_repositories(self) -> list[GitHubRepository]:
        org = quote(self.organization, safe="")
        rows = await self._paginate(f"/orgs/{org}/repos", params={"type": "all"})
        return [GitHubRepository.from_api(row) for row in rows]

    async def get_repository(self, repository_id: int) -> GitHubRepository:
        response = await self._request("GET", _repo_path(repository_id))
        return GitHubRepository.from_api(response.json())

    async def archive_repository(self, full_name: str) -> None:
        await self._request("PATCH", _repo_path(full_name), json={"archived": True})
        logger.info("github_repository_archived repository=%s", full_name)

    async def get_file_content(self, repository: RepositoryRef, path: str) -> bytes | None:
        """Return the decoded bytes of a root-relative file, or None when it is absent."""
        try:
            response = await self._request("GET", f"{_repo_path(repository)}/contents/{_content_path(path)}")
        except GitHubNotFoundError:
            return None
        body = response.json()
        # Directory listings come back as a list; they are not files.
        if not isinstance(body, dict) or body.get("type", "file") != "file":
            return None
        encoded = body.get("content") or ""
        if body.get("encoding", "base64") != "base64":
            return str(encoded).encode("utf-8")
        try:
            return base64.b64decode(str(encoded).encode("ascii"), validate=False)
        except (binascii.Error, ValueError) as exc:
            raise GitHubApiError(f"GitHub returned undecodable content for {path}") from exc

    async def file_exists(self, repository: RepositoryRef, path: str) -> bool:
        try:
            await self._request("GET", f"{_repo_path(repository)}/contents/{_content_path(path)}")
        except GitHubNotFoundError:
            return False
        return True

    async def get_workflow_permissions(self, repository_id: int) -> str | None:
        # A missing resource means Actions is disabled for the repository.
        try:
            response = await self._request("GET", f"{_repo_path(repository_id)}/actions/permissions/workflow")
        except GitHubNotFoundError:
            return None
        value = response.json().get("default_workflow_permissions")
        return str(value) if value is not None else None

    async def list_open_issues(
        self, repository: RepositoryRef, *, labels: list[str] | None = None
    ) -> list[Issue]:
        params: dict[str, Any] = {"state": "open"}
        if labels:
            params["labels"] = ",".join(labels)
        rows = await self._paginate(f"{_repo_path(repository)}/issues", params=params)
        # The issues endpoint also returns pull requests.
        return [Issue.from_api(row) for row in rows if "pull_request" not in row]

    async def create_issue(
        self, repository: RepositoryRef, *, title: str, body: str, labels: list[str]
    ) -> Issue:
        response = await self._request(
            "POST",
            f"{_repo_path(repository)}/issues",
            json={"title": title, "body": body, "labels": list(labels)},
        )
        return Issue.from_api(response.json())

    async def list_open_pull_requests(self, repository: RepositoryRef) -> list[PullRequest]:
        rows = await self._paginate(f"{_repo_path(repository)}/pulls", params={"state": "open"})
        return [PullRequest.from_api(row) for row in rows]

    async def list_pull_request_comments(self, repository: RepositoryRef, number: int) -> list[Comment]:
        rows = await self._paginate(f"{_repo_path(repository)}/issues/{int(number)}/comments")
        return [Comment.from_api(row) for row in rows]

    async def create_pull_request_comment(self, repository: RepositoryRef, number: int, body: str) -> Comment:
        response = await self._request(
            "POST",
            f"{_repo_path(repository)}/issues/{int(number)}/comments",
            json={"body": body},
        )
        return Comment.from_api(response.json())

    async def list_check_runs(self, repository: RepositoryRef, head_sha: str) -> list[CheckRun]:
        response = await self._request(
            "GET",
            f"{_repo_path(repository)}/commits/{quote(head_sha, safe='')}/check-runs",
            params={"per_page": _PER_PAGE},
        )
        return [CheckRun.from_api(row) for row in response.json().get("check_runs") or []]

    async def create_check_run(
        self,
        repository: RepositoryRef,
        *,
        name: str,
        head_sha: str,
        conclusion: str,
        title: str,
        summary: str,
    ) -> CheckRun:
        response = await self._request(
            "POST",
            f"{_repo_path(repository)}/check-runs",
            json={
                "name": name,
                "head_sha": head_sha,
                "status": "completed",
                "conclusion": conclusion,
                "output": {"title": title, "summary": summary},
            },
        )
        return CheckRun.from_api(response.json())

    async def update_check_run(
        self,
        repository: RepositoryRef,
        check_run_id: int,
        *,
        conclusion: str,
        title: str,
        summary: str,
    ) -> CheckRun:
        response = await self._request(
            "PATCH",
            f"{_repo_path(repository)}/check-runs/{int(check_run_id)}",
            json={
                "status": "completed",
                "conclusion": conclusion,
                "output": {"title": title, "summary": summary},
            },
        )
        return CheckRun.from_api(response.json())

    async def is_user_member_of_team(self, organization: str, team_slug: str, user_token: str) -> bool:
        """Check active team membership using the user's own OAuth token."""
        user = (await self._request("GET", "/user", token=user_token)).json()
        login = user.get("login")
        if not login:
            return False
        path = (
            f"/orgs/{quote(organization, safe='')}/teams/{quote(team_slug, safe='')}"
            f"/memberships/{quote(str(login), safe='')}"
        )
        try:
            membership = (await self._request("GET", path, token=user_token)).json()
        except GitHubNotFoundError:
            return False
        return str(membership.get("state") or "").lower() == "active"
