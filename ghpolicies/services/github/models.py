from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class GitHubRepository:
    id: int
    name: str
    full_name: str
    archived: bool = False
    html_url: str = ""
    default_branch: str | None = None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "GitHubRepository":
        return cls(
            id=int(payload["id"]),
            name=str(payload.get("name") or ""),
            full_name=str(payload.get("full_name") or payload.get("name") or ""),
            archived=bool(payload.get("archived", False)),
            html_url=str(payload.get("html_url") or ""),
            default_branch=payload.get("default_branch"),
        )


@dataclass(frozen=True)
class Issue:
    number: int
    title: str
    html_url: str
    state: str = "open"
    labels: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "Issue":
        labels = tuple(
            str(label.get("name") if isinstance(label, dict) else label)
            for label in payload.get("labels") or []
        )
        return cls(
            number=int(payload["number"]),
            title=str(payload.get("title") or ""),
            html_url=str(payload.get("html_url") or ""),
            state=str(payload.get("state") or "open"),
            labels=labels,
        )


@dataclass(frozen=True)
class PullRequest:
    number: int
    head_sha: str | None
    title: str = ""
    html_url: str = ""

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "PullRequest":
        head = payload.get("head") or {}
        return cls(
            number=int(payload["number"]),
            head_sha=head.get("sha") or None,
            title=str(payload.get("title") or ""),
            html_url=str(payload.get("html_url") or ""),
        )


@dataclass(frozen=True)
class Comment:
    id: int
    body: str
    user_login: str = ""
    user_type: str = ""

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "Comment":
        user = payload.get("user") or {}
        return cls(
            id=int(payload["id"]),
            body=str(payload.get("body") or ""),
            user_login=str(user.get("login") or ""),
            user_type=str(user.get("type") or ""),
        )


@dataclass(frozen=True)
class CheckRun:
    id: int
    name: str
    status: str = "completed"
    conclusion: str | None = None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "CheckRun":
        return cls(
            id=int(payload["id"]),
            name=str(payload.get("name") or ""),
            status=str(payload.get("status") or ""),
            conclusion=payload.get("conclusion"),
        )


@dataclass(frozen=True)
class InstallationToken:
    token: str
    expires_at: datetime
