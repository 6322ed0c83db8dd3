from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Awaitable, Callable

import httpx
import jwt

from ghpolicies.core.errors import GitHubAuthenticationError
from ghpolicies.services.github.models import InstallationToken


logger = logging.getLogger(__name__)

# GitHub rejects app JWTs that live longer than ten minutes.
_JWT_BACKDATE = timedelta(seconds=60)
_JWT_LIFETIME = timedelta(minutes=9)
_GITHUB_ACCEPT = "application/vnd.github+json"

TokenExchange = Callable[[str], Awaitable[InstallationToken]]
TimeSource = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_expires_at(value: str) -> datetime:
    # GitHub returns ISO-8601 with a trailing Z.
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_app_jwt(*, app_id: str, private_key: str, now: datetime) -> str:
    """Sign the short-lived RS256 JWT that identifies the GitHub App."""
    claims = {
        "iat": int((now - _JWT_BACKDATE).timestamp()),
        "exp": int((now + _JWT_LIFETIME).timestamp()),
        "iss": str(app_id),
    }
    try:
        return jwt.encode(claims, private_key, algorithm="RS256")
    except (ValueError, TypeError, jwt.PyJWTError) as exc:
        raise GitHubAuthenticationError("GitHub App private key could not sign the app JWT") from exc


def http_token_exchange(
    *,
    api_url: str,
    installation_id: int,
    timeout_s: float,
    user_agent: str = "ghpolicies",
    transport: httpx.AsyncBaseTransport | None = None,
) -> TokenExchange:
    """Build the default exchange that trades an app JWT for an installation token."""
    url = f"{api_url.rstrip('/')}/app/installations/{installation_id}/access_tokens"

    async def _exchange(app_jwt: str) -> InstallationToken:
        headers = {
            "Authorization": f"Bearer {app_jwt}",
            "Accept": _GITHUB_ACCEPT,
            "User-Agent": user_agent,
        }
        try:
            async with httpx.AsyncClient(timeout=timeout_s, transport=transport) as client:
                response = await client.post(url, headers=headers)
        except httpx.HTTPError as exc:
            raise GitHubAuthenticationError("Installation token request failed") from exc
        if response.status_code >= 400:
            logger.warning(
                "github_token_exchange_failed installation_id=%s status=%s",
                installation_id,
                response.status_code,
            )
            raise GitHubAuthenticationError(
                f"Installation token exchange failed with status {response.status_code}"
            )
        body = response.json()
        token = body.get("token")
        expires_at = body.get("expires_at")
        if not token or not expires_at:
            raise GitHubAuthenticationError("Installation token response missing token or expiry")
        return InstallationToken(token=str(token), expires_at=_parse_expires_at(str(expires_at)))

    return _exchange


class TokenManager:
    """Cache the organization installation token and refresh it single-flight.

    The cached token is treated as expired ``expiry_margin_s`` seconds before
    GitHub's own expiry. Concurrent callers that observe a miss share one
    in-flight exchange and all receive its token or its error.
    """

    def __init__(
        self,
        *,
        app_id: str | None,
        private_key: str | None,
        exchange: TokenExchange,
        expiry_margin_s: int = 300,
        time_source: TimeSource | None = None,
    ) -> None:
        self._app_id = app_id
        self._private_key = private_key
        self._exchange = exchange
        self._margin = timedelta(seconds=max(0, int(expiry_margin_s)))
        self._time_source = time_source or _utc_now
        self._cached: InstallationToken | None = None
        self._inflight: asyncio.Task[InstallationToken] | None = None

    @property
    def cached_expires_at(self) -> datetime | None:
        return self._cached.expires_at if self._cached else None

    async def get_token(self) -> str:
        cached = self._cached
        if cached is not None and self._time_source() < cached.expires_at:
            return cached.token
        task = self._inflight
        if task is None:
            task = asyncio.create_task(self._refresh())
            self._inflight = task
            task.add_done_callback(self._clear_inflight)
        # Shield so one cancelled waiter does not abort the exchange for the others.
        token = await asyncio.shield(task)
        return token.token

    def _clear_inflight(self, task: asyncio.Task[InstallationToken]) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _refresh(self) -> InstallationToken:
        if not self._app_id or not self._private_key:
            raise GitHubAuthenticationError("GitHub App id and private key must be configured")
        app_jwt = build_app_jwt(
            app_id=self._app_id,
            private_key=self._private_key,
            now=self._time_source(),
        )
        try:
            fresh = await self._exchange(app_jwt)
        except GitHubAuthenticationError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise GitHubAuthenticationError("Installation token exchange failed") from exc
        cached = InstallationToken(token=fresh.token, expires_at=fresh.expires_at - self._margin)
        self._cached = cached
        logger.info("github_installation_token_refreshed expires_at=%s", fresh.expires_at.isoformat())
        return cached
