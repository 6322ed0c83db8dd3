from __future__ import annotations

import logging
from typing import Any

from ghpolicies.core.errors import GhPoliciesError
from ghpolicies.services.configuration import ConfigurationCache


logger = logging.getLogger(__name__)


def parse_team(authorized_team: str) -> tuple[str, str] | None:
    # Expect exactly "org/team-slug".
    parts = [part.strip() for part in authorized_team.split("/")]
    if len(parts) != 2 or not all(parts):
        return None
    return parts[0], parts[1]


class AuthorizationService:
    """Grant dashboard access to members of the configured team."""

    def __init__(self, *, github: Any, config_cache: ConfigurationCache) -> None:
        self._github = github
        self._config_cache = config_cache

    async def get_authorized_team(self) -> str | None:
        try:
            config = await self._config_cache.get_config()
        except GhPoliciesError as exc:
            logger.error("authorized_team_unavailable error=%s", exc)
            return None
        return config.access_control.authorized_team or None

    async def is_user_authorized(self, user_access_token: str | None) -> bool:
        if not user_access_token:
            logger.warning("authorization_denied reason=missing_token")
            return False
        authorized_team = await self.get_authorized_team()
        if not authorized_team:
            logger.warning("authorization_denied reason=no_team_configured")
            return False
        parsed = parse_team(authorized_team)
        if parsed is None:
            logger.error("authorization_denied reason=invalid_team_format team=%s", authorized_team)
            return False
        org, team_slug = parsed
        try:
            is_member = await self._github.is_user_member_of_team(org, team_slug, user_access_token)
        except Exception as exc:  # noqa: BLE001
            # Any lookup failure denies access rather than erroring the request.
            logger.error("authorization_check_failed team=%s error=%s", authorized_team, exc)
            return False
        logger.info("authorization_checked team=%s member=%s", authorized_team, is_member)
        return bool(is_member)
