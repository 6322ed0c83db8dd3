from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
import yaml

from ghpolicies.core.errors import ConfigurationNotFoundError, InvalidConfigurationError


logger = logging.getLogger(__name__)

ConfigLoader = Callable[[], Awaitable[bytes | str | None]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AccessControl(BaseModel):
    model_config = ConfigDict(extra="ignore")

    authorized_team: str = ""


class IssueDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str | None = None
    body: str | None = None
    labels: list[str] = Field(default_factory=list)


class PrCommentDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: str | None = None


class BlockPrsDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status_check_name: str | None = None


class PolicyConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str = ""
    type: str
    # Accepts `action: x` or `action: [x, y]`; stored as an ordered non-empty list.
    actions: list[str] = Field(validation_alias=AliasChoices("action", "actions"))
    issue_details: IssueDetails | None = None
    pr_comment_details: PrCommentDetails | None = None
    block_prs_details: BlockPrsDetails | None = None

    @field_validator("type")
    @classmethod
    def _type_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("policy type must not be empty")
        return value

    @field_validator("actions", mode="before")
    @classmethod
    def _normalize_actions(cls, value: Any) -> list[str]:
        if value is None:
            raise ValueError("policy must declare at least one action")
        raw = [value] if isinstance(value, str) else value
        if not isinstance(raw, list):
            raise ValueError("action must be a string or a list of strings")
        actions = [str(item).strip() for item in raw if item is not None and str(item).strip()]
        if not actions:
            raise ValueError("policy must declare at least one action")
        return actions


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_control: AccessControl = Field(default_factory=AccessControl)
    policies: list[PolicyConfig] = Field(default_factory=list)

    def policy_for(self, policy_type: str) -> PolicyConfig | None:
        # Policy types match case-insensitively everywhere.
        wanted = policy_type.lower()
        for policy in self.policies:
            if policy.type.lower() == wanted:
                return policy
        return None


def parse_app_config(raw: bytes | str | None) -> AppConfig:
    """Parse and validate the YAML policy configuration document."""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    if text is None or not text.strip():
        raise ConfigurationNotFoundError("Configuration file is empty")
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise InvalidConfigurationError("Configuration file is malformed") from exc
    if not isinstance(document, dict):
        raise InvalidConfigurationError("Configuration file is malformed")
    # Treat `policies:` with no entries the same as an empty list.
    if document.get("policies") is None:
        document["policies"] = []
    if document.get("access_control") is None:
        document["access_control"] = {}
    try:
        config = AppConfig.model_validate(document)
    except ValidationError as exc:
        raise InvalidConfigurationError(
            f"Configuration file is malformed: {exc.error_count()} validation error(s)"
        ) from exc
    if not config.access_control.authorized_team.strip():
        raise InvalidConfigurationError("access_control.authorized_team must be set")
    return config


def github_config_loader(
    github: Any,
    *,
    organization: str,
    repository: str,
    path: str,
) -> ConfigLoader:
    """Build a loader that reads the configuration file from the control repository."""
    full_name = f"{organization}/{repository}"

    async def _load() -> bytes | None:
        return await github.get_file_content(full_name, path)

    return _load


class ConfigurationCache:
    """TTL cache over the configuration file with single-flight refresh.

    Only successful parses are cached; a failed load raises to every caller
    waiting on it and the next call tries again.
    """

    def __init__(
        self,
        *,
        loader: ConfigLoader,
        ttl_s: int = 900,
        time_source: Callable[[], datetime] | None = None,
    ) -> None:
        self._loader = loader
        self._ttl = timedelta(seconds=max(0, int(ttl_s)))
        self._time_source = time_source or _utc_now
        self._lock = asyncio.Lock()
        self._config: AppConfig | None = None
        self._expires_at: datetime | None = None

    def _fresh(self) -> AppConfig | None:
        if self._config is None or self._expires_at is None:
            return None
        if self._time_source() >= self._expires_at:
            return None
        return self._config

    async def get_config(self, force_refresh: bool = False) -> AppConfig:
        if not force_refresh:
            cached = self._fresh()
            if cached is not None:
                return cached
        async with self._lock:
            # Re-check under the lock: another caller may have just refreshed.
            if not force_refresh:
                cached = self._fresh()
                if cached is not None:
                    return cached
            raw = await self._loader()
            if raw is None:
                logger.warning("configuration_not_found")
                raise ConfigurationNotFoundError("Configuration file not found")
            try:
                config = parse_app_config(raw)
            except InvalidConfigurationError as exc:
                logger.warning("configuration_invalid error=%s", exc)
                raise
            self._config = config
            self._expires_at = self._time_source() + self._ttl
            logger.info("configuration_loaded policies=%s", len(config.policies))
            return config
