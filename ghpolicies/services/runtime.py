from __future__ import annotations

from functools import lru_cache

from ghpolicies.core.config import get_settings
from ghpolicies.persistence.db import SessionLocal
from ghpolicies.services.actions import ActionExecutor
from ghpolicies.services.authorization import AuthorizationService
from ghpolicies.services.configuration import ConfigurationCache, github_config_loader
from ghpolicies.services.github.auth import TokenManager, http_token_exchange
from ghpolicies.services.github.client import GitHubClient
from ghpolicies.services.jobs import enqueue_process_actions
from ghpolicies.services.policies.engine import PolicyEvaluationEngine
from ghpolicies.services.policies.evaluators import build_default_evaluators
from ghpolicies.services.scanning import ScanOrchestrator
from ghpolicies.services.webhooks import PullRequestWebhookHandler


# Process-wide singletons; the token and configuration caches must be shared to stay single-flight.


@lru_cache
def get_token_manager() -> TokenManager:
    settings = get_settings()
    return TokenManager(
        app_id=settings.github_app_id,
        private_key=settings.github_app_private_key,
        exchange=http_token_exchange(
            api_url=settings.github_api_url,
            installation_id=int(settings.github_installation_id or 0),
            timeout_s=settings.ext_call_timeout_ms / 1000.0,
            user_agent=settings.user_agent,
        ),
        expiry_margin_s=settings.token_expiry_margin_s,
    )


@lru_cache
def get_github_client() -> GitHubClient:
    settings = get_settings()
    return GitHubClient(
        token_provider=get_token_manager().get_token,
        organization=settings.github_organization or "",
        api_url=settings.github_api_url,
        timeout_s=settings.ext_call_timeout_ms / 1000.0,
        user_agent=settings.user_agent,
    )


@lru_cache
def get_config_cache() -> ConfigurationCache:
    settings = get_settings()
    loader = github_config_loader(
        get_github_client(),
        organization=settings.github_organization or "",
        repository=settings.config_repository,
        path=settings.config_path,
    )
    return ConfigurationCache(loader=loader, ttl_s=settings.config_cache_ttl_s)


@lru_cache
def get_policy_engine() -> PolicyEvaluationEngine:
    return PolicyEvaluationEngine(build_default_evaluators(get_github_client()))


@lru_cache
def get_action_executor() -> ActionExecutor:
    settings = get_settings()
    return ActionExecutor(
        github=get_github_client(),
        config_cache=get_config_cache(),
        session_factory=SessionLocal,
        max_concurrency=settings.action_max_concurrency,
    )


@lru_cache
def get_scan_orchestrator() -> ScanOrchestrator:
    settings = get_settings()
    return ScanOrchestrator(
        github=get_github_client(),
        config_cache=get_config_cache(),
        engine=get_policy_engine(),
        session_factory=SessionLocal,
        dispatch_actions=enqueue_process_actions,
        max_concurrency=settings.scan_max_concurrency,
    )


@lru_cache
def get_webhook_handler() -> PullRequestWebhookHandler:
    return PullRequestWebhookHandler(
        github=get_github_client(),
        config_cache=get_config_cache(),
        engine=get_policy_engine(),
        executor=get_action_executor(),
    )


@lru_cache
def get_authorization_service() -> AuthorizationService:
    return AuthorizationService(github=get_github_client(), config_cache=get_config_cache())


def reset_runtime() -> None:
    # Tests swap settings between cases; drop every cached component.
    for factory in (
        get_token_manager,
        get_github_client,
        get_config_cache,
        get_policy_engine,
        get_action_executor,
        get_scan_orchestrator,
        get_webhook_handler,
        get_authorization_service,
    ):
        factory.cache_clear()
