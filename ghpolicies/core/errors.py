from __future__ import annotations


class GhPoliciesError(Exception):
    """Base error for ghpolicies."""


class ConfigurationNotFoundError(GhPoliciesError):
    """Policy configuration file is missing or empty."""


class InvalidConfigurationError(GhPoliciesError):
    """Policy configuration file could not be parsed or validated."""


class GitHubAuthenticationError(GhPoliciesError):
    """GitHub App JWT signing or installation token exchange failed."""


class GitHubApiError(GhPoliciesError):
    """GitHub REST API request failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GitHubNotFoundError(GitHubApiError):
    """GitHub resource does not exist or is not visible to the installation."""


class GitHubForbiddenError(GitHubApiError):
    """GitHub rejected the request for lack of permissions."""


class GitHubRateLimitedError(GitHubApiError):
    """GitHub rate limit exhausted for the installation."""


class InvalidScanTransitionError(GhPoliciesError):
    """Scan status change is not allowed by the scan state machine."""
