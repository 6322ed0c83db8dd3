from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from ghpolicies.services.github.models import GitHubRepository


@dataclass(frozen=True)
class PolicyViolationResult:
    policy_type: str
    github_repository_id: int
    repository_name: str
    reason: str = ""


class PolicyEvaluator(ABC):
    """One compliance check. Returns a violation, or None when compliant or undecidable."""

    policy_type: str

    @abstractmethod
    async def evaluate(self, repository: GitHubRepository) -> PolicyViolationResult | None:
        raise NotImplementedError

    def _violation(self, repository: GitHubRepository, reason: str) -> PolicyViolationResult:
        return PolicyViolationResult(
            policy_type=self.policy_type,
            github_repository_id=repository.id,
            repository_name=repository.full_name,
            reason=reason,
        )
