from __future__ import annotations

import logging
from typing import Iterable, Sequence

from ghpolicies.services.configuration import PolicyConfig
from ghpolicies.services.github.models import GitHubRepository
from ghpolicies.services.policies.base import PolicyEvaluator, PolicyViolationResult


logger = logging.getLogger(__name__)


class PolicyEvaluationEngine:
    """Run the configured subset of evaluators against one repository."""

    def __init__(self, evaluators: Iterable[PolicyEvaluator]) -> None:
        self._evaluators: dict[str, PolicyEvaluator] = {}
        for evaluator in evaluators:
            self._evaluators[evaluator.policy_type.lower()] = evaluator

    @property
    def policy_types(self) -> list[str]:
        return sorted(self._evaluators)

    def evaluator_for(self, policy_type: str) -> PolicyEvaluator | None:
        return self._evaluators.get(policy_type.lower())

    def unknown_policy_types(self, policy_configs: Sequence[PolicyConfig]) -> list[str]:
        return [policy.type for policy in policy_configs if self.evaluator_for(policy.type) is None]

    async def evaluate_repository(
        self,
        repository: GitHubRepository,
        policy_configs: Sequence[PolicyConfig],
    ) -> list[PolicyViolationResult]:
        violations: list[PolicyViolationResult] = []
        seen: set[str] = set()
        for policy in policy_configs:
            key = policy.type.lower()
            evaluator = self._evaluators.get(key)
            # Unknown types are reported by the caller; duplicates evaluate once.
            if evaluator is None or key in seen:
                continue
            seen.add(key)
            try:
                result = await evaluator.evaluate(repository)
            except Exception as exc:  # noqa: BLE001
                # An evaluator failure is "no determination", never a violation.
                logger.error(
                    "policy_evaluation_failed repository=%s policy=%s error=%s",
                    repository.full_name,
                    policy.type,
                    exc,
                )
                continue
            if result is not None:
                violations.append(result)
        return violations
