from __future__ import annotations

from ghpolicies.services.policies.base import PolicyEvaluator, PolicyViolationResult
from ghpolicies.services.policies.engine import PolicyEvaluationEngine
from ghpolicies.services.policies.evaluators import (
    FilePresenceEvaluator,
    StructuredFileFieldEvaluator,
    WorkflowPermissionsEvaluator,
    build_default_evaluators,
)

__all__ = [
    "FilePresenceEvaluator",
    "PolicyEvaluationEngine",
    "PolicyEvaluator",
    "PolicyViolationResult",
    "StructuredFileFieldEvaluator",
    "WorkflowPermissionsEvaluator",
    "build_default_evaluators",
]
