from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

import yaml

from ghpolicies.services.github.models import GitHubRepository
from ghpolicies.services.policies.base import PolicyEvaluator, PolicyViolationResult


logger = logging.getLogger(__name__)

SECURE_WORKFLOW_PERMISSION = "read"


class FilePresenceEvaluator(PolicyEvaluator):
    """Violation when a required file is missing from the repository root."""

    def __init__(self, github: Any, *, policy_type: str, path: str) -> None:
        self._github = github
        self.policy_type = policy_type
        self.path = path

    async def evaluate(self, repository: GitHubRepository) -> PolicyViolationResult | None:
        if await self._github.file_exists(repository.id, self.path):
            return None
        return self._violation(repository, f"{self.path} is missing")


@dataclass(frozen=True)
class FieldLookup:
    present: bool
    reason: str | None = None


def _lookup_key(mapping: dict[Any, Any], key: str) -> tuple[bool, Any]:
    # YAML keys may be ints, bools or None; compare on their string form.
    for raw_key, value in mapping.items():
        if str(raw_key) == key:
            return True, value
    return False, None


def lookup_yaml_field(content: bytes, section: str, field: str) -> FieldLookup:
    """Decode a YAML document and report whether `section.field` holds a value."""
    text = content.decode("utf-8", errors="replace")
    if not text.strip():
        return FieldLookup(False, "file is empty")
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError:
        return FieldLookup(False, "file is not valid YAML")
    if not isinstance(document, dict):
        return FieldLookup(False, "document is not a mapping")
    found, section_value = _lookup_key(document, section)
    if not found:
        return FieldLookup(False, f"{section} section is missing")
    if not isinstance(section_value, dict):
        return FieldLookup(False, f"{section} section is not a mapping")
    found, value = _lookup_key(section_value, field)
    if not found:
        return FieldLookup(False, f"{section}.{field} is missing")
    if value is None or (isinstance(value, str) and not value.strip()):
        return FieldLookup(False, f"{section}.{field} is empty")
    return FieldLookup(True)


class StructuredFileFieldEvaluator(PolicyEvaluator):
    """Violation when a YAML file exists but lacks a non-empty `section.field`.

    A missing file is not reported here; file presence has its own policy.
    """

    def __init__(self, github: Any, *, policy_type: str, path: str, section: str, field: str) -> None:
        self._github = github
        self.policy_type = policy_type
        self.path = path
        self.section = section
        self.field = field

    async def evaluate(self, repository: GitHubRepository) -> PolicyViolationResult | None:
        content = await self._github.get_file_content(repository.id, self.path)
        if content is None:
            return None
        lookup = lookup_yaml_field(content, self.section, self.field)
        if lookup.present:
            return None
        logger.debug(
            "structured_field_missing repository=%s path=%s reason=%s",
            repository.full_name,
            self.path,
            lookup.reason,
        )
        return self._violation(repository, f"{self.path}: {lookup.reason}")


class WorkflowPermissionsEvaluator(PolicyEvaluator):
    """Violation unless default workflow permissions are exactly `read`."""

    def __init__(self, github: Any, *, policy_type: str = "correct_workflow_permissions") -> None:
        self._github = github
        self.policy_type = policy_type

    async def evaluate(self, repository: GitHubRepository) -> PolicyViolationResult | None:
        permission = await self._github.get_workflow_permissions(repository.id)
        # Actions disabled: nothing can run with write scope.
        if permission is None:
            return None
        if permission == SECURE_WORKFLOW_PERMISSION:
            return None
        return self._violation(
            repository,
            f"default workflow permissions are '{permission}', expected '{SECURE_WORKFLOW_PERMISSION}'",
        )


def build_default_evaluators(github: Any) -> list[PolicyEvaluator]:
    return [
        FilePresenceEvaluator(github, policy_type="has_agents_md", path="AGENTS.md"),
        FilePresenceEvaluator(github, policy_type="has_catalog_info_yaml", path="catalog-info.yaml"),
        StructuredFileFieldEvaluator(
            github,
            policy_type="catalog_info_has_owner",
            path="catalog-info.yaml",
            section="spec",
            field="owner",
        ),
        WorkflowPermissionsEvaluator(github),
    ]
