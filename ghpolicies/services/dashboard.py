from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from ghpolicies.domain.models import Repository
from ghpolicies.persistence.repos import scans as scans_repo
from ghpolicies.persistence.repos import violations as violations_repo


@dataclass(frozen=True)
class NonCompliantRepository:
    name: str
    url: str
    violated_policies: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ComplianceSummary:
    scan_id: str | None = None
    scan_completed_at: datetime | None = None
    total_repositories: int = 0
    compliant_repositories: int = 0
    # None when there is nothing to measure; an empty organization is not "100% compliant".
    compliance_percentage: float | None = None
    non_compliant_repositories: list[NonCompliantRepository] = field(default_factory=list)


async def get_compliance_summary(
    session: AsyncSession,
    *,
    name_filter: str | None = None,
    web_url: str = "https://github.com",
) -> ComplianceSummary:
    """Summarize compliance from the latest Completed scan only."""
    scan = await scans_repo.get_latest_completed_scan(session)
    if scan is None:
        return ComplianceSummary()
    # Repositories added by later Failed or InProgress scans were never evaluated against this one.
    total = scan.repositories_scanned or 0
    rows = await violations_repo.list_violations_with_context(session, scan.id)

    violated: dict[str, tuple[Repository, list[str]]] = {}
    for _violation, repository, policy in rows:
        entry = violated.setdefault(repository.id, (repository, []))
        entry[1].append(policy.policy_key)

    compliant = max(0, total - len(violated))
    percentage = (compliant / total * 100.0) if total > 0 else None
    needle = name_filter.strip().lower() if name_filter and name_filter.strip() else None
    non_compliant = [
        NonCompliantRepository(
            name=repository.name,
            url=f"{web_url.rstrip('/')}/{repository.name}",
            violated_policies=sorted(policies),
        )
        for repository, policies in violated.values()
        if needle is None or needle in repository.name.lower()
    ]
    non_compliant.sort(key=lambda item: item.name.lower())
    return ComplianceSummary(
        scan_id=scan.id,
        scan_completed_at=scan.completed_at,
        total_repositories=total,
        compliant_repositories=compliant,
        compliance_percentage=percentage,
        non_compliant_repositories=non_compliant,
    )
