from __future__ import annotations

from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ghpolicies.domain.models import Policy, PolicyViolation, Repository


async def create_violation(
    session: AsyncSession,
    *,
    scan_id: str,
    repository_id: str,
    policy_id: str,
) -> PolicyViolation:
    row = PolicyViolation(
        id=uuid4().hex,
        scan_id=scan_id,
        repository_id=repository_id,
        policy_id=policy_id,
    )
    session.add(row)
    return row


async def list_violations_with_context(
    session: AsyncSession, scan_id: str
) -> list[tuple[PolicyViolation, Repository, Policy]]:
    # Join repository and policy context so the executor needs no extra lookups.
    stmt = (
        select(PolicyViolation, Repository, Policy)
        .join(Repository, Repository.id == PolicyViolation.repository_id)
        .join(Policy, Policy.id == PolicyViolation.policy_id)
        .where(PolicyViolation.scan_id == scan_id)
        .order_by(Repository.name, Policy.policy_key)
    )
    result = await session.execute(stmt)
    return [(violation, repository, policy) for violation, repository, policy in result.all()]


async def count_violations(session: AsyncSession, scan_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(PolicyViolation).where(PolicyViolation.scan_id == scan_id)
    )
    return int(result.scalar_one())
