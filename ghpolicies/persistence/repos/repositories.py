from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ghpolicies.domain.models import (
    ActionLog,
    PolicyViolation,
    REPOSITORY_STATUS_PENDING,
    Repository,
)


async def list_repositories(session: AsyncSession) -> list[Repository]:
    result = await session.execute(select(Repository).order_by(Repository.name, Repository.id))
    return list(result.scalars().all())


async def get_by_github_id(session: AsyncSession, github_repository_id: int) -> Repository | None:
    result = await session.execute(
        select(Repository).where(Repository.github_repository_id == github_repository_id)
    )
    return result.scalar_one_or_none()


async def create_repository(
    session: AsyncSession,
    *,
    github_repository_id: int,
    name: str,
) -> Repository:
    # New repositories stay Pending until their first evaluation lands.
    row = Repository(
        id=uuid4().hex,
        github_repository_id=github_repository_id,
        name=name,
        compliance_status=REPOSITORY_STATUS_PENDING,
    )
    session.add(row)
    return row


async def set_compliance_status(
    session: AsyncSession,
    repository: Repository,
    *,
    status: str,
    scanned_at: datetime,
) -> None:
    repository.compliance_status = status
    repository.last_scanned_at = scanned_at


async def purge_repositories(session: AsyncSession, repository_ids: list[str]) -> int:
    # Delete dependents explicitly so purges do not rely on database-level cascades.
    if not repository_ids:
        return 0
    await session.execute(delete(ActionLog).where(ActionLog.repository_id.in_(repository_ids)))
    await session.execute(
        delete(PolicyViolation).where(PolicyViolation.repository_id.in_(repository_ids))
    )
    result = await session.execute(delete(Repository).where(Repository.id.in_(repository_ids)))
    return int(result.rowcount or 0)
