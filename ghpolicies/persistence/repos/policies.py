from __future__ import annotations

from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ghpolicies.domain.models import Policy


async def list_policies(session: AsyncSession) -> list[Policy]:
    result = await session.execute(select(Policy).order_by(Policy.policy_key))
    return list(result.scalars().all())


async def get_policy_by_key(session: AsyncSession, policy_key: str) -> Policy | None:
    # Policy keys match case-insensitively, like evaluator type tags.
    result = await session.execute(select(Policy).where(func.lower(Policy.policy_key) == policy_key.lower()))
    return result.scalar_one_or_none()


async def create_policy(
    session: AsyncSession,
    *,
    policy_key: str,
    description: str,
    actions: list[str],
) -> Policy:
    row = Policy(id=uuid4().hex, policy_key=policy_key, description=description, actions_json=list(actions))
    session.add(row)
    return row
