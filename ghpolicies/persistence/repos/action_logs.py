from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from ghpolicies.domain.models import ActionLog


async def create_action_log(
    session: AsyncSession,
    *,
    repository_id: str,
    policy_id: str,
    violation_id: str | None,
    action_type: str,
    status: str,
    details: str,
    timestamp: datetime,
) -> ActionLog:
    row = ActionLog(
        id=uuid4().hex,
        repository_id=repository_id,
        policy_id=policy_id,
        violation_id=violation_id,
        action_type=action_type,
        status=status,
        details=details,
        timestamp=timestamp,
    )
    session.add(row)
    return row
