from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ghpolicies.domain.models import SCAN_STATUS_COMPLETED, SCAN_STATUS_PENDING, Scan


async def create_scan(session: AsyncSession, *, started_at: datetime) -> Scan:
    row = Scan(id=uuid4().hex, status=SCAN_STATUS_PENDING, started_at=started_at)
    session.add(row)
    return row


async def get_scan(session: AsyncSession, scan_id: str) -> Scan | None:
    return await session.get(Scan, scan_id)


async def list_scans(session: AsyncSession, *, limit: int = 20) -> list[Scan]:
    result = await session.execute(
        select(Scan).order_by(Scan.started_at.desc(), Scan.id).limit(max(1, int(limit)))
    )
    return list(result.scalars().all())


async def get_latest_completed_scan(session: AsyncSession) -> Scan | None:
    # Only completed scans are authoritative; in-flight and failed scans are ignored.
    result = await session.execute(
        select(Scan)
        .where(Scan.status == SCAN_STATUS_COMPLETED)
        .order_by(Scan.completed_at.desc(), Scan.started_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
