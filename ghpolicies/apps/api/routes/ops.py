from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ghpolicies.apps.api.deps import get_db, require_team_member
from ghpolicies.apps.api.response import SuccessEnvelope, success_response
from ghpolicies.domain.models import Repository, Scan
from ghpolicies.services.telemetry import counters_snapshot, external_call_stats

router = APIRouter(prefix="/ops", tags=["ops"])


async def _count_by(db: AsyncSession, column) -> dict[str, int]:
    rows = await db.execute(select(column, func.count()).group_by(column))
    return {str(value): int(count) for value, count in rows.all()}


@router.get("/metrics", response_model=SuccessEnvelope[dict[str, Any]] | dict[str, Any])
async def ops_metrics(
    request: Request,
    db: AsyncSession = Depends(get_db),
    _token: str = Depends(require_team_member),
) -> dict:
    # JSON metrics for operators: process counters plus inventory and scan totals.
    payload = {
        "counters": counters_snapshot(),
        "repositories_by_status": await _count_by(db, Repository.compliance_status),
        "scans_by_status": await _count_by(db, Scan.status),
        "external_calls": external_call_stats(3600),
    }
    return success_response(request=request, data=payload)
