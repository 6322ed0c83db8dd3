from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ghpolicies.apps.api.deps import get_db, require_team_member
from ghpolicies.apps.api.response import success_response
from ghpolicies.persistence.repos import scans as scans_repo
from ghpolicies.persistence.repos import violations as violations_repo
from ghpolicies.services.jobs import enqueue_scan

router = APIRouter(prefix="/scans", tags=["scans"])


class ScanOut(BaseModel):
    id: str
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    repositories_scanned: int | None = None
    violations: int = 0
    error: str | None = None


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def trigger_scan(request: Request, _token: str = Depends(require_team_member)) -> dict:
    # Manual trigger; the scan itself runs on the worker.
    job_id = await enqueue_scan()
    return success_response(request=request, data={"job_id": job_id})


@router.get("")
async def list_scans(
    request: Request,
    limit: int = Query(default=20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    _token: str = Depends(require_team_member),
) -> dict:
    rows = await scans_repo.list_scans(db, limit=limit)
    data = []
    for row in rows:
        count = await violations_repo.count_violations(db, row.id)
        data.append(
            ScanOut(
                id=row.id,
                status=row.status,
                started_at=row.started_at,
                completed_at=row.completed_at,
                repositories_scanned=row.repositories_scanned,
                violations=count,
                error=row.error,
            ).model_dump(mode="json")
        )
    return success_response(request=request, data=data)
