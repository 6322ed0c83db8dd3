from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query, Request
from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession

from ghpolicies.apps.api.deps import get_db, require_team_member
from ghpolicies.apps.api.response import success_response
from ghpolicies.services.dashboard import get_compliance_summary

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("")
async def compliance_dashboard(
    request: Request,
    name: str | None = Query(default=None, max_length=200),
    db: AsyncSession = Depends(get_db),
    _token: str = Depends(require_team_member),
) -> dict:
    summary = await get_compliance_summary(db, name_filter=name)
    return success_response(request=request, data=jsonable_encoder(asdict(summary)))
