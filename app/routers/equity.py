from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_user
from app.models.db import get_session
from app.schemas.equity import (
    DailyEquityResponse,
    DailyEquityView,
    EquityRebuildResponse,
    EquityValidationResponse,
)
from app.services.daily_equity_service import DailyEquityService

router = APIRouter(tags=["日权益"])


@router.get("/equity/daily", response_model=DailyEquityResponse)
async def list_daily_equity(
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    rows = await DailyEquityService(session).list_range(current_user, date_from, date_to)
    return DailyEquityResponse(
        user_id=current_user,
        items=[DailyEquityView.model_validate(r) for r in rows],
    )


@router.post("/equity/rebuild", response_model=EquityRebuildResponse)
async def rebuild_daily_equity(
    from_date: Optional[date] = Query(None, description="为空时全量重建"),
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    result = await DailyEquityService(session).rebuild(current_user, from_date)
    return EquityRebuildResponse(**result)


@router.get("/equity/validate", response_model=EquityValidationResponse)
async def validate_daily_equity(
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    report = await DailyEquityService(session).validate(current_user)
    return EquityValidationResponse(**report)
