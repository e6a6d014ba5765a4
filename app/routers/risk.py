from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_user
from app.models.db import get_session
from app.schemas.risk import RiskBreachLogView, RiskBreachView, RiskEvaluateResponse, RiskStatusResponse
from app.services.risk_service import RiskService
from app.services.settings_service import JournalSettingsService

router = APIRouter(tags=["风控"])


@router.get("/risk/status", response_model=RiskStatusResponse)
async def risk_status(
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    journal_settings = await JournalSettingsService(session).get_or_create(current_user)
    svc = RiskService(session)
    breaches = await svc.list_breaches(current_user)
    return RiskStatusResponse(
        user_id=current_user,
        has_active_hard_breach=await svc.has_active_hard_breach(current_user),
        max_daily_loss_pct=journal_settings.max_daily_loss_pct,
        max_consecutive_losses_threshold=journal_settings.max_consecutive_losses_threshold,
        risk_per_trade_pct=journal_settings.risk_per_trade_pct,
        breaches_today=[RiskBreachLogView.model_validate(b) for b in breaches],
    )


@router.post("/risk/evaluate", response_model=RiskEvaluateResponse)
async def evaluate_risk(
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    breaches = await RiskService(session).evaluate(current_user)
    return RiskEvaluateResponse(breaches=[RiskBreachView(**b.to_dict()) for b in breaches])


@router.get("/risk/breaches", response_model=list[RiskBreachLogView])
async def list_breaches(
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    breaches = await RiskService(session).list_breaches(current_user)
    return [RiskBreachLogView.model_validate(b) for b in breaches]
