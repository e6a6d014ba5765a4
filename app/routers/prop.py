from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_user
from app.models.db import get_session
from app.schemas.prop import (
    PropEvaluationUpsertRequest,
    PropEvaluationView,
    PropProgressResponse,
    PropProgressView,
    PropRolloverResponse,
)
from app.services.prop_evaluation_service import PropEvaluationService

router = APIRouter(tags=["自营考核"])


@router.get("/prop/evaluations", response_model=list[PropEvaluationView])
async def list_evaluations(
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    evaluations = await PropEvaluationService(session).list_evaluations(current_user)
    return [PropEvaluationView.model_validate(e) for e in evaluations]


@router.post("/prop/evaluations", response_model=PropEvaluationView)
async def upsert_evaluation(
    payload: PropEvaluationUpsertRequest,
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    try:
        evaluation = await PropEvaluationService(session).upsert_evaluation(current_user, payload.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return PropEvaluationView.model_validate(evaluation)


@router.get("/prop/progress", response_model=PropProgressResponse)
async def get_progress(
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    progress = await PropEvaluationService(session).compute_progress(current_user)
    if progress is None:
        return PropProgressResponse(progress=None)
    return PropProgressResponse(progress=PropProgressView(**asdict(progress)))


@router.post("/prop/rollover", response_model=PropRolloverResponse)
async def rollover(
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    """评估当前 ACTIVE 考核，达标则进入下一阶段，触发失败条件则标记 FAILED"""
    result = await PropEvaluationService(session).evaluate_and_maybe_rollover(current_user)
    current = result.get("current")
    successor = result.get("next")
    progress = result.get("progress")
    return PropRolloverResponse(
        action=result["action"],
        current=PropEvaluationView.model_validate(current) if current is not None else None,
        next=PropEvaluationView.model_validate(successor) if successor is not None else None,
        progress=PropProgressView(**asdict(progress)) if progress is not None else None,
    )
