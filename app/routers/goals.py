from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_user
from app.core.errors import JournalError, to_http
from app.models.db import get_session
from app.schemas.goals import GoalCreateRequest, GoalListResponse, GoalUpdateRequest, GoalView
from app.services.goal_service import GoalService

router = APIRouter(tags=["交易目标"])


@router.get("/goals", response_model=GoalListResponse)
async def list_goals(
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    goals = await GoalService(session).list_goals(current_user)
    items = [GoalView.model_validate(g) for g in goals]
    return GoalListResponse(total=len(items), items=items)


@router.post("/goals", response_model=GoalView, status_code=201)
async def create_goal(
    payload: GoalCreateRequest,
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    svc = GoalService(session)
    try:
        goal = await svc.create_goal(current_user, payload.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    # 新目标立即计算一次当前值
    await svc.recalc_for_user(current_user)
    await session.refresh(goal)
    return GoalView.model_validate(goal)


@router.post("/goals/recalc")
async def recalc_goals(
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    updated = await GoalService(session).recalc_for_user(current_user)
    return {"status": "ok", "updated": updated}


@router.patch("/goals/{goal_id}", response_model=GoalView)
async def update_goal(
    goal_id: int,
    payload: GoalUpdateRequest,
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    try:
        goal = await GoalService(session).update_goal(
            current_user, goal_id, payload.model_dump(exclude_unset=True)
        )
    except JournalError as e:
        raise to_http(e)
    return GoalView.model_validate(goal)


@router.delete("/goals/{goal_id}")
async def delete_goal(
    goal_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    try:
        await GoalService(session).delete_goal(current_user, goal_id)
    except JournalError as e:
        raise to_http(e)
    return {"status": "ok", "deleted": True}
