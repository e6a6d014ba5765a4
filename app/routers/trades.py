from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_user
from app.core.errors import JournalError, to_http
from app.models.db import get_session
from app.schemas.trades import (
    InstrumentView,
    TagCreateRequest,
    TagView,
    TradeCreateRequest,
    TradeListResponse,
    TradeUpdateRequest,
    TradeView,
    trade_view,
)
from app.services.instrument_service import InstrumentService
from app.services.trade_service import TradeService

router = APIRouter(tags=["交易日志"])


@router.get("/trades", response_model=TradeListResponse)
async def list_trades(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    date_from: Optional[datetime] = Query(None, description="按开仓时间过滤（起）"),
    date_to: Optional[datetime] = Query(None, description="按开仓时间过滤（止）"),
    instrument_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None),
    direction: Optional[str] = Query(None),
    tag_id: Optional[list[int]] = Query(None, description="可重复传入多个标签"),
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    svc = TradeService(session)
    results = await svc.list_trades(
        current_user,
        limit=limit,
        offset=offset,
        date_from=date_from,
        date_to=date_to,
        instrument_id=instrument_id,
        status=status,
        direction=direction,
        tag_ids=tag_id,
    )
    items = [trade_view(r) for r in results]
    return TradeListResponse(total=len(items), items=items)


@router.post("/trades", response_model=TradeView, status_code=201)
async def create_trade(
    payload: TradeCreateRequest,
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    svc = TradeService(session)
    try:
        result = await svc.create_trade(current_user, payload.model_dump())
    except JournalError as e:
        raise to_http(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return trade_view(result)


@router.get("/trades/{trade_id}", response_model=TradeView)
async def get_trade(
    trade_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    try:
        result = await TradeService(session).get_trade(current_user, trade_id)
    except JournalError as e:
        raise to_http(e)
    return trade_view(result)


@router.patch("/trades/{trade_id}", response_model=TradeView)
async def update_trade(
    trade_id: int,
    payload: TradeUpdateRequest,
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    svc = TradeService(session)
    try:
        result = await svc.update_trade(current_user, trade_id, payload.model_dump(exclude_unset=True))
    except JournalError as e:
        raise to_http(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return trade_view(result)


@router.delete("/trades/{trade_id}")
async def delete_trade(
    trade_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    try:
        await TradeService(session).delete_trade(current_user, trade_id)
    except JournalError as e:
        raise to_http(e)
    return {"status": "ok", "deleted": True}


@router.post("/trades/{trade_id}/restore", response_model=TradeView)
async def restore_trade(
    trade_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    try:
        result = await TradeService(session).restore_trade(current_user, trade_id)
    except JournalError as e:
        raise to_http(e)
    return trade_view(result)


@router.get("/tags", response_model=list[TagView])
async def list_tags(
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    tags = await TradeService(session).list_tags(current_user)
    return [TagView.model_validate(t) for t in tags]


@router.post("/tags", response_model=TagView, status_code=201)
async def create_tag(
    payload: TagCreateRequest,
    session: AsyncSession = Depends(get_session),
    current_user: str = Depends(get_current_user),
):
    try:
        tag = await TradeService(session).create_tag(current_user, payload.label, payload.color)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return TagView.model_validate(tag)


@router.get("/instruments", response_model=list[InstrumentView])
async def list_instruments(session: AsyncSession = Depends(get_session)):
    instruments = await InstrumentService(session).list_active()
    return [InstrumentView.model_validate(i) for i in instruments]
