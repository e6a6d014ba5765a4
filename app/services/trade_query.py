"""平仓交易的统一读取：联表取合约乘数并按统一公式计算盈亏"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.timeutil import to_naive_utc
from app.models.instrument import Instrument
from app.models.trade import Trade, TradeStatus, TradeTag
from app.services.pnl_calculator import trade_pnl


@dataclass
class ClosedTrade:
    id: int
    entry_at: datetime
    exit_at: datetime
    pnl: float
    instrument_id: Optional[int] = None
    tag_ids: List[int] = field(default_factory=list)


async def fetch_closed_trades(
    session: AsyncSession,
    user_id: str,
    exit_from: Optional[datetime] = None,
    exit_before: Optional[datetime] = None,
    with_tags: bool = False,
) -> List[ClosedTrade]:
    """读取未删除、已平仓（有出场价与出场时间）的交易，按出场时间升序"""
    stmt = (
        select(Trade, Instrument.contract_multiplier)
        .outerjoin(Instrument, Instrument.id == Trade.instrument_id)
        .where(
            Trade.user_id == user_id,
            Trade.deleted_at.is_(None),
            Trade.status == TradeStatus.CLOSED.value,
            Trade.exit_price.is_not(None),
            Trade.exit_at.is_not(None),
        )
    )
    if exit_from is not None:
        stmt = stmt.where(Trade.exit_at >= exit_from)
    if exit_before is not None:
        stmt = stmt.where(Trade.exit_at < exit_before)
    stmt = stmt.order_by(Trade.exit_at.asc(), Trade.id.asc())

    result = await session.execute(stmt)
    closed: List[ClosedTrade] = []
    for trade, multiplier in result.all():
        pnl = trade_pnl(trade, multiplier)
        if pnl is None:
            continue
        closed.append(
            ClosedTrade(
                id=trade.id,
                entry_at=trade.entry_at,
                exit_at=trade.exit_at,
                pnl=pnl,
                instrument_id=trade.instrument_id,
            )
        )
    if with_tags and closed:
        tag_map = await fetch_tag_ids(session, [c.id for c in closed])
        for c in closed:
            c.tag_ids = tag_map.get(c.id, [])
    return closed


async def count_active_trades(session: AsyncSession, user_id: str) -> int:
    result = await session.execute(
        select(func.count(Trade.id)).where(Trade.user_id == user_id, Trade.deleted_at.is_(None))
    )
    return int(result.scalar() or 0)


def trade_filters(
    user_id: str,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    instrument_id: Optional[int] = None,
    status: Optional[str] = None,
    direction: Optional[str] = None,
    tag_ids: Optional[List[int]] = None,
    include_deleted: bool = False,
) -> list:
    """交易列表与导出共用的筛选条件（日期按 entry_at）"""
    conditions = [Trade.user_id == user_id]
    if not include_deleted:
        conditions.append(Trade.deleted_at.is_(None))
    if date_from is not None:
        conditions.append(Trade.entry_at >= to_naive_utc(date_from))
    if date_to is not None:
        conditions.append(Trade.entry_at <= to_naive_utc(date_to))
    if instrument_id is not None:
        conditions.append(Trade.instrument_id == instrument_id)
    if status:
        conditions.append(Trade.status == status)
    if direction:
        conditions.append(Trade.direction == direction)
    if tag_ids:
        tagged = select(TradeTag.trade_id).where(TradeTag.tag_id.in_(tag_ids))
        conditions.append(Trade.id.in_(tagged))
    return conditions


async def fetch_tag_ids(session: AsyncSession, trade_ids: List[int]) -> dict:
    """trade_id -> [tag_id, ...]"""
    mapping = {trade_id: [] for trade_id in trade_ids}
    if not trade_ids:
        return mapping
    rows = await session.execute(
        select(TradeTag.trade_id, TradeTag.tag_id)
        .where(TradeTag.trade_id.in_(trade_ids))
        .order_by(TradeTag.tag_id.asc())
    )
    for trade_id, tag_id in rows.all():
        mapping.setdefault(trade_id, []).append(tag_id)
    return mapping
