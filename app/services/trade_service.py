"""交易生命周期：创建 / 更新 / 软删除 / 恢复

每次写入提交后触发：目标重算（防抖）、风控评估（后台）、以及受影响出场日起的日权益增量重建（后台）。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import JournalError, NotFoundError
from app.core.timeutil import to_naive_utc, utcnow
from app.models.instrument import Instrument
from app.models.trade import Tag, Trade, TradeDirection, TradeStatus, TradeTag
from app.services.daily_equity_service import schedule_equity_rebuild
from app.services.goal_service import schedule_goal_recalc
from app.services.pnl_calculator import trade_pnl
from app.services.risk_service import RiskService, schedule_risk_evaluation
from app.services.trade_query import fetch_tag_ids, trade_filters

logger = logging.getLogger(__name__)


@dataclass
class TradeResult:
    trade: Trade
    tag_ids: List[int]
    realized_pnl: Optional[float]
    risk_pct: Optional[float] = None


def _closed_exit(trade: Trade) -> Optional[datetime]:
    if trade.status == TradeStatus.CLOSED.value and trade.exit_at is not None:
        return trade.exit_at
    return None


def run_mutation_hooks(user_id: str, affected_exits: Iterable[Optional[datetime]]) -> None:
    """写入成功后的下游一致性维护；均不阻塞调用方"""
    schedule_goal_recalc(user_id)
    schedule_risk_evaluation(user_id)
    exits = [d for d in affected_exits if d is not None]
    if exits:
        schedule_equity_rebuild(user_id, min(exits))


class TradeService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _get_owned(self, user_id: str, trade_id: int) -> Trade:
        result = await self.session.execute(
            select(Trade).where(Trade.id == trade_id, Trade.user_id == user_id)
        )
        trade = result.scalars().first()
        if trade is None:
            raise NotFoundError("Trade not found")
        return trade

    async def _multiplier(self, instrument_id: int):
        result = await self.session.execute(
            select(Instrument.contract_multiplier).where(Instrument.id == instrument_id)
        )
        return result.scalar()

    async def _validate_tags(self, user_id: str, tag_ids: List[int]) -> List[int]:
        if not tag_ids:
            return []
        unique_ids = sorted(set(tag_ids))
        result = await self.session.execute(
            select(Tag.id).where(Tag.user_id == user_id, Tag.id.in_(unique_ids))
        )
        found = set(result.scalars().all())
        missing = [t for t in unique_ids if t not in found]
        if missing:
            raise JournalError(f"Unknown tag ids: {missing}", code="TAG_NOT_FOUND")
        return unique_ids

    async def _labels_to_ids(self, user_id: str, labels: List[str]) -> List[int]:
        """按标签名关联，不存在的标签按用户即时创建（随交易一起提交）"""
        ids = []
        for label in {l.strip() for l in labels if l and l.strip()}:
            result = await self.session.execute(select(Tag).where(Tag.user_id == user_id, Tag.label == label))
            tag = result.scalars().first()
            if tag is None:
                tag = Tag(user_id=user_id, label=label)
                self.session.add(tag)
                await self.session.flush()
            ids.append(tag.id)
        return ids

    async def _resolve_tags(self, user_id: str, payload: dict) -> Optional[List[int]]:
        """payload 中既无 tag_ids 也无 tag_labels 时返回 None（不改动关联）"""
        tag_ids = payload.get("tag_ids")
        tag_labels = payload.get("tag_labels")
        if tag_ids is None and tag_labels is None:
            return None
        resolved = await self._validate_tags(user_id, tag_ids or [])
        if tag_labels:
            resolved = sorted(set(resolved) | set(await self._labels_to_ids(user_id, tag_labels)))
        return resolved

    async def _replace_tags(self, trade_id: int, tag_ids: List[int]) -> None:
        await self.session.execute(delete(TradeTag).where(TradeTag.trade_id == trade_id))
        for tag_id in tag_ids:
            self.session.add(TradeTag(trade_id=trade_id, tag_id=tag_id))

    async def _result(self, trade: Trade, risk_pct: Optional[float] = None) -> TradeResult:
        tag_map = await fetch_tag_ids(self.session, [trade.id])
        pnl = trade_pnl(trade, await self._multiplier(trade.instrument_id))
        return TradeResult(trade=trade, tag_ids=tag_map.get(trade.id, []), realized_pnl=pnl, risk_pct=risk_pct)

    async def create_trade(self, user_id: str, payload: dict) -> TradeResult:
        """创建交易；风控拦截发生在任何写入之前"""
        exit_price = payload.get("exit_price")
        exit_at = to_naive_utc(payload.get("exit_at"))
        if (exit_price is None) != (exit_at is None):
            raise ValueError("exit_price and exit_at must be provided together")

        instrument = await self.session.get(Instrument, payload["instrument_id"])
        if instrument is None:
            raise JournalError("Instrument not found", code="INSTRUMENT_NOT_FOUND")

        risk_pct = await RiskService(self.session).assert_can_open(
            user_id,
            entry_price=payload["entry_price"],
            quantity=payload["quantity"],
            contract_multiplier=instrument.contract_multiplier,
        )
        tag_ids = await self._resolve_tags(user_id, payload) or []

        trade = Trade(
            user_id=user_id,
            instrument_id=instrument.id,
            direction=TradeDirection(payload["direction"]).value,
            entry_price=payload["entry_price"],
            exit_price=exit_price,
            quantity=payload["quantity"],
            fees=payload.get("fees") or 0,
            entry_at=to_naive_utc(payload["entry_at"]),
            exit_at=exit_at,
            notes=payload.get("notes"),
            status=TradeStatus.CLOSED.value if exit_price is not None else TradeStatus.OPEN.value,
        )
        trade.realized_pnl = trade_pnl(trade, instrument.contract_multiplier)
        self.session.add(trade)
        await self.session.flush()
        await self._replace_tags(trade.id, tag_ids)
        await self.session.commit()
        await self.session.refresh(trade)
        logger.info(f"Trade created: user={user_id} id={trade.id} status={trade.status} pnl={trade.realized_pnl}")

        run_mutation_hooks(user_id, [_closed_exit(trade)])
        return await self._result(trade, risk_pct)

    async def update_trade(self, user_id: str, trade_id: int, payload: dict) -> TradeResult:
        """payload 只包含显式提交的字段"""
        trade = await self._get_owned(user_id, trade_id)
        previous_exit = _closed_exit(trade)

        if "exit_price" in payload:
            trade.exit_price = payload["exit_price"]
        if "exit_at" in payload:
            trade.exit_at = to_naive_utc(payload["exit_at"])
        if "notes" in payload:
            trade.notes = payload["notes"]
        if (trade.exit_price is None) != (trade.exit_at is None):
            await self.session.rollback()
            raise ValueError("exit_price and exit_at must be provided together")

        if payload.get("status"):
            trade.status = TradeStatus(payload["status"]).value
        elif trade.exit_price is not None and trade.status == TradeStatus.OPEN.value:
            trade.status = TradeStatus.CLOSED.value
        if trade.status == TradeStatus.CLOSED.value and trade.exit_price is None:
            await self.session.rollback()
            raise ValueError("A CLOSED trade requires exit_price and exit_at")

        tag_ids = await self._resolve_tags(user_id, payload)
        if tag_ids is not None:
            await self._replace_tags(trade.id, tag_ids)

        trade.realized_pnl = trade_pnl(trade, await self._multiplier(trade.instrument_id))
        await self.session.commit()
        await self.session.refresh(trade)
        logger.info(f"Trade updated: user={user_id} id={trade.id} status={trade.status}")

        run_mutation_hooks(user_id, [previous_exit, _closed_exit(trade)])
        return await self._result(trade)

    async def delete_trade(self, user_id: str, trade_id: int) -> None:
        """软删除：状态置为 CANCELLED 并记录 deleted_at"""
        trade = await self._get_owned(user_id, trade_id)
        if trade.deleted_at is not None:
            return
        previous_exit = _closed_exit(trade)
        trade.status = TradeStatus.CANCELLED.value
        trade.deleted_at = utcnow()
        await self.session.commit()
        logger.info(f"Trade soft-deleted: user={user_id} id={trade.id}")

        run_mutation_hooks(user_id, [previous_exit])

    async def restore_trade(self, user_id: str, trade_id: int) -> TradeResult:
        """恢复软删除的交易：有出场数据恢复为 CLOSED，否则 OPEN"""
        trade = await self._get_owned(user_id, trade_id)
        if trade.deleted_at is None:
            raise JournalError("Trade is not deleted", code="NOT_DELETED")
        trade.deleted_at = None
        if trade.status == TradeStatus.CANCELLED.value:
            has_exit = trade.exit_price is not None and trade.exit_at is not None
            trade.status = TradeStatus.CLOSED.value if has_exit else TradeStatus.OPEN.value
        await self.session.commit()
        await self.session.refresh(trade)
        logger.info(f"Trade restored: user={user_id} id={trade.id} status={trade.status}")

        run_mutation_hooks(user_id, [_closed_exit(trade)])
        return await self._result(trade)

    async def get_trade(self, user_id: str, trade_id: int) -> TradeResult:
        trade = await self._get_owned(user_id, trade_id)
        return await self._result(trade)

    async def list_trades(
        self,
        user_id: str,
        limit: int = 100,
        offset: int = 0,
        **filters,
    ) -> List[TradeResult]:
        stmt = (
            select(Trade, Instrument.contract_multiplier)
            .outerjoin(Instrument, Instrument.id == Trade.instrument_id)
            .where(*trade_filters(user_id, **filters))
            .order_by(Trade.entry_at.desc(), Trade.id.desc())
            .offset(offset)
            .limit(limit)
        )
        rows = (await self.session.execute(stmt)).all()
        tag_map = await fetch_tag_ids(self.session, [t.id for t, _ in rows])
        return [
            TradeResult(trade=t, tag_ids=tag_map.get(t.id, []), realized_pnl=trade_pnl(t, multiplier))
            for t, multiplier in rows
        ]

    async def create_tag(self, user_id: str, label: str, color: Optional[str] = None) -> Tag:
        label = label.strip()
        if not label:
            raise ValueError("label is required")
        result = await self.session.execute(select(Tag).where(Tag.user_id == user_id, Tag.label == label))
        existing = result.scalars().first()
        if existing:
            return existing
        tag = Tag(user_id=user_id, label=label, color=color)
        self.session.add(tag)
        await self.session.commit()
        await self.session.refresh(tag)
        return tag

    async def list_tags(self, user_id: str) -> List[Tag]:
        result = await self.session.execute(select(Tag).where(Tag.user_id == user_id).order_by(Tag.label.asc()))
        return list(result.scalars().all())
