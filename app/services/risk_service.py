"""日内风控评估

- DAILY_LOSS: 今日已实现亏损占动态权益基线（初始权益 + 今日之前的累计已实现盈亏）的百分比超限，属于硬性熔断
- MAX_CONSECUTIVE_LOSSES: 今日按出场时间排序的最长连亏笔数达到阈值，仅提示
同一类型在当日的抑制窗口内只记录一次。
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import PerTradeRiskError, RiskBlockError
from app.core.observability import capture_exception, run_in_span
from app.core.task_registry import spawn_background
from app.core.timeutil import day_start, utcnow
from app.models.db import session_factory
from app.models.prop_evaluation import PropEvaluation, PropStatus
from app.models.risk_breach_log import BreachType, RiskBreachLog
from app.services.pnl_calculator import normalize_multiplier
from app.services.settings_service import JournalSettingsService
from app.services.trade_query import fetch_closed_trades

logger = logging.getLogger(__name__)

# 阻止新开仓的硬性类型
HARD_BREACH_TYPES = [BreachType.DAILY_LOSS.value]


@dataclass
class RiskBreach:
    type: str
    message: str
    value: float
    limit: float

    def to_dict(self) -> dict:
        return asdict(self)


class RiskService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def evaluate(self, user_id: str, now: Optional[datetime] = None) -> List[RiskBreach]:
        now = now or utcnow()
        journal_settings = await JournalSettingsService(self.session).get(user_id)
        if journal_settings is None:
            return []

        today_start = day_start(now)
        todays = await fetch_closed_trades(self.session, user_id, exit_from=today_start)
        historical = await fetch_closed_trades(self.session, user_id, exit_before=today_start)

        today_realized = sum(t.pnl for t in todays)
        equity_base = float(journal_settings.initial_equity) + sum(t.pnl for t in historical)

        breaches: List[RiskBreach] = []
        max_daily_loss_pct = journal_settings.max_daily_loss_pct
        if max_daily_loss_pct is not None:
            limit = float(max_daily_loss_pct)
            loss_pct = abs(today_realized) / (equity_base or 1) * 100 if today_realized < 0 else 0.0
            if loss_pct > limit:
                breaches.append(RiskBreach(
                    type=BreachType.DAILY_LOSS.value,
                    message=f"Daily loss {loss_pct:.2f}% exceeded limit {limit}%",
                    value=round(loss_pct, 4),
                    limit=limit,
                ))

        current_streak = 0
        max_streak = 0
        for t in todays:
            if t.pnl < 0:
                current_streak += 1
                max_streak = max(max_streak, current_streak)
            else:
                current_streak = 0
        streak_limit = journal_settings.max_consecutive_losses_threshold or settings.RISK_DEFAULT_MAX_CONSECUTIVE_LOSSES
        if max_streak >= streak_limit:
            breaches.append(RiskBreach(
                type=BreachType.MAX_CONSECUTIVE_LOSSES.value,
                message=f"Loss streak reached {max_streak}",
                value=float(max_streak),
                limit=float(streak_limit),
            ))

        if breaches:
            await self._log_breaches(user_id, breaches, now, today_start)
        return breaches

    async def _log_breaches(
        self, user_id: str, breaches: List[RiskBreach], now: datetime, today_start: datetime
    ) -> None:
        suppression_threshold = now - timedelta(minutes=settings.RISK_SUPPRESSION_MINUTES)
        written = 0
        for breach in breaches:
            result = await self.session.execute(
                select(func.max(RiskBreachLog.created_at)).where(
                    RiskBreachLog.user_id == user_id,
                    RiskBreachLog.type == breach.type,
                    RiskBreachLog.created_at >= today_start,
                )
            )
            last = result.scalar()
            if last is not None and last >= suppression_threshold:
                continue
            self.session.add(RiskBreachLog(
                user_id=user_id,
                type=breach.type,
                message=breach.message,
                value=breach.value,
                limit=breach.limit,
                created_at=now,
            ))
            written += 1
            logger.warning(f"Risk breach: user={user_id} type={breach.type} {breach.message}")
        if written:
            await self.session.commit()

    async def has_active_hard_breach(self, user_id: str, now: Optional[datetime] = None) -> bool:
        """今日是否已有 DAILY_LOSS 记录"""
        today_start = day_start(now or utcnow())
        result = await self.session.execute(
            select(func.count(RiskBreachLog.id)).where(
                RiskBreachLog.user_id == user_id,
                RiskBreachLog.type.in_(HARD_BREACH_TYPES),
                RiskBreachLog.created_at >= today_start,
            )
        )
        return (result.scalar() or 0) > 0

    async def list_breaches(self, user_id: str, since: Optional[datetime] = None) -> List[RiskBreachLog]:
        since = since or day_start(utcnow())
        result = await self.session.execute(
            select(RiskBreachLog)
            .where(RiskBreachLog.user_id == user_id, RiskBreachLog.created_at >= since)
            .order_by(RiskBreachLog.created_at.desc())
        )
        return list(result.scalars().all())

    async def assert_can_open(
        self,
        user_id: str,
        entry_price: float,
        quantity: int,
        contract_multiplier=None,
    ) -> Optional[float]:
        """开仓前检查：硬性熔断 + 单笔风险占比，返回本笔风险百分比"""
        if await self.has_active_hard_breach(user_id):
            raise RiskBlockError("Daily loss limit breached; new trades are blocked for today")

        journal_settings = await JournalSettingsService(self.session).get(user_id)
        if journal_settings is None:
            return None

        caps = []
        if journal_settings.risk_per_trade_pct is not None:
            caps.append(float(journal_settings.risk_per_trade_pct))
        result = await self.session.execute(
            select(PropEvaluation.max_single_trade_risk)
            .where(PropEvaluation.user_id == user_id, PropEvaluation.status == PropStatus.ACTIVE.value)
            .order_by(PropEvaluation.created_at.desc(), PropEvaluation.id.desc())
            .limit(1)
        )
        prop_cap = result.scalar()
        if prop_cap is not None:
            caps.append(float(prop_cap))
        if not caps:
            return None

        initial_equity = float(journal_settings.initial_equity or 0)
        if initial_equity <= 0:
            return None
        notional = float(entry_price) * float(quantity) * normalize_multiplier(contract_multiplier)
        risk_pct = notional / initial_equity * 100
        cap = min(caps)
        if risk_pct > cap:
            raise PerTradeRiskError(f"Per-trade risk {risk_pct:.2f}% exceeds limit {cap}%")
        return risk_pct


async def evaluate_risk_for_user(user_id: str) -> List[RiskBreach]:
    async with session_factory()() as session:
        return await RiskService(session).evaluate(user_id)


async def _evaluate_best_effort(user_id: str) -> None:
    try:
        async with run_in_span("risk.evaluate", user=user_id):
            await evaluate_risk_for_user(user_id)
    except Exception as e:
        capture_exception(e, op="risk.evaluate", user=user_id)


def schedule_risk_evaluation(user_id: str):
    """交易变更后的后台风控评估，调用方不等待"""
    return spawn_background(_evaluate_best_effort(user_id), name=f"risk-eval:{user_id}")
