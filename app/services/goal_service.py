"""目标进度重算

一次加载全部平仓交易，共享聚合指标后按目标类型映射 current_value。
achieved_at 首次达成时写入，后续重算即使回落也不清空。
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import NotFoundError
from app.core.observability import capture_exception, run_in_span
from app.core.task_registry import KeyedDebouncer
from app.core.timeutil import to_naive_utc, utc_day, utcnow
from app.models.db import session_factory
from app.models.goal import Goal, GoalPeriod, GoalType
from app.services.trade_query import ClosedTrade, count_active_trades, fetch_closed_trades

logger = logging.getLogger(__name__)

# 目标值越小越好的类型
LOWER_IS_BETTER = {GoalType.AVG_LOSS_CAP.value}


@dataclass
class TradeAggregates:
    total_pnl: float = 0.0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    profit_factor: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    expectancy: float = 0.0


def compute_aggregates(trades: List[ClosedTrade]) -> TradeAggregates:
    pnls = [t.pnl for t in trades]
    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p < 0]
    agg = TradeAggregates()
    agg.total_pnl = sum(pnls)
    agg.wins = len(wins)
    agg.losses = len(losses)
    agg.win_rate = len(wins) / len(pnls) if pnls else 0.0
    agg.gross_profit = sum(wins)
    agg.gross_loss = abs(sum(losses))
    if agg.gross_loss > 0:
        agg.profit_factor = agg.gross_profit / agg.gross_loss
    else:
        agg.profit_factor = math.inf if agg.gross_profit > 0 else 0.0
    agg.avg_win = agg.gross_profit / len(wins) if wins else 0.0
    agg.avg_loss = agg.gross_loss / len(losses) if losses else 0.0
    if pnls:
        agg.expectancy = agg.win_rate * agg.avg_win - (1 - agg.win_rate) * agg.avg_loss
    return agg


def compute_green_streak(trades: List[ClosedTrade], now: datetime, lookback_days: int) -> int:
    """从今天往回数连续盈利日；今天没有交易即视为中断"""
    pnl_by_day: Dict = {}
    for t in trades:
        day = utc_day(t.exit_at)
        pnl_by_day[day] = pnl_by_day.get(day, 0.0) + t.pnl

    today = utc_day(now)
    streak = 0
    for i in range(lookback_days):
        day = today - timedelta(days=i)
        if day not in pnl_by_day or pnl_by_day[day] <= 0:
            break
        streak += 1
    return streak


class RollingWindow:
    """按窗口天数缓存的滚动盈亏"""

    def __init__(self, trades: List[ClosedTrade], now: datetime):
        self._trades = trades
        self._now = now
        self._cache: Dict[int, float] = {}

    def sum(self, days: int) -> float:
        if days not in self._cache:
            cutoff = self._now - timedelta(days=days)
            self._cache[days] = sum(t.pnl for t in self._trades if t.exit_at >= cutoff)
        return self._cache[days]


def is_achieved(goal_type: str, current_value: float, target_value: float) -> bool:
    if goal_type in LOWER_IS_BETTER:
        return current_value <= target_value
    return current_value >= target_value


class GoalService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_goal(self, user_id: str, payload: dict) -> Goal:
        goal = Goal(
            user_id=user_id,
            type=GoalType(payload["type"]).value,
            period=GoalPeriod(payload.get("period") or GoalPeriod.MONTH).value,
            target_value=payload["target_value"],
            current_value=0,
            start_date=to_naive_utc(payload["start_date"]),
            end_date=to_naive_utc(payload["end_date"]),
            window_days=payload.get("window_days"),
        )
        if goal.end_date < goal.start_date:
            raise ValueError("end_date must not be earlier than start_date")
        if goal.type != GoalType.ROLLING_WINDOW_PNL.value:
            goal.window_days = None
        self.session.add(goal)
        await self.session.commit()
        await self.session.refresh(goal)
        return goal

    async def list_goals(self, user_id: str) -> List[Goal]:
        result = await self.session.execute(
            select(Goal).where(Goal.user_id == user_id).order_by(Goal.end_date.asc(), Goal.id.asc())
        )
        return list(result.scalars().all())

    async def get_goal(self, user_id: str, goal_id: int) -> Goal:
        result = await self.session.execute(
            select(Goal).where(Goal.id == goal_id, Goal.user_id == user_id)
        )
        goal = result.scalars().first()
        if goal is None:
            raise NotFoundError("Goal not found")
        return goal

    async def update_goal(self, user_id: str, goal_id: int, payload: dict) -> Goal:
        """手动修改目标值/当前值/达成时间"""
        goal = await self.get_goal(user_id, goal_id)
        if "target_value" in payload and payload["target_value"] is not None:
            goal.target_value = payload["target_value"]
        if "current_value" in payload and payload["current_value"] is not None:
            goal.current_value = payload["current_value"]
        if "achieved_at" in payload:
            goal.achieved_at = to_naive_utc(payload["achieved_at"])
        await self.session.commit()
        await self.session.refresh(goal)
        return goal

    async def delete_goal(self, user_id: str, goal_id: int) -> None:
        goal = await self.get_goal(user_id, goal_id)
        await self.session.delete(goal)
        await self.session.commit()

    async def recalc_for_user(self, user_id: str, now: Optional[datetime] = None) -> int:
        """重算当前生效目标，返回更新条数"""
        now = now or utcnow()
        result = await self.session.execute(
            select(Goal).where(Goal.user_id == user_id, Goal.start_date <= now, Goal.end_date >= now)
        )
        goals = list(result.scalars().all())
        if not goals:
            return 0

        trade_count = await count_active_trades(self.session, user_id)
        closed = await fetch_closed_trades(self.session, user_id)
        agg = compute_aggregates(closed)
        streak = compute_green_streak(closed, now, settings.GOAL_STREAK_LOOKBACK_DAYS)
        rolling = RollingWindow(closed, now)

        updates = 0
        for goal in goals:
            target = float(goal.target_value)
            goal_type = goal.type
            if goal_type == GoalType.TOTAL_PNL.value:
                current = agg.total_pnl
            elif goal_type == GoalType.TRADE_COUNT.value:
                current = float(trade_count)
            elif goal_type == GoalType.WIN_RATE.value:
                current = agg.win_rate * 100
            elif goal_type == GoalType.PROFIT_FACTOR.value:
                # 无亏损时盈亏比为无穷，直接视为达成
                current = target if math.isinf(agg.profit_factor) else agg.profit_factor
            elif goal_type == GoalType.EXPECTANCY.value:
                current = agg.expectancy
            elif goal_type == GoalType.AVG_LOSS_CAP.value:
                current = agg.avg_loss
            elif goal_type == GoalType.DAILY_GREEN_STREAK.value:
                current = float(streak)
            elif goal_type == GoalType.ROLLING_30D_PNL.value:
                current = rolling.sum(30)
            elif goal_type == GoalType.ROLLING_WINDOW_PNL.value:
                current = rolling.sum(goal.window_days or settings.GOAL_ROLLING_DEFAULT_DAYS)
            else:
                logger.warning(f"Unknown goal type {goal_type} on goal {goal.id}")
                continue

            goal.current_value = round(current, 4)
            if goal.achieved_at is None and is_achieved(goal_type, current, target):
                goal.achieved_at = now
                logger.info(f"Goal achieved: user={user_id} goal={goal.id} type={goal_type} value={current:.4f}")
            updates += 1

        await self.session.commit()
        return updates


async def recalc_goals_for_user(user_id: str) -> int:
    async with session_factory()() as session:
        return await GoalService(session).recalc_for_user(user_id)


async def _recalc_best_effort(user_id: str) -> None:
    try:
        async with run_in_span("goals.recalc", user=user_id):
            await recalc_goals_for_user(user_id)
    except Exception as e:
        capture_exception(e, op="goals.recalc", user=user_id)


goal_debouncer = KeyedDebouncer("goal-recalc")


def schedule_goal_recalc(user_id: str) -> None:
    """按用户防抖：短时间内多次交易变更只触发一次重算"""
    delay = settings.GOAL_RECALC_DEBOUNCE_MS / 1000
    goal_debouncer.schedule(user_id, delay, lambda: _recalc_best_effort(user_id))
