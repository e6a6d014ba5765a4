"""自营考核（Prop Evaluation）进度与阶段流转

状态机:
    ACTIVE -> PASSED | FAILED
    PHASE1 通过 -> 新建 ACTIVE 的 PHASE2（继承全部风控参数）
    PHASE2 通过 -> 新建 ACTIVE 的 FUNDED（profit_target 与 min_trading_days 归零）
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.timeutil import to_naive_utc, utc_day, utcnow
from app.models.prop_evaluation import PropEvaluation, PropPhase, PropStatus
from app.services.trade_query import ClosedTrade, fetch_closed_trades

logger = logging.getLogger(__name__)

FAIL_ALERT_CODES = {"PF_DAILY_LOSS", "PF_OVERALL_LOSS", "PF_TRAILING_BREACH"}

NEAR_LIMIT_RATIO = 0.8
NEAR_TARGET_DAYS = 3
CONSISTENCY_FACTOR = 0.25
TRAILING_NEAR_RATIO = 0.2


class RolloverAction:
    NONE = "none"
    FAILED = "failed"
    ROLLED_TO_PHASE2 = "rolledToPhase2"
    ROLLED_TO_FUNDED = "rolledToFunded"


@dataclass
class EvaluationProgress:
    id: int
    phase: str
    status: str
    cumulative_profit: float
    profit_target: float
    progress_pct: float
    max_daily_loss: float
    max_overall_loss: float
    remaining_target: float
    remaining_daily_loss: float
    remaining_overall_loss: float
    days_traded: int
    min_trading_days: int
    projected_days_to_target: Optional[float] = None
    peak_equity: float = 0.0
    alerts: List[dict] = field(default_factory=list)


def _alert(code: str, level: str, message: str) -> dict:
    return {"code": code, "level": level, "message": message}


def compute_progress(evaluation: PropEvaluation, trades: List[ClosedTrade], now: datetime) -> EvaluationProgress:
    """纯计算：由考核参数与起始日以来的平仓交易得出进度与告警"""
    account_size = float(evaluation.account_size)
    profit_target = float(evaluation.profit_target or 0)
    max_daily_loss = float(evaluation.max_daily_loss or 0)
    max_overall_loss = float(evaluation.max_overall_loss or 0)
    consistency_band = float(evaluation.consistency_band or 0)

    cumulative = 0.0
    peak_equity = max(float(evaluation.peak_equity or 0), account_size)
    by_day: Dict = {}
    for t in trades:
        cumulative += t.pnl
        equity = account_size + cumulative
        if equity > peak_equity:
            peak_equity = equity
        day = utc_day(t.exit_at)
        by_day[day] = by_day.get(day, 0.0) + t.pnl

    today_pnl = by_day.get(utc_day(now), 0.0)
    today_loss = abs(today_pnl) if today_pnl < 0 else 0.0
    current_equity = account_size + cumulative
    realized_drawdown = min(current_equity - peak_equity, 0.0)
    remaining_daily_loss = max_daily_loss - today_loss
    remaining_overall_loss = max_overall_loss - abs(realized_drawdown)
    remaining_target = profit_target - cumulative
    days_traded = len(by_day)
    avg_daily_profit = cumulative / days_traded if days_traded else 0.0
    projected = None
    if remaining_target > 0 and avg_daily_profit > 0:
        projected = remaining_target / avg_daily_profit
    progress_pct = cumulative / profit_target * 100 if profit_target > 0 else 0.0

    alerts: List[dict] = []
    if profit_target > 0 and remaining_target <= 0:
        alerts.append(_alert("PF_TARGET_REACHED", "INFO", "Profit target reached"))
    if projected is not None and projected < NEAR_TARGET_DAYS:
        alerts.append(_alert("PF_NEAR_TARGET", "INFO", f"On pace to hit target in <{NEAR_TARGET_DAYS} days"))
    # 限额为 0 视为未配置
    if max_daily_loss > 0:
        if today_loss > max_daily_loss:
            alerts.append(_alert("PF_DAILY_LOSS", "BLOCK", "Daily loss limit exceeded"))
        elif today_loss >= NEAR_LIMIT_RATIO * max_daily_loss:
            alerts.append(_alert("PF_NEAR_DAILY_LOSS", "WARN", "Approaching daily loss limit"))
    if max_overall_loss > 0:
        drawdown = abs(realized_drawdown)
        if drawdown > max_overall_loss:
            alerts.append(_alert("PF_OVERALL_LOSS", "BLOCK", "Overall loss limit exceeded"))
        elif drawdown >= NEAR_LIMIT_RATIO * max_overall_loss:
            alerts.append(_alert("PF_NEAR_OVERALL_LOSS", "WARN", "Approaching overall loss limit"))

    if consistency_band > 0 and days_traded > 1:
        day_values = [by_day[d] for d in sorted(by_day)]
        top_day = max(abs(v) for v in day_values) or 1.0
        for value in day_values:
            ratio = abs(value) / top_day
            if 0 < ratio < consistency_band * CONSISTENCY_FACTOR:
                alerts.append(_alert(
                    "PF_INCONSISTENT_DAY", "INFO", "One day PnL far below top day (consistency watch)"
                ))
                break

    if evaluation.trailing and max_overall_loss > 0:
        floor = peak_equity - max_overall_loss
        if current_equity <= floor:
            alerts.append(_alert("PF_TRAILING_BREACH", "BLOCK", "Trailing drawdown breach"))
        elif current_equity - floor <= max_overall_loss * TRAILING_NEAR_RATIO:
            alerts.append(_alert("PF_NEAR_TRAILING", "WARN", "Approaching trailing drawdown limit"))

    return EvaluationProgress(
        id=evaluation.id,
        phase=evaluation.phase,
        status=evaluation.status,
        cumulative_profit=round(cumulative, 2),
        profit_target=profit_target,
        progress_pct=round(progress_pct, 2),
        max_daily_loss=max_daily_loss,
        max_overall_loss=max_overall_loss,
        remaining_target=round(remaining_target, 2),
        remaining_daily_loss=round(remaining_daily_loss, 2),
        remaining_overall_loss=round(remaining_overall_loss, 2),
        days_traded=days_traded,
        min_trading_days=int(evaluation.min_trading_days or 0),
        projected_days_to_target=round(projected, 1) if projected is not None else None,
        peak_equity=round(peak_equity, 2),
        alerts=alerts,
    )


class PropEvaluationService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_active_evaluation(self, user_id: str) -> Optional[PropEvaluation]:
        result = await self.session.execute(
            select(PropEvaluation)
            .where(PropEvaluation.user_id == user_id, PropEvaluation.status == PropStatus.ACTIVE.value)
            .order_by(PropEvaluation.created_at.desc(), PropEvaluation.id.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def list_evaluations(self, user_id: str) -> List[PropEvaluation]:
        result = await self.session.execute(
            select(PropEvaluation)
            .where(PropEvaluation.user_id == user_id)
            .order_by(PropEvaluation.id.asc())
        )
        return list(result.scalars().all())

    async def upsert_evaluation(self, user_id: str, payload: dict) -> PropEvaluation:
        """创建或更新当前 ACTIVE 考核（同一用户只保留一条 ACTIVE）"""
        existing = await self.get_active_evaluation(user_id)
        values = {
            "firm_name": payload["firm_name"],
            "phase": PropPhase(payload.get("phase") or (existing.phase if existing else PropPhase.PHASE1)).value,
            "account_size": payload["account_size"],
            "profit_target": payload["profit_target"],
            "max_daily_loss": payload["max_daily_loss"],
            "max_overall_loss": payload["max_overall_loss"],
            "trailing": bool(payload.get("trailing") or False),
            "min_trading_days": payload.get("min_trading_days") or 0,
            "consistency_band": payload.get("consistency_band") or 0,
            "max_single_trade_risk": payload.get("max_single_trade_risk"),
            "start_date": to_naive_utc(payload.get("start_date")) or utcnow(),
        }
        if existing:
            for key, value in values.items():
                setattr(existing, key, value)
            evaluation = existing
        else:
            evaluation = PropEvaluation(user_id=user_id, status=PropStatus.ACTIVE.value, **values)
            self.session.add(evaluation)
        await self.session.commit()
        await self.session.refresh(evaluation)
        return evaluation

    async def _progress_for(self, evaluation: PropEvaluation, now: datetime) -> EvaluationProgress:
        trades = await fetch_closed_trades(self.session, evaluation.user_id, exit_from=evaluation.start_date)
        return compute_progress(evaluation, trades, now)

    async def compute_progress(self, user_id: str, now: Optional[datetime] = None) -> Optional[EvaluationProgress]:
        """没有 ACTIVE 考核时返回 None"""
        evaluation = await self.get_active_evaluation(user_id)
        if evaluation is None:
            return None
        return await self._progress_for(evaluation, now or utcnow())

    async def evaluate_and_maybe_rollover(self, user_id: str, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        active = await self.get_active_evaluation(user_id)
        if active is None:
            return {"action": RolloverAction.NONE}
        progress = await self._progress_for(active, now)

        active.cumulative_profit = progress.cumulative_profit
        active.peak_equity = progress.peak_equity

        failed = any(a["level"] == "BLOCK" and a["code"] in FAIL_ALERT_CODES for a in progress.alerts)
        if failed:
            active.status = PropStatus.FAILED.value
            active.end_date = now
            await self.session.commit()
            logger.warning(f"Prop evaluation failed: user={user_id} id={active.id} phase={active.phase}")
            return {"action": RolloverAction.FAILED, "current": active, "progress": progress}

        passed = progress.remaining_target <= 0 and progress.days_traded >= progress.min_trading_days
        if not passed or active.phase not in (PropPhase.PHASE1.value, PropPhase.PHASE2.value):
            await self.session.commit()
            return {"action": RolloverAction.NONE, "current": active, "progress": progress}

        active.status = PropStatus.PASSED.value
        active.end_date = now
        successor = PropEvaluation(
            user_id=user_id,
            firm_name=active.firm_name,
            status=PropStatus.ACTIVE.value,
            account_size=active.account_size,
            max_daily_loss=active.max_daily_loss,
            max_overall_loss=active.max_overall_loss,
            trailing=active.trailing,
            consistency_band=active.consistency_band,
            max_single_trade_risk=active.max_single_trade_risk,
            cumulative_profit=0,
            start_date=now,
        )
        if active.phase == PropPhase.PHASE1.value:
            successor.phase = PropPhase.PHASE2.value
            successor.profit_target = active.profit_target
            successor.min_trading_days = active.min_trading_days
            action = RolloverAction.ROLLED_TO_PHASE2
        else:
            successor.phase = PropPhase.FUNDED.value
            successor.profit_target = 0
            successor.min_trading_days = 0
            action = RolloverAction.ROLLED_TO_FUNDED
        self.session.add(successor)
        await self.session.commit()
        await self.session.refresh(successor)
        logger.info(
            f"Prop evaluation passed: user={user_id} id={active.id} {active.phase} -> {successor.phase} (next id={successor.id})"
        )
        return {"action": action, "current": active, "next": successor, "progress": progress}
