"""日权益序列：由平仓交易按 UTC 日聚合重建，并支持一致性校验

累计权益满足: equity(day N) = equity(day N-1) + realized_pnl(day N)，以 initial_equity 为起点。
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.observability import capture_exception, run_in_span
from app.core.task_registry import KeyedLock, spawn_background
from app.core.timeutil import day_start, utc_day
from app.models.daily_equity import DailyEquity
from app.models.db import session_factory
from app.models.journal_settings import JournalSettings
from app.models.trade import Trade
from app.services.settings_service import JournalSettingsService
from app.services.trade_query import ClosedTrade, fetch_closed_trades

logger = logging.getLogger(__name__)

# 同一用户的重建串行执行
_rebuild_locks = KeyedLock("daily-equity-rebuild")


def aggregate_by_day(trades: List[ClosedTrade]) -> "OrderedDict[date, Tuple[float, int]]":
    """按出场时间的 UTC 日汇总 (pnl, 笔数)，日期升序"""
    buckets: Dict[date, List[float]] = {}
    for t in trades:
        day = utc_day(t.exit_at)
        bucket = buckets.setdefault(day, [0.0, 0])
        bucket[0] += t.pnl
        bucket[1] += 1
    ordered: "OrderedDict[date, Tuple[float, int]]" = OrderedDict()
    for day in sorted(buckets):
        pnl, count = buckets[day]
        ordered[day] = (round(pnl, 2), int(count))
    return ordered


def build_series(by_day: "OrderedDict[date, Tuple[float, int]]", seed: float) -> List[dict]:
    """从种子权益开始逐日累加"""
    series = []
    cumulative = float(seed)
    for day, (pnl, count) in by_day.items():
        cumulative = round(cumulative + pnl, 2)
        series.append({"date": day, "realized_pnl": pnl, "cumulative_equity": cumulative, "trade_count": count})
    return series


class DailyEquityService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _seed_before(self, user_id: str, day: date) -> Optional[float]:
        result = await self.session.execute(
            select(DailyEquity.cumulative_equity)
            .where(DailyEquity.user_id == user_id, DailyEquity.date < day)
            .order_by(DailyEquity.date.desc())
            .limit(1)
        )
        value = result.scalar()
        return float(value) if value is not None else None

    async def rebuild(self, user_id: str, from_date: Optional[Union[date, datetime]] = None) -> dict:
        """重建日权益

        - 不传 from_date: 清空该用户所有行后全量重建
        - 传 from_date: 以其之前最近一行的累计权益为种子，只重算 >= from_date 的日期
        全部写入在同一事务内提交；同一用户的并发重建按到达顺序串行。
        """
        async with _rebuild_locks.hold(user_id):
            settings_svc = JournalSettingsService(self.session)
            baseline = await settings_svc.initial_equity(user_id)

            from_day: Optional[date] = None
            if from_date is not None:
                from_day = day_start(from_date).date()

            try:
                if from_day is None:
                    seed = baseline
                    trades = await fetch_closed_trades(self.session, user_id)
                else:
                    seed_value = await self._seed_before(user_id, from_day)
                    seed = seed_value if seed_value is not None else baseline
                    trades = await fetch_closed_trades(
                        self.session, user_id, exit_from=day_start(from_day)
                    )

                series = build_series(aggregate_by_day(trades), seed)

                stmt = select(DailyEquity).where(DailyEquity.user_id == user_id)
                if from_day is not None:
                    stmt = stmt.where(DailyEquity.date >= from_day)
                existing = {row.date: row for row in (await self.session.execute(stmt)).scalars().all()}

                # 按 (user, date) upsert；区间内已无交易的日期删除
                for point in series:
                    row = existing.pop(point["date"], None)
                    if row is None:
                        self.session.add(DailyEquity(user_id=user_id, **point))
                    else:
                        row.realized_pnl = point["realized_pnl"]
                        row.cumulative_equity = point["cumulative_equity"]
                        row.trade_count = point["trade_count"]
                for stale in existing.values():
                    await self.session.delete(stale)

                await settings_svc.stamp(user_id, rebuild=True)
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                raise

        logger.info(
            f"Daily equity rebuilt: user={user_id} from={from_day or 'ALL'} days={len(series)} trades={len(trades)}"
        )
        return {
            "user_id": user_id,
            "from_date": from_day.isoformat() if from_day else None,
            "days": len(series),
            "trades": len(trades),
        }

    async def rebuild_from_date(self, user_id: str, value: Union[date, datetime]) -> dict:
        """交易平仓/编辑后的增量重建入口"""
        return await self.rebuild(user_id, day_start(value))

    async def validate(self, user_id: str) -> dict:
        """只读校验：内存中重算后与已存行比对，不做任何修正"""
        tolerance = settings.EQUITY_VALIDATION_TOLERANCE
        baseline = await JournalSettingsService(self.session).initial_equity(user_id)
        trades = await fetch_closed_trades(self.session, user_id)
        expected = {p["date"]: p for p in build_series(aggregate_by_day(trades), baseline)}

        stored_rows = (
            await self.session.execute(
                select(DailyEquity).where(DailyEquity.user_id == user_id).order_by(DailyEquity.date.asc())
            )
        ).scalars().all()
        stored = {row.date: row for row in stored_rows}

        discrepancies = []
        for day, point in expected.items():
            row = stored.get(day)
            if row is None:
                continue
            for field_name in ("realized_pnl", "cumulative_equity"):
                stored_value = float(getattr(row, field_name))
                diff = round(stored_value - point[field_name], 2)
                if abs(diff) > tolerance:
                    discrepancies.append({
                        "date": day.isoformat(),
                        "field": field_name,
                        "stored": stored_value,
                        "expected": point[field_name],
                        "diff": diff,
                    })
            if int(row.trade_count) != point["trade_count"]:
                discrepancies.append({
                    "date": day.isoformat(),
                    "field": "trade_count",
                    "stored": int(row.trade_count),
                    "expected": point["trade_count"],
                    "diff": int(row.trade_count) - point["trade_count"],
                })

        missing_days = sorted(d.isoformat() for d in expected if d not in stored)
        extra_days = sorted(d.isoformat() for d in stored if d not in expected)

        await JournalSettingsService(self.session).stamp(user_id, validation=True)
        await self.session.commit()

        ok = not discrepancies and not missing_days and not extra_days
        if not ok:
            logger.warning(
                f"Daily equity validation mismatch: user={user_id} discrepancies={len(discrepancies)} "
                f"missing={len(missing_days)} extra={len(extra_days)}"
            )
        return {
            "user_id": user_id,
            "ok": ok,
            "expected_count": len(expected),
            "stored_count": len(stored),
            "discrepancies": discrepancies,
            "missing_days": missing_days,
            "extra_days": extra_days,
        }

    async def list_range(
        self, user_id: str, date_from: Optional[date] = None, date_to: Optional[date] = None
    ) -> List[DailyEquity]:
        stmt = select(DailyEquity).where(DailyEquity.user_id == user_id)
        if date_from:
            stmt = stmt.where(DailyEquity.date >= date_from)
        if date_to:
            stmt = stmt.where(DailyEquity.date <= date_to)
        result = await self.session.execute(stmt.order_by(DailyEquity.date.asc()))
        return list(result.scalars().all())


async def list_equity_user_ids(session: AsyncSession) -> List[str]:
    """有设置或有交易的全部用户"""
    ids = set((await session.execute(select(JournalSettings.user_id))).scalars().all())
    ids.update((await session.execute(select(Trade.user_id).distinct())).scalars().all())
    return sorted(ids)


async def rebuild_all_daily_equity() -> List[dict]:
    """管理用：逐个用户顺序全量重建（不并发）"""
    factory = session_factory()
    async with factory() as session:
        user_ids = await list_equity_user_ids(session)
    results = []
    for user_id in user_ids:
        async with factory() as session:
            results.append(await DailyEquityService(session).rebuild(user_id))
    logger.info(f"Daily equity full rebuild finished for {len(results)} users")
    return results


async def validate_all_daily_equity() -> List[dict]:
    factory = session_factory()
    async with factory() as session:
        user_ids = await list_equity_user_ids(session)
    reports = []
    for user_id in user_ids:
        async with factory() as session:
            reports.append(await DailyEquityService(session).validate(user_id))
    bad = [r["user_id"] for r in reports if not r["ok"]]
    logger.info(f"Daily equity validation finished: users={len(reports)} mismatched={len(bad)}")
    return reports


async def _rebuild_best_effort(user_id: str, from_date: datetime) -> None:
    try:
        async with session_factory()() as session:
            async with run_in_span("daily_equity.rebuild", user=user_id):
                await DailyEquityService(session).rebuild_from_date(user_id, from_date)
    except Exception as e:
        capture_exception(e, op="daily_equity.rebuild", user=user_id)


def schedule_equity_rebuild(user_id: str, from_date: datetime):
    """交易变更后的后台增量重建；失败只记录，不影响触发方"""
    return spawn_background(_rebuild_best_effort(user_id, from_date), name=f"equity-rebuild:{user_id}")
