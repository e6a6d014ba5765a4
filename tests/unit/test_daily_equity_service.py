import asyncio
from datetime import date, datetime

import pytest
from sqlalchemy import select, update

from app.models import db
from app.models.daily_equity import DailyEquity
from app.models.journal_settings import JournalSettings
from app.services.daily_equity_service import DailyEquityService, aggregate_by_day, build_series
from app.services.trade_query import ClosedTrade

from conftest import USER, add_closed_trade, add_settings


def _closed(pnl, exit_at, trade_id=1):
    return ClosedTrade(id=trade_id, entry_at=exit_at, exit_at=exit_at, pnl=pnl, instrument_id=1)


def test_build_series_accumulates_from_seed():
    trades = [
        _closed(100, datetime(2024, 1, 1, 10), 1),
        _closed(-30, datetime(2024, 1, 1, 15), 2),
        _closed(50, datetime(2024, 1, 3, 9), 3),
    ]
    series = build_series(aggregate_by_day(trades), 1000)
    assert [p["date"] for p in series] == [date(2024, 1, 1), date(2024, 1, 3)]
    assert [p["realized_pnl"] for p in series] == [70, 50]
    assert [p["cumulative_equity"] for p in series] == [1070, 1120]
    assert [p["trade_count"] for p in series] == [2, 1]


async def _rows(session):
    result = await session.execute(
        select(DailyEquity).where(DailyEquity.user_id == USER).order_by(DailyEquity.date)
    )
    return [(r.date, float(r.realized_pnl), float(r.cumulative_equity), r.trade_count) for r in result.scalars()]


@pytest.mark.asyncio
async def test_full_rebuild_is_idempotent(session):
    await add_settings(session, initial_equity=1000)
    await add_closed_trade(session, datetime(2024, 3, 1, 10), 100, 110)
    await add_closed_trade(session, datetime(2024, 3, 1, 12), 100, 95)
    await add_closed_trade(session, datetime(2024, 3, 4, 10), 100, 120)

    svc = DailyEquityService(session)
    result = await svc.rebuild(USER)
    first = await _rows(session)
    await svc.rebuild(USER)
    second = await _rows(session)

    assert result["days"] == 2
    assert result["trades"] == 3
    assert first == second == [
        (date(2024, 3, 1), 5.0, 1005.0, 2),
        (date(2024, 3, 4), 20.0, 1025.0, 1),
    ]

    settings_row = (await session.execute(select(JournalSettings))).scalars().first()
    await session.refresh(settings_row)
    assert settings_row.last_equity_rebuild_at is not None


@pytest.mark.asyncio
async def test_incremental_rebuild_seeds_from_previous_day(session):
    await add_settings(session, initial_equity=1000)
    await add_closed_trade(session, datetime(2024, 3, 1, 10), 100, 110)
    svc = DailyEquityService(session)
    await svc.rebuild(USER)

    await add_closed_trade(session, datetime(2024, 3, 5, 10), 100, 130)
    result = await svc.rebuild(USER, date(2024, 3, 5))

    assert result["from_date"] == "2024-03-05"
    assert await _rows(session) == [
        (date(2024, 3, 1), 10.0, 1010.0, 1),
        (date(2024, 3, 5), 30.0, 1040.0, 1),
    ]


@pytest.mark.asyncio
async def test_baseline_defaults_without_settings(session):
    await add_closed_trade(session, datetime(2024, 3, 1, 10), 100, 110)
    await DailyEquityService(session).rebuild(USER)
    rows = await _rows(session)
    assert rows[0][2] == 100010.0


@pytest.mark.asyncio
async def test_validate_reports_ok_then_discrepancy(session):
    await add_settings(session, initial_equity=1000)
    await add_closed_trade(session, datetime(2024, 3, 1, 10), 100, 110)
    await add_closed_trade(session, datetime(2024, 3, 2, 10), 100, 90)
    svc = DailyEquityService(session)
    await svc.rebuild(USER)

    report = await svc.validate(USER)
    assert report["ok"] is True
    assert report["expected_count"] == report["stored_count"] == 2

    await session.execute(
        update(DailyEquity).where(DailyEquity.date == date(2024, 3, 2)).values(cumulative_equity=999)
    )
    await session.commit()
    report = await svc.validate(USER)
    assert report["ok"] is False
    assert report["discrepancies"] == [{
        "date": "2024-03-02",
        "field": "cumulative_equity",
        "stored": 999.0,
        "expected": 1000.0,
        "diff": -1.0,
    }]


@pytest.mark.asyncio
async def test_validate_lists_missing_days(session):
    await add_closed_trade(session, datetime(2024, 3, 1, 10), 100, 110)
    report = await DailyEquityService(session).validate(USER)
    assert report["ok"] is False
    assert report["missing_days"] == ["2024-03-01"]
    assert report["extra_days"] == []


@pytest.mark.asyncio
async def test_incremental_rebuild_drops_day_without_trades(session):
    await add_settings(session, initial_equity=1000)
    await add_closed_trade(session, datetime(2024, 3, 1, 10), 100, 110)
    removed = await add_closed_trade(session, datetime(2024, 3, 4, 10), 100, 120)
    await add_closed_trade(session, datetime(2024, 3, 6, 10), 100, 95)
    svc = DailyEquityService(session)
    await svc.rebuild(USER)

    await session.delete(removed)
    await session.commit()
    await svc.rebuild(USER, date(2024, 3, 4))

    assert await _rows(session) == [
        (date(2024, 3, 1), 10.0, 1010.0, 1),
        (date(2024, 3, 6), -5.0, 1005.0, 1),
    ]
    assert (await svc.validate(USER))["ok"] is True


@pytest.mark.asyncio
async def test_concurrent_rebuilds_for_same_user_write_each_day_once(session):
    await add_settings(session, initial_equity=1000)
    await add_closed_trade(session, datetime(2024, 3, 1, 10), 100, 110)
    await add_closed_trade(session, datetime(2024, 3, 2, 10), 100, 130)

    async def rebuild(from_day):
        async with db.SessionLocal() as s:
            return await DailyEquityService(s).rebuild(USER, from_day)

    results = await asyncio.gather(rebuild(date(2024, 3, 1)), rebuild(date(2024, 3, 2)), rebuild(None))

    assert [r["user_id"] for r in results] == [USER] * 3
    assert await _rows(session) == [
        (date(2024, 3, 1), 10.0, 1010.0, 1),
        (date(2024, 3, 2), 30.0, 1040.0, 1),
    ]
    assert (await DailyEquityService(session).validate(USER))["ok"] is True
