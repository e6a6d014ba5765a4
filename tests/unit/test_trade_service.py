import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from app.core.errors import JournalError, NotFoundError, PerTradeRiskError
from app.core.task_registry import drain_background
from app.models.daily_equity import DailyEquity
from app.models.trade import Tag
from app.services.trade_service import TradeService

from conftest import BTCUSD, ES, USER, add_settings

ENTRY = datetime(2024, 3, 4, 14, 30)
EXIT = datetime(2024, 3, 4, 15, 45)


def _payload(**overrides):
    payload = {
        "instrument_id": BTCUSD,
        "direction": "LONG",
        "entry_price": 100,
        "quantity": 1,
        "entry_at": ENTRY,
    }
    payload.update(overrides)
    return payload


async def _settle():
    # 等防抖定时器触发，再等所有后台任务完成
    await asyncio.sleep(0.05)
    await drain_background()


@pytest.mark.asyncio
async def test_create_closed_trade_applies_multiplier(session):
    result = await TradeService(session).create_trade(
        USER,
        _payload(instrument_id=ES, entry_price=5000, exit_price=5010, exit_at=EXIT, quantity=2, fees=4),
    )
    assert result.trade.status == "CLOSED"
    assert result.realized_pnl == pytest.approx(996.0)
    assert float(result.trade.realized_pnl) == pytest.approx(996.0)
    await _settle()


@pytest.mark.asyncio
async def test_create_open_trade(session):
    result = await TradeService(session).create_trade(USER, _payload(direction="SHORT"))
    assert result.trade.status == "OPEN"
    assert result.trade.direction == "SHORT"
    assert result.realized_pnl is None
    await _settle()


@pytest.mark.asyncio
async def test_exit_fields_must_come_together(session):
    with pytest.raises(ValueError):
        await TradeService(session).create_trade(USER, _payload(exit_price=110))
    with pytest.raises(ValueError):
        await TradeService(session).create_trade(USER, _payload(exit_at=EXIT))


@pytest.mark.asyncio
async def test_unknown_instrument(session):
    with pytest.raises(JournalError) as exc:
        await TradeService(session).create_trade(USER, _payload(instrument_id=999))
    assert exc.value.code == "INSTRUMENT_NOT_FOUND"


@pytest.mark.asyncio
async def test_per_trade_risk_blocks_before_write(session):
    await add_settings(session, initial_equity=10000, risk_per_trade_pct=1)
    svc = TradeService(session)
    with pytest.raises(PerTradeRiskError):
        await svc.create_trade(USER, _payload(instrument_id=ES, entry_price=5000))
    assert await svc.list_trades(USER) == []

    allowed = await svc.create_trade(USER, _payload(entry_price=100))
    assert allowed.risk_pct == pytest.approx(1.0)
    await _settle()


@pytest.mark.asyncio
async def test_tags_by_id_and_label(session):
    svc = TradeService(session)
    swing = await svc.create_tag(USER, "swing")
    result = await svc.create_trade(USER, _payload(tag_ids=[swing.id], tag_labels=["breakout", "swing"]))
    assert len(result.tag_ids) == 2

    labels = [t.label for t in await svc.list_tags(USER)]
    assert labels == ["breakout", "swing"]

    with pytest.raises(JournalError) as exc:
        await svc.create_trade(USER, _payload(tag_ids=[424242]))
    assert exc.value.code == "TAG_NOT_FOUND"
    await _settle()


@pytest.mark.asyncio
async def test_create_tag_is_idempotent_per_label(session):
    svc = TradeService(session)
    first = await svc.create_tag(USER, " scalp ")
    second = await svc.create_tag(USER, "scalp")
    assert first.id == second.id
    with pytest.raises(ValueError):
        await svc.create_tag(USER, "   ")
    rows = (await session.execute(select(Tag))).scalars().all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_update_with_exit_closes_trade(session):
    svc = TradeService(session)
    created = await svc.create_trade(USER, _payload())
    updated = await svc.update_trade(USER, created.trade.id, {"exit_price": 90, "exit_at": EXIT})
    assert updated.trade.status == "CLOSED"
    assert updated.realized_pnl == pytest.approx(-10.0)

    with pytest.raises(ValueError):
        await svc.update_trade(USER, created.trade.id, {"exit_price": None})
    await _settle()


@pytest.mark.asyncio
async def test_soft_delete_and_restore(session):
    svc = TradeService(session)
    closed = await svc.create_trade(USER, _payload(exit_price=110, exit_at=EXIT))
    opened = await svc.create_trade(USER, _payload())

    await svc.delete_trade(USER, closed.trade.id)
    await svc.delete_trade(USER, opened.trade.id)
    assert await svc.list_trades(USER) == []
    deleted = await svc.list_trades(USER, include_deleted=True)
    assert {r.trade.status for r in deleted} == {"CANCELLED"}

    assert (await svc.restore_trade(USER, closed.trade.id)).trade.status == "CLOSED"
    assert (await svc.restore_trade(USER, opened.trade.id)).trade.status == "OPEN"

    with pytest.raises(JournalError) as exc:
        await svc.restore_trade(USER, opened.trade.id)
    assert exc.value.code == "NOT_DELETED"
    await _settle()


@pytest.mark.asyncio
async def test_other_users_trade_is_not_found(session):
    svc = TradeService(session)
    created = await svc.create_trade(USER, _payload())
    with pytest.raises(NotFoundError):
        await svc.get_trade("someone-else", created.trade.id)
    await _settle()


@pytest.mark.asyncio
async def test_list_filters(session):
    svc = TradeService(session)
    await svc.create_trade(USER, _payload(direction="LONG"))
    await svc.create_trade(
        USER, _payload(instrument_id=ES, direction="SHORT", entry_at=ENTRY + timedelta(days=2))
    )

    assert len(await svc.list_trades(USER)) == 2
    shorts = await svc.list_trades(USER, direction="SHORT")
    assert [r.trade.instrument_id for r in shorts] == [ES]
    later = await svc.list_trades(USER, date_from=ENTRY + timedelta(days=1))
    assert len(later) == 1
    assert len(await svc.list_trades(USER, instrument_id=BTCUSD)) == 1
    assert len(await svc.list_trades(USER, limit=1)) == 1
    await _settle()


@pytest.mark.asyncio
async def test_mutation_rebuilds_daily_equity_in_background(session):
    await add_settings(session, initial_equity=10000)
    await TradeService(session).create_trade(USER, _payload(exit_price=150, exit_at=EXIT))
    await _settle()

    rows = (await session.execute(select(DailyEquity).where(DailyEquity.user_id == USER))).scalars().all()
    assert [r.date for r in rows] == [EXIT.date()]
    assert float(rows[0].cumulative_equity) == pytest.approx(10050.0)
