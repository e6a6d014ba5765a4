from datetime import datetime

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings
from app.core.task_registry import drain_background
from app.models import db
from app.models.journal_settings import JournalSettings
from app.models.trade import Trade, TradeStatus
from app.services.export_job_service import worker_metrics
from app.services.goal_service import goal_debouncer
from app.services.instrument_service import InstrumentService
from app.services.pnl_calculator import compute_realized_pnl

USER = "local"

# 默认种子合约 id（按写入顺序）
ES, NQ, GC, BTCUSD, EURUSD = 1, 2, 3, 4, 5


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    monkeypatch.setattr(settings, "ENABLE_SCHEDULER", False)
    monkeypatch.setattr(settings, "AUTH_ENABLED", False)
    monkeypatch.setattr(settings, "ANONYMOUS_USER_ID", USER)
    monkeypatch.setattr(settings, "GOAL_RECALC_DEBOUNCE_MS", 10)
    monkeypatch.setattr(settings, "FORCE_STREAM_EXPORT", False)
    worker_metrics.reset()


@pytest.fixture
def test_engine(tmp_path, monkeypatch):
    """每个测试一个临时 SQLite 文件，替换全局 engine 与 SessionLocal"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'journal.db'}")
    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    monkeypatch.setattr(db, "engine", engine)
    monkeypatch.setattr(db, "SessionLocal", factory)
    return engine


@pytest_asyncio.fixture
async def session(test_engine):
    await db.init_models(bind=test_engine)
    async with db.SessionLocal() as s:
        await InstrumentService(s).ensure_defaults()
        yield s
    goal_debouncer.cancel_all()
    await drain_background()
    await test_engine.dispose()


@pytest.fixture
def client(test_engine):
    from fastapi.testclient import TestClient
    from app.main import app

    with TestClient(app) as c:
        yield c


async def add_closed_trade(
    session,
    exit_at: datetime,
    entry_price: float = 100,
    exit_price: float = 110,
    quantity: int = 1,
    direction: str = "LONG",
    fees: float = 0,
    instrument_id: int = BTCUSD,
    user_id: str = USER,
    entry_at: datetime = None,
) -> Trade:
    """直接写入一笔已平仓交易（不触发后台钩子）"""
    trade = Trade(
        user_id=user_id,
        instrument_id=instrument_id,
        direction=direction,
        entry_price=entry_price,
        exit_price=exit_price,
        quantity=quantity,
        fees=fees,
        entry_at=entry_at or exit_at,
        exit_at=exit_at,
        status=TradeStatus.CLOSED.value,
        realized_pnl=compute_realized_pnl(entry_price, exit_price, quantity, direction, fees),
    )
    session.add(trade)
    await session.commit()
    await session.refresh(trade)
    return trade


async def add_settings(session, user_id: str = USER, **overrides) -> JournalSettings:
    values = {
        "initial_equity": 10000,
        "risk_per_trade_pct": None,
        "max_daily_loss_pct": 3,
        "max_consecutive_losses_threshold": 3,
    }
    values.update(overrides)
    row = JournalSettings(user_id=user_id, **values)
    session.add(row)
    await session.commit()
    await session.refresh(row)
    return row
