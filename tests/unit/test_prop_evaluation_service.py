from datetime import datetime, timedelta

import pytest

from app.models.prop_evaluation import PropEvaluation
from app.services.prop_evaluation_service import PropEvaluationService, RolloverAction, compute_progress
from app.services.trade_query import ClosedTrade

from conftest import USER, add_closed_trade

START = datetime(2024, 5, 1)
NOW = datetime(2024, 5, 10, 20, 0)


def _evaluation(**overrides):
    values = dict(
        id=1,
        user_id=USER,
        firm_name="Acme",
        phase="PHASE1",
        status="ACTIVE",
        account_size=10000,
        profit_target=600,
        max_daily_loss=0,
        max_overall_loss=0,
        trailing=False,
        min_trading_days=2,
        consistency_band=0,
        peak_equity=None,
        start_date=START,
    )
    values.update(overrides)
    return PropEvaluation(**values)


def _closed(pnl, exit_at, trade_id=1):
    return ClosedTrade(id=trade_id, entry_at=exit_at, exit_at=exit_at, pnl=pnl)


def _codes(progress):
    return {a["code"] for a in progress.alerts}


def test_progress_towards_target():
    trades = [_closed(200, datetime(2024, 5, 2, 10)), _closed(100, datetime(2024, 5, 3, 10))]
    progress = compute_progress(_evaluation(), trades, NOW)
    assert progress.cumulative_profit == 300
    assert progress.progress_pct == 50
    assert progress.remaining_target == 300
    assert progress.days_traded == 2
    assert progress.projected_days_to_target == 2.0
    assert progress.peak_equity == 10300
    assert "PF_NEAR_TARGET" in _codes(progress)


def test_daily_and_overall_loss_alerts():
    evaluation = _evaluation(max_daily_loss=500, max_overall_loss=700)
    trades = [_closed(-600, NOW - timedelta(hours=2))]
    progress = compute_progress(evaluation, trades, NOW)
    assert {"PF_DAILY_LOSS", "PF_NEAR_OVERALL_LOSS"} <= _codes(progress)
    assert progress.remaining_daily_loss == -100
    assert progress.remaining_overall_loss == 100


def test_trailing_breach_tracks_peak():
    evaluation = _evaluation(max_overall_loss=500, trailing=True)
    trades = [_closed(800, datetime(2024, 5, 2, 10)), _closed(-600, datetime(2024, 5, 3, 10))]
    progress = compute_progress(evaluation, trades, NOW)
    assert progress.peak_equity == 10800
    assert "PF_TRAILING_BREACH" in _codes(progress)


def test_zero_limits_are_unconfigured():
    trades = [_closed(-5000, NOW - timedelta(hours=1))]
    progress = compute_progress(_evaluation(), trades, NOW)
    assert not _codes(progress) & {"PF_DAILY_LOSS", "PF_OVERALL_LOSS", "PF_TRAILING_BREACH"}


def test_inconsistent_day_alert():
    evaluation = _evaluation(consistency_band=1)
    trades = [_closed(1000, datetime(2024, 5, 2, 10)), _closed(50, datetime(2024, 5, 3, 10))]
    assert "PF_INCONSISTENT_DAY" in _codes(compute_progress(evaluation, trades, NOW))


async def _upsert(session, **overrides):
    payload = {
        "firm_name": "Acme",
        "account_size": 10000,
        "profit_target": 600,
        "max_daily_loss": 0,
        "max_overall_loss": 0,
        "min_trading_days": 2,
        "max_single_trade_risk": 2,
        "start_date": START,
    }
    payload.update(overrides)
    return await PropEvaluationService(session).upsert_evaluation(USER, payload)


@pytest.mark.asyncio
async def test_phase1_rolls_to_phase2(session):
    await _upsert(session)
    await add_closed_trade(session, datetime(2024, 5, 2, 10), 100, 400)
    await add_closed_trade(session, datetime(2024, 5, 3, 10), 100, 400)

    svc = PropEvaluationService(session)
    result = await svc.evaluate_and_maybe_rollover(USER, now=NOW)

    assert result["action"] == RolloverAction.ROLLED_TO_PHASE2
    assert result["current"].status == "PASSED"
    assert float(result["current"].cumulative_profit) == 600
    successor = result["next"]
    assert successor.phase == "PHASE2"
    assert successor.status == "ACTIVE"
    assert float(successor.profit_target) == 600
    assert float(successor.max_single_trade_risk) == 2
    assert successor.start_date == NOW

    active = await svc.get_active_evaluation(USER)
    assert active.id == successor.id


@pytest.mark.asyncio
async def test_phase2_rolls_to_funded(session):
    await _upsert(session, phase="PHASE2", min_trading_days=1)
    await add_closed_trade(session, datetime(2024, 5, 2, 10), 100, 800)

    result = await PropEvaluationService(session).evaluate_and_maybe_rollover(USER, now=NOW)

    assert result["action"] == RolloverAction.ROLLED_TO_FUNDED
    assert result["next"].phase == "FUNDED"
    assert float(result["next"].profit_target) == 0
    assert result["next"].min_trading_days == 0


@pytest.mark.asyncio
async def test_not_enough_days_stays_active(session):
    await _upsert(session)
    await add_closed_trade(session, datetime(2024, 5, 2, 10), 100, 800)
    result = await PropEvaluationService(session).evaluate_and_maybe_rollover(USER, now=NOW)
    assert result["action"] == RolloverAction.NONE
    assert result["current"].status == "ACTIVE"


@pytest.mark.asyncio
async def test_overall_loss_fails_evaluation(session):
    await _upsert(session, max_overall_loss=500)
    await add_closed_trade(session, datetime(2024, 5, 2, 10), 100, 40, quantity=10)

    svc = PropEvaluationService(session)
    result = await svc.evaluate_and_maybe_rollover(USER, now=NOW)
    assert result["action"] == RolloverAction.FAILED
    assert result["current"].status == "FAILED"
    assert result["current"].end_date == NOW

    assert (await svc.evaluate_and_maybe_rollover(USER, now=NOW))["action"] == RolloverAction.NONE


@pytest.mark.asyncio
async def test_trades_before_start_are_ignored(session):
    await _upsert(session)
    await add_closed_trade(session, datetime(2024, 4, 20, 10), 100, 900)
    progress = await PropEvaluationService(session).compute_progress(USER, now=NOW)
    assert progress.cumulative_profit == 0
    assert progress.days_traded == 0


@pytest.mark.asyncio
async def test_upsert_keeps_single_active_row(session):
    first = await _upsert(session)
    second = await _upsert(session, profit_target=900)
    assert first.id == second.id
    evaluations = await PropEvaluationService(session).list_evaluations(USER)
    assert len(evaluations) == 1
    assert float(evaluations[0].profit_target) == 900
