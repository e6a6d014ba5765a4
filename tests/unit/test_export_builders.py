import io
import json
from datetime import datetime

import openpyxl
import pytest

from app.core.config import settings
from app.core.errors import ExportValidationError
from app.models.trade import Tag, TradeTag
from app.services.export_builders import (
    TRADE_DEFAULT_COLUMNS,
    ExportBuilder,
    select_trade_columns,
    to_csv,
    to_json,
    validate_export_request,
)

from conftest import ES, USER, add_closed_trade


def test_csv_escapes_quotes_commas_and_newlines():
    text = to_csv(["id", "notes"], [{"id": 1, "notes": 'said "hi", then\nleft'}, {"id": 2, "notes": None}])
    assert text == 'id,notes\n1,"said ""hi"", then\nleft"\n2,\n'


def test_json_keeps_null():
    rows = json.loads(to_json([{"id": 1, "exitAt": None, "at": datetime(2024, 1, 2, 3, 4, 5)}]))
    assert rows == [{"id": 1, "exitAt": None, "at": "2024-01-02T03:04:05Z"}]


def test_selected_columns_follow_canonical_order():
    assert select_trade_columns(None) == TRADE_DEFAULT_COLUMNS
    assert select_trade_columns(["realizedPnl", "id", "bogus", "symbol"]) == ["id", "symbol", "realizedPnl"]


@pytest.mark.parametrize("export_type,export_format,params", [
    ("bogus", "csv", None),
    ("trades", "pdf", None),
    ("trades", "png", None),
    ("trades", "csv", {"limit": 0}),
    ("trades", "csv", {"dateFrom": "not-a-date"}),
    ("trades", "csv", {"direction": "SIDEWAYS"}),
    ("trades", "csv", {"tagIds": "1,2"}),
])
def test_invalid_requests(export_type, export_format, params):
    with pytest.raises(ExportValidationError):
        validate_export_request(export_type, export_format, params)


def test_trade_params_are_normalized():
    params = validate_export_request("trades", "csv", {"limit": "10", "dateFrom": "2024-01-01T00:00:00Z", "tagIds": ["3"]})
    assert params["limit"] == 10
    assert params["dateFrom"] == "2024-01-01T00:00:00"
    assert params["tagIds"] == [3]


async def _seed(session):
    await add_closed_trade(session, datetime(2024, 2, 1, 15), 4000, 4010, quantity=2, fees=5, instrument_id=ES)
    await add_closed_trade(session, datetime(2024, 2, 2, 15), 100, 90, quantity=3, direction="SHORT")


@pytest.mark.asyncio
async def test_trades_csv_with_selected_columns(session):
    await _seed(session)
    payload = await ExportBuilder(session).build_export(
        USER, "trades", "csv", {"selectedColumns": ["id", "symbol", "realizedPnl"]}
    )
    assert payload.streamed is False
    assert payload.filename == "trades-export.csv"
    assert payload.content_type == "text/csv"
    lines = payload.data.strip().split("\n")
    assert lines[0] == "id,symbol,realizedPnl"
    assert lines[1:] == ["2,BTCUSD,30.0", "1,ES,995.0"]


@pytest.mark.asyncio
async def test_daily_pnl_json(session):
    await _seed(session)
    payload = await ExportBuilder(session).build_export(USER, "dailyPnl", "json", {})
    assert payload.filename == "daily-pnl.json"
    assert json.loads(payload.data) == [{"date": "2024-02-01", "pnl": 995.0}, {"date": "2024-02-02", "pnl": 30.0}]


@pytest.mark.asyncio
async def test_goals_xlsx_has_bold_header(session):
    payload = await ExportBuilder(session).build_export(USER, "goals", "xlsx", {})
    wb = openpyxl.load_workbook(io.BytesIO(payload.data))
    ws = wb.active
    assert ws.cell(row=1, column=1).value == "id"
    assert ws.cell(row=1, column=1).font.bold is True


@pytest.mark.asyncio
async def test_chart_equity_png(session):
    await _seed(session)
    payload = await ExportBuilder(session).build_export(USER, "chartEquity", "png", {})
    assert payload.filename == "equity-chart.png"
    assert payload.data[:8] == b"\x89PNG\r\n\x1a\n"


@pytest.mark.asyncio
async def test_chart_equity_series_starts_from_zero(session):
    await _seed(session)
    table = await ExportBuilder(session).build_table(USER, "chartEquity")
    assert [r["equity"] for r in table.rows] == [995.0, 1025.0]


@pytest.mark.asyncio
async def test_forced_stream_yields_header_then_rows(session, monkeypatch):
    monkeypatch.setattr(settings, "FORCE_STREAM_EXPORT", True)
    monkeypatch.setattr(settings, "EXPORT_STREAM_CHUNK_SIZE", 1)
    await _seed(session)
    payload = await ExportBuilder(session).build_export(USER, "trades", "csv", {"selectedColumns": ["id"]})
    assert payload.streamed is True
    chunks = [chunk async for chunk in payload.data]
    assert chunks == ["id\n", "2\n", "1\n"]


@pytest.mark.asyncio
async def test_stream_pages_stay_stable_when_trades_arrive_mid_export(session, monkeypatch):
    monkeypatch.setattr(settings, "FORCE_STREAM_EXPORT", True)
    monkeypatch.setattr(settings, "EXPORT_STREAM_CHUNK_SIZE", 1)
    await _seed(session)
    payload = await ExportBuilder(session).build_export(USER, "trades", "csv", {"selectedColumns": ["id"]})
    stream = payload.data.__aiter__()
    assert await stream.__anext__() == "id\n"
    assert await stream.__anext__() == "2\n"

    # 导出进行中新增一笔更晚的交易，排在已输出的行之前
    await add_closed_trade(session, datetime(2024, 3, 1, 15), 100, 120)
    rest = [chunk async for chunk in stream]
    assert rest == ["1\n"]


@pytest.mark.asyncio
async def test_tag_performance_without_tags_is_empty(session):
    await _seed(session)
    payload = await ExportBuilder(session).build_export(USER, "tagPerformance", "csv", {})
    assert payload.data == "tagId,label,trades,wins,losses,winRate,sumPnl,avgPnl\n"


@pytest.mark.asyncio
async def test_tag_performance_counts_breakeven_as_win(session):
    breakout = Tag(user_id=USER, label="breakout")
    session.add(breakout)
    await session.commit()
    await session.refresh(breakout)

    flat = await add_closed_trade(session, datetime(2024, 2, 1, 15), 100, 100)
    winner = await add_closed_trade(session, datetime(2024, 2, 2, 15), 100, 130)
    loser = await add_closed_trade(session, datetime(2024, 2, 3, 15), 100, 90)
    await add_closed_trade(session, datetime(2024, 2, 4, 15), 100, 500)
    for trade in (flat, winner, loser):
        session.add(TradeTag(trade_id=trade.id, tag_id=breakout.id))
    await session.commit()

    table = await ExportBuilder(session).build_table(USER, "tagPerformance")
    assert table.rows == [{
        "tagId": breakout.id,
        "label": "breakout",
        "trades": 3,
        "wins": 2,
        "losses": 1,
        "winRate": 0.6667,
        "sumPnl": 20.0,
        "avgPnl": 6.67,
    }]


@pytest.mark.asyncio
async def test_prop_evaluation_without_active_row(session):
    payload = await ExportBuilder(session).build_export(USER, "propEvaluation", "json", {})
    rows = json.loads(payload.data)
    assert rows[0]["active"] is False
    assert rows[0]["status"] == "INACTIVE"
