"""导出构建器

按导出类型查询数据得到 {headers, rows}，再按格式序列化：
- csv: 表头 + 转义行；行数超过阈值（或强制）时返回按块产出的异步生成器
- json: 行对象数组
- xlsx: 单 sheet 工作簿（openpyxl）
- png: 仅 chartEquity，matplotlib 绘制权益曲线
所有金额都经由统一盈亏公式计算。
"""
from __future__ import annotations

import asyncio
import csv
import io
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from matplotlib.figure import Figure
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ExportValidationError
from app.core.timeutil import iso, to_naive_utc
from app.models.goal import Goal
from app.models.instrument import Instrument
from app.models.trade import Tag, Trade
from app.services.daily_equity_service import aggregate_by_day
from app.services.pnl_calculator import trade_pnl
from app.services.prop_evaluation_service import PropEvaluationService
from app.services.trade_query import fetch_closed_trades, fetch_tag_ids, trade_filters

logger = logging.getLogger(__name__)

EXPORT_TYPES = ("trades", "goals", "dailyPnl", "tagPerformance", "chartEquity", "propEvaluation")
EXPORT_FORMATS = ("csv", "json", "xlsx", "png")
# png 只对图表类型开放
PNG_TYPES = ("chartEquity",)

CONTENT_TYPES = {
    "csv": "text/csv",
    "json": "application/json",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "png": "image/png",
}

FILENAME_BASES = {
    "trades": "trades-export",
    "goals": "goals-export",
    "dailyPnl": "daily-pnl",
    "tagPerformance": "tag-performance",
    "propEvaluation": "prop-evaluation",
    "chartEquity": "equity-chart-data",
}

TRADE_DEFAULT_COLUMNS = [
    "id", "instrumentId", "direction", "entryPrice", "exitPrice", "quantity", "status", "entryAt", "exitAt",
]
# 可选列按此顺序追加在默认列之后
TRADE_COLUMNS = TRADE_DEFAULT_COLUMNS + ["symbol", "fees", "realizedPnl", "notes", "tagIds"]

PROP_COLUMNS = [
    "active", "phase", "status", "profitTarget", "cumulativeProfit", "progressPct", "remainingTarget",
    "remainingDailyLoss", "remainingOverallLoss", "daysTraded", "minTradingDays", "projectedDaysToTarget", "alerts",
]


@dataclass
class ExportTable:
    headers: List[str]
    rows: List[Dict[str, Any]]
    filename_base: str


@dataclass
class ExportPayload:
    filename: str
    content_type: str
    # bytes / str 为一次性结果；AsyncIterator 为流式 CSV 块
    data: Union[bytes, str, AsyncIterator[str]]
    streamed: bool = False


def validate_export_request(export_type: str, export_format: str, params: Optional[dict]) -> dict:
    """入队前校验类型/格式/参数，返回规范化后的参数"""
    if export_type not in EXPORT_TYPES:
        raise ExportValidationError(f"Unsupported export type: {export_type}")
    if export_format not in EXPORT_FORMATS:
        raise ExportValidationError(f"Unsupported export format: {export_format}")
    if export_format == "png" and export_type not in PNG_TYPES:
        raise ExportValidationError("PNG format is only supported for chartEquity")
    if params is None:
        return {}
    if not isinstance(params, dict):
        raise ExportValidationError("params must be an object")
    if export_type != "trades":
        return dict(params)
    return _normalize_trade_params(params)


def _parse_datetime(value: Any, name: str) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return to_naive_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        raise ExportValidationError(f"Invalid {name}: {value}")


def _normalize_trade_params(params: dict) -> dict:
    normalized = dict(params)
    limit = normalized.get("limit")
    if limit is not None:
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            raise ExportValidationError("limit must be an integer")
        if limit < 1:
            raise ExportValidationError("limit must be >= 1")
        normalized["limit"] = limit
    for key in ("dateFrom", "dateTo"):
        parsed = _parse_datetime(normalized.get(key), key)
        normalized[key] = parsed.isoformat() if parsed else None
    for key in ("tagIds", "selectedColumns"):
        value = normalized.get(key)
        if value is not None and not isinstance(value, list):
            raise ExportValidationError(f"{key} must be a list")
    if normalized.get("tagIds"):
        try:
            normalized["tagIds"] = [int(t) for t in normalized["tagIds"]]
        except (TypeError, ValueError):
            raise ExportValidationError("tagIds must be integers")
    if normalized.get("instrumentId") is not None:
        try:
            normalized["instrumentId"] = int(normalized["instrumentId"])
        except (TypeError, ValueError):
            raise ExportValidationError("instrumentId must be an integer")
    if normalized.get("direction") not in (None, "", "LONG", "SHORT"):
        raise ExportValidationError("direction must be LONG or SHORT")
    if normalized.get("status") not in (None, "", "OPEN", "CLOSED", "CANCELLED"):
        raise ExportValidationError("status must be OPEN, CLOSED or CANCELLED")
    return normalized


def select_trade_columns(selected: Optional[List[str]]) -> List[str]:
    """白名单与规范列顺序取交集；未知列直接忽略"""
    if not selected:
        return list(TRADE_DEFAULT_COLUMNS)
    wanted = set(selected)
    return [c for c in TRADE_COLUMNS if c in wanted]


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return iso(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


def _csv_lines(headers: List[str], rows: List[Dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    for row in rows:
        writer.writerow([_cell(row.get(h)) for h in headers])
    return buffer.getvalue()


def to_csv(headers: List[str], rows: List[Dict[str, Any]]) -> str:
    return _csv_lines(headers, [{h: h for h in headers}]) + _csv_lines(headers, rows)


def to_json(rows: List[Dict[str, Any]]) -> str:
    return json.dumps(
        [{k: (None if v is None else _cell(v)) for k, v in row.items()} for row in rows],
        ensure_ascii=False,
    )


def to_xlsx(headers: List[str], rows: List[Dict[str, Any]], sheet_title: str = "Sheet1") -> bytes:
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = sheet_title

    for col, header in enumerate(headers, 1):
        cell = ws.cell(row=1, column=col, value=header)
        cell.font = Font(bold=True)

    for row_num, row in enumerate(rows, 2):
        for col, header in enumerate(headers, 1):
            ws.cell(row=row_num, column=col, value=_cell(row.get(header)))

    for col in range(1, len(headers) + 1):
        ws.column_dimensions[get_column_letter(col)].width = 15

    output = io.BytesIO()
    wb.save(output)
    return output.getvalue()


def render_equity_png(rows: List[Dict[str, Any]]) -> bytes:
    """绘制累计已实现盈亏曲线"""
    fig = Figure(figsize=(10, 5), dpi=100)
    ax = fig.add_subplot(1, 1, 1)
    if rows:
        times = [r["time"] for r in rows]
        equity = [r["equity"] for r in rows]
        ax.plot(times, equity, label="Equity", color="#2563eb")
        ax.fill_between(times, equity, 0, alpha=0.08, color="#2563eb")
        ax.legend()
    else:
        ax.text(0.5, 0.5, "No closed trades", ha="center", va="center", transform=ax.transAxes)
    ax.set_title("Equity Curve")
    ax.set_xlabel("Time")
    ax.set_ylabel("Cumulative P/L")
    ax.grid(True)
    fig.autofmt_xdate()
    fig.tight_layout()
    output = io.BytesIO()
    fig.savefig(output, format="png")
    return output.getvalue()


class ExportBuilder:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ---------- 各类型的表构建 ----------

    async def _trade_rows(
        self,
        user_id: str,
        params: dict,
        headers: List[str],
        limit: int,
        after: Optional[Tuple[datetime, int]] = None,
    ) -> Tuple[List[dict], Optional[Tuple[datetime, int]]]:
        """按 (entry_at, id) 倒序取一页；after 为上一页最后一行的游标，返回本页行与新游标"""
        conditions = list(self._trade_conditions(user_id, params))
        if after is not None:
            last_entry, last_id = after
            conditions.append(
                or_(Trade.entry_at < last_entry, and_(Trade.entry_at == last_entry, Trade.id < last_id))
            )
        stmt = (
            select(Trade, Instrument.symbol, Instrument.contract_multiplier)
            .outerjoin(Instrument, Instrument.id == Trade.instrument_id)
            .where(*conditions)
            .order_by(Trade.entry_at.desc(), Trade.id.desc())
            .limit(limit)
        )
        rows = (await self.session.execute(stmt)).all()
        cursor = (rows[-1][0].entry_at, rows[-1][0].id) if rows else after
        tag_map = await fetch_tag_ids(self.session, [t.id for t, _, _ in rows]) if "tagIds" in headers else {}
        out = []
        for trade, symbol, multiplier in rows:
            full = {
                "id": trade.id,
                "instrumentId": trade.instrument_id,
                "direction": trade.direction,
                "entryPrice": trade.entry_price,
                "exitPrice": trade.exit_price,
                "quantity": trade.quantity,
                "status": trade.status,
                "entryAt": trade.entry_at,
                "exitAt": trade.exit_at,
                "symbol": symbol,
                "fees": trade.fees,
                "realizedPnl": trade_pnl(trade, multiplier),
                "notes": trade.notes,
                "tagIds": ";".join(str(t) for t in tag_map.get(trade.id, [])),
            }
            out.append({h: full[h] for h in headers})
        return out, cursor

    @staticmethod
    def _trade_conditions(user_id: str, params: dict) -> list:
        return trade_filters(
            user_id,
            date_from=_parse_datetime(params.get("dateFrom"), "dateFrom"),
            date_to=_parse_datetime(params.get("dateTo"), "dateTo"),
            instrument_id=params.get("instrumentId"),
            status=params.get("status") or None,
            direction=params.get("direction") or None,
            tag_ids=params.get("tagIds") or None,
        )

    async def count_trades(self, user_id: str, params: dict) -> int:
        limit = params.get("limit") or settings.EXPORT_TRADES_DEFAULT_LIMIT
        result = await self.session.execute(
            select(func.count(Trade.id)).where(*self._trade_conditions(user_id, params))
        )
        return min(int(result.scalar() or 0), int(limit))

    async def _build_trades(self, user_id: str, params: dict) -> ExportTable:
        headers = select_trade_columns(params.get("selectedColumns"))
        limit = params.get("limit") or settings.EXPORT_TRADES_DEFAULT_LIMIT
        rows, _ = await self._trade_rows(user_id, params, headers, int(limit))
        return ExportTable(headers=headers, rows=rows, filename_base=FILENAME_BASES["trades"])

    async def _build_goals(self, user_id: str, params: dict) -> ExportTable:
        result = await self.session.execute(
            select(Goal).where(Goal.user_id == user_id).order_by(Goal.end_date.asc(), Goal.id.asc())
        )
        headers = ["id", "type", "period", "targetValue", "currentValue", "startDate", "endDate", "achievedAt", "windowDays"]
        rows = [
            {
                "id": g.id,
                "type": g.type,
                "period": g.period,
                "targetValue": g.target_value,
                "currentValue": g.current_value,
                "startDate": g.start_date,
                "endDate": g.end_date,
                "achievedAt": g.achieved_at,
                "windowDays": g.window_days,
            }
            for g in result.scalars().all()
        ]
        return ExportTable(headers=headers, rows=rows, filename_base=FILENAME_BASES["goals"])

    async def _build_daily_pnl(self, user_id: str, params: dict) -> ExportTable:
        closed = await fetch_closed_trades(self.session, user_id)
        rows = [{"date": day, "pnl": pnl} for day, (pnl, _count) in aggregate_by_day(closed).items()]
        return ExportTable(headers=["date", "pnl"], rows=rows, filename_base=FILENAME_BASES["dailyPnl"])

    async def _build_tag_performance(self, user_id: str, params: dict) -> ExportTable:
        closed = await fetch_closed_trades(self.session, user_id, with_tags=True)
        labels = dict(
            (await self.session.execute(select(Tag.id, Tag.label).where(Tag.user_id == user_id))).all()
        )
        buckets: Dict[int, dict] = {}
        for t in closed:
            for tag_id in t.tag_ids:
                bucket = buckets.setdefault(tag_id, {"trades": 0, "wins": 0, "losses": 0, "sum": 0.0})
                bucket["trades"] += 1
                # 盈亏为 0 计为盈利
                if t.pnl >= 0:
                    bucket["wins"] += 1
                else:
                    bucket["losses"] += 1
                bucket["sum"] += t.pnl
        headers = ["tagId", "label", "trades", "wins", "losses", "winRate", "sumPnl", "avgPnl"]
        rows = []
        for tag_id in sorted(buckets):
            b = buckets[tag_id]
            rows.append({
                "tagId": tag_id,
                "label": labels.get(tag_id, ""),
                "trades": b["trades"],
                "wins": b["wins"],
                "losses": b["losses"],
                "winRate": round(b["wins"] / b["trades"], 4) if b["trades"] else 0,
                "sumPnl": round(b["sum"], 2),
                "avgPnl": round(b["sum"] / b["trades"], 2) if b["trades"] else 0,
            })
        return ExportTable(headers=headers, rows=rows, filename_base=FILENAME_BASES["tagPerformance"])

    async def _build_prop_evaluation(self, user_id: str, params: dict) -> ExportTable:
        progress = await PropEvaluationService(self.session).compute_progress(user_id)
        if progress is None:
            row = {h: "" for h in PROP_COLUMNS}
            row.update({"active": False, "status": "INACTIVE", "daysTraded": 0, "minTradingDays": 0})
        else:
            row = {
                "active": True,
                "phase": progress.phase,
                "status": progress.status,
                "profitTarget": progress.profit_target,
                "cumulativeProfit": progress.cumulative_profit,
                "progressPct": progress.progress_pct,
                "remainingTarget": progress.remaining_target,
                "remainingDailyLoss": progress.remaining_daily_loss,
                "remainingOverallLoss": progress.remaining_overall_loss,
                "daysTraded": progress.days_traded,
                "minTradingDays": progress.min_trading_days,
                "projectedDaysToTarget": progress.projected_days_to_target,
                "alerts": "|".join(f"{a['level']}:{a['code']}" for a in progress.alerts),
            }
        return ExportTable(headers=list(PROP_COLUMNS), rows=[row], filename_base=FILENAME_BASES["propEvaluation"])

    async def _build_chart_equity(self, user_id: str, params: dict) -> ExportTable:
        closed = await fetch_closed_trades(self.session, user_id)
        cumulative = 0.0
        rows = []
        for t in closed:
            cumulative += t.pnl
            rows.append({"time": t.exit_at, "equity": round(cumulative, 2)})
        return ExportTable(headers=["time", "equity"], rows=rows, filename_base=FILENAME_BASES["chartEquity"])

    async def build_table(self, user_id: str, export_type: str, params: Optional[dict] = None) -> ExportTable:
        params = params or {}
        builders = {
            "trades": self._build_trades,
            "goals": self._build_goals,
            "dailyPnl": self._build_daily_pnl,
            "tagPerformance": self._build_tag_performance,
            "propEvaluation": self._build_prop_evaluation,
            "chartEquity": self._build_chart_equity,
        }
        builder = builders.get(export_type)
        if builder is None:
            raise ExportValidationError(f"Unsupported export type: {export_type}")
        return await builder(user_id, params)

    # ---------- 流式 CSV ----------

    async def _stream_trades_csv(self, user_id: str, params: dict) -> AsyncIterator[str]:
        """按页读取交易并逐块产出 CSV；生成器只能消费一次"""
        headers = select_trade_columns(params.get("selectedColumns"))
        limit = int(params.get("limit") or settings.EXPORT_TRADES_DEFAULT_LIMIT)
        chunk_size = max(1, settings.EXPORT_STREAM_CHUNK_SIZE)
        yield to_csv(headers, [])
        sent = 0
        cursor = None
        while sent < limit:
            page, cursor = await self._trade_rows(user_id, params, headers, min(chunk_size, limit - sent), cursor)
            if not page:
                break
            yield _csv_lines(headers, page)
            sent += len(page)
            if len(page) < chunk_size:
                break

    @staticmethod
    async def _stream_table_csv(table: ExportTable) -> AsyncIterator[str]:
        chunk_size = max(1, settings.EXPORT_STREAM_CHUNK_SIZE)
        yield to_csv(table.headers, [])
        for start in range(0, len(table.rows), chunk_size):
            yield _csv_lines(table.headers, table.rows[start:start + chunk_size])

    async def build_export(
        self, user_id: str, export_type: str, export_format: str, params: Optional[dict] = None
    ) -> ExportPayload:
        params = validate_export_request(export_type, export_format, params)
        content_type = CONTENT_TYPES[export_format]
        threshold = settings.EXPORT_STREAM_THRESHOLD

        if export_format == "csv" and export_type == "trades":
            expected = await self.count_trades(user_id, params)
            if settings.FORCE_STREAM_EXPORT or expected > threshold:
                logger.info(f"Streaming trades export: user={user_id} rows~{expected}")
                return ExportPayload(
                    filename=f"{FILENAME_BASES['trades']}.csv",
                    content_type=content_type,
                    data=self._stream_trades_csv(user_id, params),
                    streamed=True,
                )

        table = await self.build_table(user_id, export_type, params)

        if export_format == "csv":
            if settings.FORCE_STREAM_EXPORT or len(table.rows) > threshold:
                return ExportPayload(
                    filename=f"{table.filename_base}.csv",
                    content_type=content_type,
                    data=self._stream_table_csv(table),
                    streamed=True,
                )
            return ExportPayload(
                filename=f"{table.filename_base}.csv",
                content_type=content_type,
                data=to_csv(table.headers, table.rows),
            )
        if export_format == "json":
            return ExportPayload(
                filename=f"{table.filename_base}.json", content_type=content_type, data=to_json(table.rows)
            )
        if export_format == "xlsx":
            return ExportPayload(
                filename=f"{table.filename_base}.xlsx",
                content_type=content_type,
                data=to_xlsx(table.headers, table.rows),
            )
        # png：绘图是 CPU 密集操作，放到线程中执行
        image = await asyncio.to_thread(render_equity_png, table.rows)
        return ExportPayload(filename="equity-chart.png", content_type=content_type, data=image)
