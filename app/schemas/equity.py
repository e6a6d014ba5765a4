"""日权益 schemas"""
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict


class DailyEquityView(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    date: date
    realized_pnl: float
    cumulative_equity: float
    trade_count: int


class DailyEquityResponse(BaseModel):
    status: str = "ok"
    user_id: str
    items: list[DailyEquityView] = []


class EquityRebuildResponse(BaseModel):
    status: str = "ok"
    user_id: str
    from_date: Optional[date] = None
    days: int
    trades: int


class EquityDiscrepancy(BaseModel):
    date: date
    field: str
    stored: Optional[float] = None
    expected: Optional[float] = None
    diff: Optional[float] = None


class EquityValidationResponse(BaseModel):
    user_id: str
    ok: bool
    expected_count: int
    stored_count: int
    discrepancies: list[EquityDiscrepancy] = []
    missing_days: list[date] = []
    extra_days: list[date] = []
