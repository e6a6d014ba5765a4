"""交易与标签 schemas"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.trade import TradeDirection, TradeStatus


class TradeCreateRequest(BaseModel):
    instrument_id: int
    direction: TradeDirection
    entry_price: float = Field(..., gt=0)
    quantity: int = Field(..., gt=0)
    entry_at: datetime
    exit_price: Optional[float] = Field(None, gt=0)
    exit_at: Optional[datetime] = None
    fees: float = Field(0, ge=0)
    notes: Optional[str] = Field(None, max_length=1000)
    tag_ids: Optional[list[int]] = None
    tag_labels: Optional[list[str]] = None


class TradeUpdateRequest(BaseModel):
    exit_price: Optional[float] = Field(None, gt=0)
    exit_at: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=1000)
    status: Optional[TradeStatus] = None
    tag_ids: Optional[list[int]] = None
    tag_labels: Optional[list[str]] = None


class TradeView(BaseModel):
    id: int
    instrument_id: int
    direction: str
    entry_price: float
    exit_price: Optional[float] = None
    quantity: int
    fees: float = 0.0
    entry_at: datetime
    exit_at: Optional[datetime] = None
    status: str
    realized_pnl: Optional[float] = None
    notes: Optional[str] = None
    tag_ids: list[int] = []
    risk_pct: Optional[float] = None
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TradeListResponse(BaseModel):
    status: str = "ok"
    total: int = 0
    items: list[TradeView] = []


class TagCreateRequest(BaseModel):
    label: str = Field(..., min_length=1, max_length=64)
    color: Optional[str] = Field(None, max_length=16)


class TagView(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    label: str
    color: Optional[str] = None


def trade_view(result) -> TradeView:
    """TradeResult -> TradeView"""
    t = result.trade
    return TradeView(
        id=t.id,
        instrument_id=t.instrument_id,
        direction=t.direction,
        entry_price=float(t.entry_price),
        exit_price=float(t.exit_price) if t.exit_price is not None else None,
        quantity=t.quantity,
        fees=float(t.fees or 0),
        entry_at=t.entry_at,
        exit_at=t.exit_at,
        status=t.status,
        realized_pnl=result.realized_pnl,
        notes=t.notes,
        tag_ids=result.tag_ids,
        risk_pct=round(result.risk_pct, 4) if result.risk_pct is not None else None,
        deleted_at=t.deleted_at,
        created_at=t.created_at,
        updated_at=t.updated_at,
    )


class InstrumentView(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    symbol: str
    name: Optional[str] = None
    category: Optional[str] = None
    currency: Optional[str] = None
    tick_size: Optional[float] = None
    contract_multiplier: Optional[float] = None
