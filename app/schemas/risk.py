"""风控 schemas"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class RiskBreachView(BaseModel):
    type: str
    message: str
    value: float
    limit: float


class RiskBreachLogView(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    type: str
    message: str
    value: Optional[float] = None
    limit: Optional[float] = None
    created_at: datetime


class RiskEvaluateResponse(BaseModel):
    status: str = "ok"
    breaches: list[RiskBreachView] = []


class RiskStatusResponse(BaseModel):
    status: str = "ok"
    user_id: str
    has_active_hard_breach: bool
    max_daily_loss_pct: Optional[float] = None
    max_consecutive_losses_threshold: Optional[int] = None
    risk_per_trade_pct: Optional[float] = None
    breaches_today: list[RiskBreachLogView] = []
