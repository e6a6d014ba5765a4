"""自营考核 schemas"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.prop_evaluation import PropPhase


class PropEvaluationUpsertRequest(BaseModel):
    firm_name: str = Field(..., min_length=1, max_length=64)
    phase: Optional[PropPhase] = None
    account_size: float = Field(..., gt=0)
    profit_target: float = Field(0, ge=0)
    max_daily_loss: float = Field(0, ge=0)
    max_overall_loss: float = Field(0, ge=0)
    trailing: bool = False
    min_trading_days: int = Field(0, ge=0)
    consistency_band: float = Field(0, ge=0)
    max_single_trade_risk: Optional[float] = Field(None, gt=0)
    start_date: Optional[datetime] = None


class PropEvaluationView(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    firm_name: str
    phase: str
    status: str
    account_size: float
    profit_target: float
    max_daily_loss: float
    max_overall_loss: float
    trailing: bool
    min_trading_days: int
    consistency_band: float
    max_single_trade_risk: Optional[float] = None
    cumulative_profit: float = 0.0
    peak_equity: Optional[float] = None
    start_date: datetime
    end_date: Optional[datetime] = None


class PropAlertView(BaseModel):
    code: str
    level: str
    message: str


class PropProgressView(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    phase: str
    status: str
    cumulative_profit: float
    profit_target: float
    progress_pct: float
    max_daily_loss: float
    max_overall_loss: float
    remaining_target: float
    remaining_daily_loss: float
    remaining_overall_loss: float
    days_traded: int
    min_trading_days: int
    projected_days_to_target: Optional[float] = None
    peak_equity: float = 0.0
    alerts: list[PropAlertView] = []


class PropProgressResponse(BaseModel):
    status: str = "ok"
    progress: Optional[PropProgressView] = None


class PropRolloverResponse(BaseModel):
    status: str = "ok"
    action: str
    current: Optional[PropEvaluationView] = None
    next: Optional[PropEvaluationView] = None
    progress: Optional[PropProgressView] = None
