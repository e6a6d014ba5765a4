"""目标 schemas"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.goal import GoalPeriod, GoalType


class GoalCreateRequest(BaseModel):
    type: GoalType
    period: GoalPeriod = GoalPeriod.MONTH
    target_value: float = Field(..., gt=0)
    start_date: datetime
    end_date: datetime
    window_days: Optional[int] = Field(None, ge=1, le=365)

    @model_validator(mode="after")
    def _check_window(self):
        if self.window_days is not None and self.type != GoalType.ROLLING_WINDOW_PNL:
            raise ValueError("window_days is only valid for ROLLING_WINDOW_PNL goals")
        return self


class GoalUpdateRequest(BaseModel):
    target_value: Optional[float] = Field(None, gt=0)
    current_value: Optional[float] = None
    achieved_at: Optional[datetime] = None


class GoalView(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    type: str
    period: str
    target_value: float
    current_value: float
    start_date: datetime
    end_date: datetime
    window_days: Optional[int] = None
    achieved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class GoalListResponse(BaseModel):
    status: str = "ok"
    total: int = 0
    items: list[GoalView] = []
