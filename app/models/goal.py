from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, DECIMAL, text, Index
from app.models.db import Base


class GoalType(str, Enum):
    TOTAL_PNL = "TOTAL_PNL"
    TRADE_COUNT = "TRADE_COUNT"
    WIN_RATE = "WIN_RATE"
    PROFIT_FACTOR = "PROFIT_FACTOR"
    EXPECTANCY = "EXPECTANCY"
    AVG_LOSS_CAP = "AVG_LOSS_CAP"
    DAILY_GREEN_STREAK = "DAILY_GREEN_STREAK"
    ROLLING_30D_PNL = "ROLLING_30D_PNL"
    ROLLING_WINDOW_PNL = "ROLLING_WINDOW_PNL"


class GoalPeriod(str, Enum):
    MONTH = "MONTH"
    QUARTER = "QUARTER"
    YEAR = "YEAR"


class Goal(Base):
    __tablename__ = "goals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)

    type = Column(String(32), nullable=False)
    period = Column(String(16), nullable=False, default=GoalPeriod.MONTH.value)
    target_value = Column(DECIMAL(20, 4), nullable=False)
    current_value = Column(DECIMAL(20, 4), nullable=False, default=0)

    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    # 仅 ROLLING_WINDOW_PNL 使用
    window_days = Column(Integer, nullable=True)
    # 首次达成时写入，之后不再清空
    achieved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=text("CURRENT_TIMESTAMP"))
    updated_at = Column(DateTime, server_default=text("CURRENT_TIMESTAMP"), onupdate=text("CURRENT_TIMESTAMP"))

    __table_args__ = (
        Index("idx_goal_user_window", "user_id", "start_date", "end_date"),
    )
