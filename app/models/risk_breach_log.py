from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, DECIMAL, Index
from app.models.db import Base


class BreachType(str, Enum):
    DAILY_LOSS = "DAILY_LOSS"
    MAX_CONSECUTIVE_LOSSES = "MAX_CONSECUTIVE_LOSSES"


class RiskBreachLog(Base):
    """风控触发记录（仅追加）"""
    __tablename__ = "risk_breach_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    type = Column(String(32), nullable=False)
    message = Column(String(255), nullable=False)
    value = Column(DECIMAL(20, 4), nullable=True)
    limit = Column(DECIMAL(20, 4), nullable=True)

    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_breach_user_type_created", "user_id", "type", "created_at"),
    )
