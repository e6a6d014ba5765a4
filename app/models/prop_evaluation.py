from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, DECIMAL, Boolean, text, Index
from app.models.db import Base


class PropPhase(str, Enum):
    PHASE1 = "PHASE1"
    PHASE2 = "PHASE2"
    FUNDED = "FUNDED"


class PropStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PASSED = "PASSED"
    FAILED = "FAILED"


class PropEvaluation(Base):
    """自营考核账户；同一用户同时只保留一条 ACTIVE（由查询约束保证）"""
    __tablename__ = "prop_evaluations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    firm_name = Column(String(64), nullable=False)
    phase = Column(String(16), nullable=False, default=PropPhase.PHASE1.value)
    status = Column(String(16), nullable=False, default=PropStatus.ACTIVE.value)

    account_size = Column(DECIMAL(20, 2), nullable=False)
    profit_target = Column(DECIMAL(20, 2), nullable=False, default=0)
    max_daily_loss = Column(DECIMAL(20, 2), nullable=False, default=0)
    max_overall_loss = Column(DECIMAL(20, 2), nullable=False, default=0)
    trailing = Column(Boolean, nullable=False, default=False)
    min_trading_days = Column(Integer, nullable=False, default=0)
    consistency_band = Column(DECIMAL(10, 4), nullable=False, default=0)
    # 单笔风险上限（占账户初始权益的百分比）
    max_single_trade_risk = Column(DECIMAL(10, 4), nullable=True)

    cumulative_profit = Column(DECIMAL(20, 2), nullable=False, default=0)
    peak_equity = Column(DECIMAL(20, 2), nullable=True)

    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=text("CURRENT_TIMESTAMP"))
    updated_at = Column(DateTime, server_default=text("CURRENT_TIMESTAMP"), onupdate=text("CURRENT_TIMESTAMP"))

    __table_args__ = (
        Index("idx_prop_user_status", "user_id", "status"),
    )
