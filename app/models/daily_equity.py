from sqlalchemy import Column, Integer, String, DateTime, Date, DECIMAL, text, UniqueConstraint
from app.models.db import Base


class DailyEquity(Base):
    """按 (用户, UTC 日) 聚合的已实现盈亏与累计权益，完全可由交易重算"""
    __tablename__ = "daily_equity"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    date = Column(Date, nullable=False)

    realized_pnl = Column(DECIMAL(20, 2), nullable=False, default=0)
    cumulative_equity = Column(DECIMAL(20, 2), nullable=False)
    trade_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, server_default=text("CURRENT_TIMESTAMP"))
    updated_at = Column(DateTime, server_default=text("CURRENT_TIMESTAMP"), onupdate=text("CURRENT_TIMESTAMP"))

    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_daily_equity_user_date"),
    )
