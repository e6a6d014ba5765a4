from sqlalchemy import Column, Integer, String, DateTime, DECIMAL, text
from app.models.db import Base


class JournalSettings(Base):
    """每个用户一行：权益基线与风控阈值"""
    __tablename__ = "journal_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, unique=True)

    initial_equity = Column(DECIMAL(20, 2), nullable=False, default=100000)
    risk_per_trade_pct = Column(DECIMAL(10, 4), nullable=True)
    max_daily_loss_pct = Column(DECIMAL(10, 4), nullable=True)
    max_consecutive_losses_threshold = Column(Integer, nullable=True)

    last_equity_rebuild_at = Column(DateTime, nullable=True)
    last_equity_validation_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=text("CURRENT_TIMESTAMP"))
    updated_at = Column(DateTime, server_default=text("CURRENT_TIMESTAMP"), onupdate=text("CURRENT_TIMESTAMP"))
