from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, DECIMAL, ForeignKey, text, Index, UniqueConstraint
from app.models.db import Base


class TradeDirection(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class TradeStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


class Trade(Base):
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    instrument_id = Column(Integer, ForeignKey("instruments.id"), nullable=False)

    direction = Column(String(8), nullable=False)
    entry_price = Column(DECIMAL(20, 6), nullable=False)
    # exit_price 与 exit_at 必须同时为空或同时有值
    exit_price = Column(DECIMAL(20, 6), nullable=True)
    quantity = Column(Integer, nullable=False)
    fees = Column(DECIMAL(20, 2), nullable=False, default=0)

    entry_at = Column(DateTime, nullable=False)
    exit_at = Column(DateTime, nullable=True)

    status = Column(String(16), nullable=False, default=TradeStatus.OPEN.value)
    # 写入时按统一公式计算的已实现盈亏快照，平仓前为空
    realized_pnl = Column(DECIMAL(20, 2), nullable=True)
    notes = Column(String(1000), nullable=True)

    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=text("CURRENT_TIMESTAMP"))
    updated_at = Column(DateTime, server_default=text("CURRENT_TIMESTAMP"), onupdate=text("CURRENT_TIMESTAMP"))

    __table_args__ = (
        Index("idx_trade_user_exit", "user_id", "exit_at"),
        Index("idx_trade_user_entry", "user_id", "entry_at"),
        Index("idx_trade_user_status", "user_id", "status"),
    )


class Tag(Base):
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    label = Column(String(64), nullable=False)
    color = Column(String(16), nullable=True)

    created_at = Column(DateTime, server_default=text("CURRENT_TIMESTAMP"))

    __table_args__ = (
        UniqueConstraint("user_id", "label", name="uq_tag_user_label"),
    )


class TradeTag(Base):
    __tablename__ = "trade_tags"

    trade_id = Column(Integer, ForeignKey("trades.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)

    __table_args__ = (
        Index("idx_trade_tag_tag", "tag_id"),
    )
