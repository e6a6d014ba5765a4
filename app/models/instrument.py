from sqlalchemy import Column, Integer, String, DateTime, DECIMAL, Boolean, text
from app.models.db import Base


class Instrument(Base):
    """全局共享的合约参考数据（只读）"""
    __tablename__ = "instruments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String(32), nullable=False, unique=True)
    name = Column(String(128), nullable=True)
    category = Column(String(32), nullable=True)
    currency = Column(String(8), nullable=False, default="USD")
    tick_size = Column(DECIMAL(20, 6), nullable=True)
    # 为空或 <=0 时按 1 处理
    contract_multiplier = Column(DECIMAL(20, 6), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, server_default=text("CURRENT_TIMESTAMP"))
