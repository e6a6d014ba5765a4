"""用户日志设置读取（权益基线与风控阈值）"""
from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.timeutil import utcnow
from app.models.journal_settings import JournalSettings

DEFAULT_RISK_PER_TRADE_PCT = 1.0
DEFAULT_MAX_DAILY_LOSS_PCT = 3.0


class JournalSettingsService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, user_id: str) -> Optional[JournalSettings]:
        result = await self.session.execute(
            select(JournalSettings).where(JournalSettings.user_id == user_id)
        )
        return result.scalars().first()

    async def get_or_create(self, user_id: str) -> JournalSettings:
        """首次访问时按默认值创建"""
        row = await self.get(user_id)
        if row:
            return row
        row = JournalSettings(
            user_id=user_id,
            initial_equity=settings.DEFAULT_INITIAL_EQUITY,
            risk_per_trade_pct=DEFAULT_RISK_PER_TRADE_PCT,
            max_daily_loss_pct=DEFAULT_MAX_DAILY_LOSS_PCT,
            max_consecutive_losses_threshold=settings.RISK_DEFAULT_MAX_CONSECUTIVE_LOSSES,
        )
        self.session.add(row)
        await self.session.commit()
        await self.session.refresh(row)
        return row

    async def initial_equity(self, user_id: str) -> float:
        row = await self.get(user_id)
        if row is None or row.initial_equity is None:
            return float(settings.DEFAULT_INITIAL_EQUITY)
        return float(row.initial_equity)

    async def stamp(self, user_id: str, rebuild: bool = False, validation: bool = False) -> None:
        """记录最近一次重建/校验时间（不提交，由调用方事务决定）"""
        row = await self.get(user_id)
        if row is None:
            return
        now = utcnow()
        if rebuild:
            row.last_equity_rebuild_at = now
        if validation:
            row.last_equity_validation_at = now
