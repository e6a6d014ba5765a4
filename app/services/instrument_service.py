"""合约参考数据：只读访问与初始化种子"""
from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.instrument import Instrument

logger = logging.getLogger(__name__)

DEFAULT_INSTRUMENTS = [
    {"symbol": "ES", "name": "E-Mini S&P 500", "category": "Futures", "currency": "USD", "tick_size": 0.25, "contract_multiplier": 50},
    {"symbol": "NQ", "name": "E-Mini Nasdaq 100", "category": "Futures", "currency": "USD", "tick_size": 0.25, "contract_multiplier": 20},
    {"symbol": "GC", "name": "Gold Futures", "category": "Futures", "currency": "USD", "tick_size": 0.1, "contract_multiplier": 100},
    {"symbol": "BTCUSD", "name": "Bitcoin", "category": "Crypto", "currency": "USD", "tick_size": 1, "contract_multiplier": None},
    {"symbol": "EURUSD", "name": "Euro / US Dollar", "category": "Forex", "currency": "USD", "tick_size": 0.0001, "contract_multiplier": None},
]


class InstrumentService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, instrument_id: int) -> Optional[Instrument]:
        return await self.session.get(Instrument, instrument_id)

    async def list_active(self) -> List[Instrument]:
        result = await self.session.execute(
            select(Instrument).where(Instrument.is_active.is_(True)).order_by(Instrument.symbol.asc())
        )
        return list(result.scalars().all())

    async def ensure_defaults(self) -> int:
        """表为空时写入默认合约，返回写入条数"""
        count = (await self.session.execute(select(func.count(Instrument.id)))).scalar() or 0
        if count:
            return 0
        for spec in DEFAULT_INSTRUMENTS:
            self.session.add(Instrument(**spec))
        await self.session.commit()
        logger.info(f"Seeded {len(DEFAULT_INSTRUMENTS)} default instruments")
        return len(DEFAULT_INSTRUMENTS)
