"""已实现盈亏计算

全系统唯一的盈亏公式：交易写入、日权益、目标、风控、考核、导出全部复用，保证各处聚合一致。
    sign = +1 (LONG) / -1 (SHORT)
    pnl  = (exit - entry) * sign * quantity * multiplier - fees
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional, Union

Number = Union[int, float, Decimal]


def normalize_multiplier(multiplier: Optional[Number]) -> float:
    """合约乘数为空或 <=0 时按 1 处理"""
    if multiplier is None:
        return 1.0
    value = float(multiplier)
    return value if value > 0 else 1.0


def compute_realized_pnl(
    entry_price: Number,
    exit_price: Optional[Number],
    quantity: Number,
    direction: str,
    fees: Optional[Number] = 0,
    contract_multiplier: Optional[Number] = None,
) -> Optional[float]:
    """返回保留两位小数的已实现盈亏；未平仓返回 None"""
    if exit_price is None:
        return None
    sign = 1 if str(direction).upper() == "LONG" else -1
    multiplier = normalize_multiplier(contract_multiplier)
    gross = (float(exit_price) - float(entry_price)) * sign * float(quantity) * multiplier
    pnl = gross - float(fees or 0)
    return round(pnl, 2)


def trade_pnl(trade, contract_multiplier: Optional[Number] = None) -> Optional[float]:
    """对 ORM Trade 行应用统一公式"""
    return compute_realized_pnl(
        entry_price=trade.entry_price,
        exit_price=trade.exit_price,
        quantity=trade.quantity,
        direction=trade.direction,
        fees=trade.fees,
        contract_multiplier=contract_multiplier,
    )
