"""时间工具：数据库统一存储 naive UTC 时间"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def day_start(value: Union[date, datetime]) -> datetime:
    """归一化到 UTC 当日 00:00"""
    if isinstance(value, datetime):
        value = to_naive_utc(value).date()
    return datetime.combine(value, time.min)


def utc_day(value: datetime) -> date:
    return to_naive_utc(value).date()


_EPOCH = datetime(1970, 1, 1)


def epoch_ms(value: datetime) -> int:
    return (to_naive_utc(value) - _EPOCH) // timedelta(milliseconds=1)


def iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat().replace("+00:00", "Z")
