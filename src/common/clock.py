# src/common/clock.py
"""
Источник текущего времени.
Сервисы принимают clock через конструктор, тесты подменяют его.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    """Текущее время в UTC (timezone-aware)."""
    return datetime.now(timezone.utc)


def to_millis(moment: datetime) -> int:
    """Переводит datetime в целые миллисекунды Unix-времени (naive считается UTC)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - _EPOCH) // timedelta(milliseconds=1)
