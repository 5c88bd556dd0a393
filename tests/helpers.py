# tests/helpers.py
"""
Двойники и фабрики для тестов: управляемые часы, Redis в памяти, модели.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from src.common.clock import to_millis
from src.common.constants import DriverStatus, QuoteStatus, ReservationStatus, StopLeg
from src.core.drivers.models import Driver
from src.core.quotes.models import ItineraryStop, Quote, RouteData, RouteLeg, SelectedVehicle
from src.core.trips.models import Reservation
from src.infra.job_queue import CANCEL_LUA, CLAIM_LUA, RECOVER_LUA, RELEASE_LUA, SCHEDULE_LUA


NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


# =============================================================================
# ВРЕМЯ
# =============================================================================

class FrozenClock:
    """Управляемые часы: тесты двигают время вручную."""

    def __init__(self, start: datetime = NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


# =============================================================================
# REDIS В ПАМЯТИ
# =============================================================================

class InMemoryRedis:
    """
    Двойник RedisClient: тот же набор методов поверх словарей.
    TTL считается по переданным часам.
    """

    def __init__(self, clock: Optional[FrozenClock] = None) -> None:
        self._clock = clock or FrozenClock()
        self.strings: dict[str, tuple[str, Optional[int]]] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self._script_failures: dict[str, Exception] = {}

    def _now_ms(self) -> int:
        return to_millis(self._clock())

    def _alive(self, key: str) -> bool:
        item = self.strings.get(key)
        if item is None:
            return False
        _, expires_at = item
        if expires_at is not None and self._now_ms() >= expires_at:
            del self.strings[key]
            return False
        return True

    # строки

    async def get(self, key: str) -> str | None:
        return self.strings[key][0] if self._alive(key) else None

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        expires_at = self._now_ms() + ttl * 1000 if ttl else None
        self.strings[key] = (value, expires_at)
        return True

    async def set_px(self, key: str, value: str, ttl_ms: int) -> bool:
        self.strings[key] = (value, self._now_ms() + ttl_ms)
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self.strings.pop(key, None)
        return removed

    async def exists(self, key: str) -> bool:
        return self._alive(key)

    async def get_model(self, key: str, model_class):
        data = await self.get(key)
        return model_class.model_validate_json(data) if data is not None else None

    async def set_model(self, key: str, model, ttl: int | None = None) -> bool:
        return await self.set(key, model.model_dump_json(), ttl=ttl)

    async def get_json(self, key: str):
        data = await self.get(key)
        return json.loads(data) if data is not None else None

    async def set_json(self, key: str, data, ttl: int | None = None) -> bool:
        return await self.set(key, json.dumps(data, default=str), ttl=ttl)

    # хеши

    async def hget(self, name: str, key: str) -> str | None:
        return self.hashes.get(name, {}).get(key)

    async def hset(self, name: str, key: str, value: str) -> int:
        bucket = self.hashes.setdefault(name, {})
        created = key not in bucket
        bucket[key] = value
        return int(created)

    async def hexists(self, name: str, key: str) -> bool:
        return key in self.hashes.get(name, {})

    async def hlen(self, name: str) -> int:
        return len(self.hashes.get(name, {}))

    # отсортированные множества

    async def zrangebyscore(self, name, min_score, max_score, limit: int | None = None) -> list[str]:
        low = float(min_score)
        high = float(max_score)
        items = sorted(
            (score, member) for member, score in self.zsets.get(name, {}).items() if low <= score <= high
        )
        members = [member for _, member in items]
        return members[:limit] if limit is not None else members

    async def zcard(self, name: str) -> int:
        return len(self.zsets.get(name, {}))

    # скрипты очереди задач: каждый вызов атомарен, как EVALSHA

    def fail_next_script(self, source: str, error: Exception) -> None:
        """Следующий вызов скрипта source упадёт с error, не изменив данные."""
        self._script_failures[source] = error

    async def eval_script(self, source: str, keys: list[str], args: list[Any]) -> Any:
        error = self._script_failures.pop(source, None)
        if error is not None:
            raise error
        handlers = {
            SCHEDULE_LUA: self._schedule,
            CANCEL_LUA: self._cancel,
            CLAIM_LUA: self._claim,
            RELEASE_LUA: self._release,
            RECOVER_LUA: self._recover,
        }
        return handlers[source](keys, args)

    def _schedule(self, keys: list[str], args: list[Any]) -> int:
        payload, pending = self.hashes.setdefault(keys[0], {}), self.zsets.setdefault(keys[1], {})
        active, leases = self.hashes.setdefault(keys[2], {}), self.zsets.setdefault(keys[3], {})
        member, raw, score, supersede = args
        if supersede == "1":
            active.pop(member, None)
            leases.pop(member, None)
        elif member in active:
            return 0
        if member in payload:
            return 0
        payload[member] = raw
        pending[member] = float(score)
        return 1

    def _cancel(self, keys: list[str], args: list[Any]) -> int:
        pending, payload = self.zsets.setdefault(keys[0], {}), self.hashes.setdefault(keys[1], {})
        member = args[0]
        if pending.pop(member, None) is None:
            return 0
        payload.pop(member, None)
        return 1

    def _claim(self, keys: list[str], args: list[Any]) -> str | None:
        pending, payload = self.zsets.setdefault(keys[0], {}), self.hashes.setdefault(keys[1], {})
        active, leases = self.hashes.setdefault(keys[2], {}), self.zsets.setdefault(keys[3], {})
        member, lease_until = args
        if pending.pop(member, None) is None:
            return None
        raw = payload.pop(member, None)
        if raw is None:
            return None
        active[member] = raw
        leases[member] = float(lease_until)
        return raw

    def _release(self, keys: list[str], args: list[Any]) -> int:
        active, leases = self.hashes.setdefault(keys[0], {}), self.zsets.setdefault(keys[1], {})
        member, job_id = args
        raw = active.get(member)
        if raw is None or json.loads(raw)["job_id"] != job_id:
            return 0
        del active[member]
        leases.pop(member, None)
        return 1

    def _recover(self, keys: list[str], args: list[Any]) -> int:
        leases, active = self.zsets.setdefault(keys[0], {}), self.hashes.setdefault(keys[1], {})
        payload, pending = self.hashes.setdefault(keys[2], {}), self.zsets.setdefault(keys[3], {})
        member, score = args
        if leases.pop(member, None) is None:
            return 0
        raw = active.pop(member, None)
        if raw is None or member in payload:
            return 0
        payload[member] = raw
        pending[member] = float(score)
        return 1

    async def health_check(self) -> bool:
        return True


# =============================================================================
# ФАБРИКИ МОДЕЛЕЙ
# =============================================================================

def make_stop(
    arrival: datetime,
    departure: datetime | None = None,
    order: int = 0,
    leg: StopLeg = StopLeg.OUTBOUND,
    **kwargs: Any,
) -> ItineraryStop:
    return ItineraryStop(
        location_name=kwargs.pop("location_name", f"Точка {order}"),
        latitude=kwargs.pop("latitude", 12.97),
        longitude=kwargs.pop("longitude", 77.59),
        arrival_time=arrival,
        departure_time=departure,
        stop_order=order,
        leg=leg,
        **kwargs,
    )


def make_quote(**overrides: Any) -> Quote:
    start = overrides.pop("start", NOW + timedelta(days=3))
    data: dict[str, Any] = {
        "id": "quote-1",
        "user_id": "user-1",
        "trip_name": "Поездка в Майсур",
        "status": QuoteStatus.DRAFT,
        "current_step": 5,
        "itinerary": [
            make_stop(start, order=0),
            make_stop(start + timedelta(hours=10), order=1),
        ],
        "selected_vehicles": [SelectedVehicle(vehicle_id="veh-1", quantity=1)],
        "route_data": RouteData(outbound=RouteLeg(total_distance_km=100.0, total_duration_hours=3.0)),
        "created_at": NOW - timedelta(days=1),
    }
    data.update(overrides)
    return Quote(**data)


def make_driver(**overrides: Any) -> Driver:
    data: dict[str, Any] = {
        "id": "driver-1",
        "full_name": "Ravi Kumar",
        "status": DriverStatus.AVAILABLE,
        "hourly_rate": 200.0,
        "is_onboarded": True,
    }
    data.update(overrides)
    return Driver(**data)


def make_reservation(**overrides: Any) -> Reservation:
    start = overrides.pop("start", NOW - timedelta(hours=2))
    data: dict[str, Any] = {
        "id": "res-1",
        "quote_id": "quote-1",
        "user_id": "user-1",
        "assigned_driver_id": "driver-1",
        "status": ReservationStatus.CONFIRMED,
        "itinerary": [
            make_stop(start, order=0),
            make_stop(start + timedelta(hours=10), order=1),
        ],
    }
    data.update(overrides)
    return Reservation(**data)


