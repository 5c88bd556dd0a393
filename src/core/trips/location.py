# src/core/trips/location.py
"""
Приём геолокации водителя во время поездки.

Ключи Redis:
    location:latest:{reservation_id}            последняя позиция (JSON, TTL 24ч)
    location:throttle:{driver_id}:{reservation_id}  маркер троттлинга (мс принятия, TTL = интервал)

Пока маркер жив и моложе интервала, новые точки отклоняются без изменений.
Два одновременных запроса могут оба пройти проверку маркера: такой перебор допустим.
"""

from __future__ import annotations

from typing import Optional

from src.common.clock import Clock, to_millis, utc_now
from src.common.constants import ErrorCode, LocationUpdateStatus
from src.common.exceptions import NotFoundError, StateConflictError, ValidationError
from src.common.logger import log_debug
from src.core.notifications.service import Notifier
from src.core.trips.models import LocationRecord, LocationUpdateResult, Reservation
from src.core.trips.repository import ReservationRepository
from src.infra.redis_client import RedisClient


def validate_coordinates(latitude: float, longitude: float) -> None:
    """
    Raises:
        ValidationError: INVALID_LATITUDE, INVALID_LONGITUDE
    """
    if latitude is None or not -90 <= latitude <= 90:
        raise ValidationError(ErrorCode.INVALID_LATITUDE, "Широта должна быть в диапазоне [-90, 90]")
    if longitude is None or not -180 <= longitude <= 180:
        raise ValidationError(ErrorCode.INVALID_LONGITUDE, "Долгота должна быть в диапазоне [-180, 180]")


class LocationThrottle:
    """Кэш последней позиции водителя с ограничением частоты записи."""

    LATEST_PREFIX = "location:latest:"
    THROTTLE_PREFIX = "location:throttle:"

    def __init__(
        self,
        redis: RedisClient,
        reservation_repo: ReservationRepository,
        notifier: Notifier,
        throttle_ms: int | None = None,
        ttl_seconds: int | None = None,
        clock: Clock | None = None,
    ) -> None:
        if throttle_ms is None or ttl_seconds is None:
            from src.config import settings
            throttle_ms = throttle_ms if throttle_ms is not None else settings.location.LOCATION_THROTTLE_MS
            ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.location.LOCATION_TTL_SECONDS

        self._redis = redis
        self._reservations = reservation_repo
        self._notifier = notifier
        self._throttle_ms = throttle_ms
        self._ttl_seconds = ttl_seconds
        self._clock = clock or utc_now

    @classmethod
    def latest_key(cls, reservation_id: str) -> str:
        return f"{cls.LATEST_PREFIX}{reservation_id}"

    @classmethod
    def throttle_key(cls, driver_id: str, reservation_id: str) -> str:
        return f"{cls.THROTTLE_PREFIX}{driver_id}:{reservation_id}"

    async def _get_active_reservation(self, driver_id: str, reservation_id: str) -> Reservation:
        reservation = await self._reservations.get_by_id(reservation_id)
        if reservation is None or reservation.assigned_driver_id != driver_id:
            raise NotFoundError(ErrorCode.RESERVATION_NOT_FOUND, f"Бронирование {reservation_id} не найдено")
        if reservation.is_terminal:
            raise StateConflictError(ErrorCode.RESERVATION_TERMINAL, "Бронирование закрыто")
        if not reservation.is_started:
            raise StateConflictError(ErrorCode.TRIP_NOT_STARTED, "Поездка не начата")
        if reservation.is_completed:
            raise StateConflictError(ErrorCode.TRIP_ALREADY_COMPLETED, "Поездка уже завершена")
        return reservation

    async def _throttled_for(self, driver_id: str, reservation_id: str, now_ms: int) -> Optional[int]:
        """Сколько мс осталось до следующей разрешённой записи (None = можно писать)."""
        marker = await self._redis.get(self.throttle_key(driver_id, reservation_id))
        if marker is None:
            return None
        try:
            accepted_ms = int(marker)
        except ValueError:
            return None
        elapsed = now_ms - accepted_ms
        if elapsed < self._throttle_ms:
            return self._throttle_ms - elapsed
        return None

    async def try_accept(
        self,
        driver_id: str,
        reservation_id: str,
        latitude: float,
        longitude: float,
        accuracy: float | None = None,
        heading: float | None = None,
        speed: float | None = None,
    ) -> LocationUpdateResult:
        """
        Принимает точку геолокации.

        Raises:
            ValidationError: некорректные координаты или ID
            NotFoundError: бронирование не найдено или назначено другому водителю
            StateConflictError: поездка не активна
        """
        validate_coordinates(latitude, longitude)
        if not driver_id:
            raise ValidationError(ErrorCode.INVALID_DRIVER_ID, "Некорректный ID водителя")
        if not reservation_id:
            raise ValidationError(ErrorCode.INVALID_RESERVATION_ID, "Некорректный ID бронирования")

        reservation = await self._get_active_reservation(driver_id, reservation_id)

        now = self._clock()
        now_ms = to_millis(now)
        retry_after = await self._throttled_for(driver_id, reservation_id, now_ms)
        if retry_after is not None:
            return LocationUpdateResult(status=LocationUpdateStatus.THROTTLED, retry_after_ms=retry_after)

        record = LocationRecord(
            reservation_id=reservation_id,
            driver_id=driver_id,
            latitude=latitude,
            longitude=longitude,
            accuracy=accuracy,
            heading=heading,
            speed=speed,
            captured_at=now,
        )

        await self._redis.set_px(self.throttle_key(driver_id, reservation_id), str(now_ms), self._throttle_ms)
        await self._redis.set_model(self.latest_key(reservation_id), record, ttl=self._ttl_seconds)

        self._notifier.location_updated({
            "reservation_id": reservation_id,
            "driver_id": driver_id,
            "user_id": reservation.user_id,
            **record.model_dump(mode="json", include={"latitude", "longitude", "heading", "speed", "captured_at"}),
        })

        return LocationUpdateResult(status=LocationUpdateStatus.ACCEPTED, location=record)

    async def get_latest_location(self, reservation_id: str) -> Optional[LocationRecord]:
        """Последняя позиция по поездке или None."""
        return await self._redis.get_model(self.latest_key(reservation_id), LocationRecord)

    async def clear(self, driver_id: str, reservation_id: str) -> None:
        """Удаляет позицию и маркер троттлинга (при завершении поездки)."""
        removed = await self._redis.delete(
            self.latest_key(reservation_id),
            self.throttle_key(driver_id, reservation_id),
        )
        await log_debug(f"Геолокация поездки {reservation_id} очищена ({removed} ключей)")
