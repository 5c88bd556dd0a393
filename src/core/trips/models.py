# src/core/trips/models.py
"""
Модели бронирований (поездок), доплат и геолокации.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from src.common.clock import utc_now
from src.common.constants import (
    TERMINAL_RESERVATION_STATUSES,
    LocationUpdateStatus,
    ReservationStatus,
)
from src.core.quotes.models import ItineraryStop


class Reservation(BaseModel):
    """Оплаченная поездка, созданная из заявки."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="UUID бронирования")
    quote_id: str = Field(..., description="Исходная заявка")
    user_id: Optional[str] = Field(None, description="Заказчик")
    assigned_driver_id: Optional[str] = Field(None, description="Водитель")
    status: ReservationStatus = Field(ReservationStatus.CONFIRMED, description="Статус")
    itinerary: list[ItineraryStop] = Field(default_factory=list, description="Маршрут")
    started_at: Optional[datetime] = Field(None, description="Начало поездки")
    completed_at: Optional[datetime] = Field(None, description="Завершение поездки")
    created_at: datetime = Field(default_factory=utc_now, description="Время создания")
    updated_at: Optional[datetime] = Field(None, description="Время изменения")

    class Config:
        from_attributes = True

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RESERVATION_STATUSES

    @property
    def is_started(self) -> bool:
        return self.started_at is not None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    @property
    def is_active_trip(self) -> bool:
        """Поездка начата и не завершена."""
        return self.is_started and not self.is_completed

    @property
    def trip_start_at(self) -> Optional[datetime]:
        if not self.itinerary:
            return None
        return min(stop.arrival_time for stop in self.itinerary)

    @property
    def trip_end_at(self) -> Optional[datetime]:
        """Плановое окончание поездки по маршруту."""
        if not self.itinerary:
            return None
        return max(stop.latest_time for stop in self.itinerary)


class UnpaidChargesSummary(BaseModel):
    """Сумма неоплаченных доплат."""

    amount: float = 0.0
    currency: str = "INR"
    count: int = 0

    @property
    def has_unpaid(self) -> bool:
        return self.count > 0 and self.amount > 0


class LocationRecord(BaseModel):
    """Последняя известная позиция водителя в поездке."""

    reservation_id: str
    driver_id: str
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    accuracy: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None
    captured_at: datetime = Field(default_factory=utc_now)


class LocationUpdateResult(BaseModel):
    """Результат приёма геолокации."""

    status: LocationUpdateStatus
    location: Optional[LocationRecord] = None
    retry_after_ms: Optional[int] = None

    @property
    def accepted(self) -> bool:
        return self.status == LocationUpdateStatus.ACCEPTED
