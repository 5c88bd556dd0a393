# src/core/quotes/models.py
"""
Модели заявок (квот) на аренду транспорта с водителем.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from src.common.clock import utc_now
from src.common.constants import QuoteStatus, StopLeg, TripType
from src.core.pricing.models import PricingBreakdown


class ItineraryStop(BaseModel):
    """Остановка маршрута."""

    location_name: str = Field(..., description="Название точки")
    latitude: float = Field(..., ge=-90.0, le=90.0, description="Широта")
    longitude: float = Field(..., ge=-180.0, le=180.0, description="Долгота")
    arrival_time: datetime = Field(..., description="Время прибытия")
    departure_time: Optional[datetime] = Field(None, description="Время отправления")
    stop_order: int = Field(0, ge=0, description="Порядковый номер")
    leg: StopLeg = Field(StopLeg.OUTBOUND, description="Направление")
    is_driver_staying: bool = Field(False, description="Водитель остаётся на точке")
    staying_duration_hours: Optional[float] = Field(None, ge=0.0, description="Длительность стоянки")

    class Config:
        from_attributes = True

    @property
    def latest_time(self) -> datetime:
        """Позднейшее время на точке (отправление, если есть)."""
        if self.departure_time is not None and self.departure_time > self.arrival_time:
            return self.departure_time
        return self.arrival_time


class SelectedVehicle(BaseModel):
    """Выбранная в заявке машина."""

    vehicle_id: str
    quantity: int = Field(1, ge=1)


class RouteLeg(BaseModel):
    """Рассчитанный участок маршрута."""

    total_distance_km: float = Field(0.0, ge=0.0)
    total_duration_hours: float = Field(0.0, ge=0.0)


class RouteData(BaseModel):
    """Рассчитанный маршрут туда и обратно."""

    model_config = ConfigDict(populate_by_name=True)

    outbound: Optional[RouteLeg] = None
    return_leg: Optional[RouteLeg] = Field(None, alias="return")

    @property
    def total_distance_km(self) -> float:
        outbound = self.outbound.total_distance_km if self.outbound else 0.0
        back = self.return_leg.total_distance_km if self.return_leg else 0.0
        return outbound + back


class Quote(BaseModel):
    """Модель заявки."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="UUID заявки")
    user_id: str = Field(..., description="ID заказчика")
    trip_name: str = Field("", description="Название поездки")
    trip_type: TripType = Field(TripType.ONE_WAY, description="Тип поездки")
    status: QuoteStatus = Field(QuoteStatus.DRAFT, description="Статус заявки")
    current_step: int = Field(1, ge=1, description="Шаг заполнения заявки")

    # Маршрут и выбор
    itinerary: list[ItineraryStop] = Field(default_factory=list, description="Остановки")
    selected_vehicles: list[SelectedVehicle] = Field(default_factory=list, description="Машины")
    selected_amenities: list[str] = Field(default_factory=list, description="ID удобств")
    route_data: Optional[RouteData] = Field(None, description="Рассчитанный маршрут")

    # Назначение и цена
    pricing: Optional[PricingBreakdown] = Field(None, description="Разбивка стоимости")
    assigned_driver_id: Optional[str] = Field(None, description="Назначенный водитель")
    actual_driver_rate: Optional[float] = Field(None, description="Ставка назначенного водителя")

    # Временные метки
    quoted_at: Optional[datetime] = Field(None, description="Время выставления цены")
    pricing_last_updated_at: Optional[datetime] = Field(None, description="Время пересчёта")
    created_at: datetime = Field(default_factory=utc_now, description="Время создания")
    updated_at: Optional[datetime] = Field(None, description="Время изменения")
    is_deleted: bool = Field(False, description="Мягко удалена")

    class Config:
        from_attributes = True

    @property
    def has_driver(self) -> bool:
        return self.assigned_driver_id is not None

    def payment_deadline(self, window_hours: float) -> Optional[datetime]:
        """Конец окна оплаты (quoted_at + window_hours)."""
        if self.quoted_at is None:
            return None
        return self.quoted_at + timedelta(hours=window_hours)

    def is_within_payment_window(self, now: datetime, window_hours: float) -> bool:
        deadline = self.payment_deadline(window_hours)
        return deadline is not None and now < deadline


class QuoteRecalculation(BaseModel):
    """Результат пересчёта заявки."""

    success: bool
    requires_vehicle_reselection: bool = False
    unavailable_vehicle_ids: list[str] = Field(default_factory=list)
    driver_changed: bool = False
    quote: Optional[Quote] = None
    message: str = ""
