# src/core/drivers/models.py
"""
Модели водителей и их выплат.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from src.common.clock import utc_now
from src.common.constants import DriverStatus


class Driver(BaseModel):
    """Модель водителя."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="UUID водителя")
    full_name: str = Field("", description="Имя")
    phone: Optional[str] = Field(None, description="Телефон")
    status: DriverStatus = Field(DriverStatus.OFFLINE, description="Статус")
    hourly_rate: float = Field(0.0, ge=0.0, description="Ставка в час")
    is_onboarded: bool = Field(False, description="Онбординг завершён")
    is_deleted: bool = Field(False, description="Мягко удалён")
    last_assigned_at: Optional[datetime] = Field(None, description="Последнее новое назначение")
    total_earnings: float = Field(0.0, ge=0.0, description="Накопленный заработок")
    created_at: datetime = Field(default_factory=utc_now, description="Время создания")
    updated_at: Optional[datetime] = Field(None, description="Время изменения")

    class Config:
        from_attributes = True

    @property
    def is_available(self) -> bool:
        return self.status == DriverStatus.AVAILABLE

    @property
    def is_on_trip(self) -> bool:
        return self.status == DriverStatus.ON_TRIP


class DriverPayment(BaseModel):
    """Начисление водителю за одну завершённую поездку."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="UUID начисления")
    driver_id: str = Field(..., description="ID водителя")
    reservation_id: str = Field(..., description="ID бронирования (уникален)")
    quote_id: str = Field(..., description="ID исходной заявки")
    amount: float = Field(..., gt=0.0, description="Сумма")
    currency: str = Field("INR", description="Валюта")
    created_at: datetime = Field(default_factory=utc_now, description="Время начисления")

    class Config:
        from_attributes = True
