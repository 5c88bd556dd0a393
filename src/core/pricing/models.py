# src/core/pricing/models.py
"""
Модели тарификации: тарифная конфигурация, машины, удобства и расчёт цены.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from src.common.clock import utc_now


class PricingConfig(BaseModel):
    """Активная тарифная конфигурация."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="ID конфигурации")
    fuel_price: float = Field(..., ge=0.0, description="Цена топлива за литр")
    average_driver_rate: float = Field(..., ge=0.0, description="Средняя ставка водителя в час")
    tax_percentage: float = Field(..., ge=0.0, description="Налог в процентах")
    night_charge_per_night: float = Field(0.0, ge=0.0, description="Надбавка за ночь")
    staying_charge_per_day: float = Field(0.0, ge=0.0, description="Надбавка за сутки стоянки")
    is_active: bool = Field(True, description="Активна ли конфигурация")
    created_at: datetime = Field(default_factory=utc_now, description="Время создания")

    class Config:
        from_attributes = True


class Vehicle(BaseModel):
    """Машина автопарка."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="ID машины")
    name: str = Field(..., description="Название")
    capacity: int = Field(0, ge=0, description="Количество мест")
    base_fare: float = Field(..., ge=0.0, description="Базовая стоимость")
    fuel_consumption: float = Field(..., ge=0.0, description="Расход топлива на км")
    is_active: bool = Field(True, description="Доступна для бронирования")

    class Config:
        from_attributes = True


class Amenity(BaseModel):
    """Дополнительное удобство (Wi-Fi, напитки и т.п.)."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="ID удобства")
    name: str = Field(..., description="Название")
    price: float = Field(0.0, ge=0.0, description="Цена (0 для бесплатных)")

    class Config:
        from_attributes = True

    @property
    def is_paid(self) -> bool:
        return self.price > 0


class PricingBreakdown(BaseModel):
    """Разбивка стоимости заявки со снимком тарифа на момент расчёта."""

    fuel_price_at_time: float = Field(0.0, description="Цена топлива на момент расчёта")
    average_driver_rate_at_time: float = Field(0.0, description="Средняя ставка водителя")
    tax_percentage_at_time: float = Field(0.0, description="Налог в процентах")

    base_fare: float = Field(0.0, description="Базовая стоимость машин")
    distance_fare: float = Field(0.0, description="Стоимость пробега")
    driver_charge: float = Field(0.0, description="Оплата водителя")
    night_charge: float = Field(0.0, description="Ночная надбавка")
    staying_charge: float = Field(0.0, description="Надбавка за стоянку")
    amenities_total: float = Field(0.0, description="Удобства")
    subtotal: float = Field(0.0, description="Сумма без налога")
    tax: float = Field(0.0, description="Налог")
    total: float = Field(0.0, description="Итого")

    driver_rate: Optional[float] = Field(None, description="Ставка, по которой посчитан driver_charge")
    duration_hours: float = Field(0.0, description="Длительность поездки в часах")
