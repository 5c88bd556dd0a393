# src/core/pricing/service.py
"""
Калькулятор стоимости заявки.
Чистая функция от маршрута, машин, удобств и тарифа: одинаковые входы дают одинаковый результат.
"""

from __future__ import annotations

import math
from typing import Iterable, Sequence

from src.core.pricing.models import Amenity, PricingBreakdown, PricingConfig, Vehicle
from src.core.quotes.models import ItineraryStop, RouteData

# Часы прибытия, за которые берётся ночная надбавка (22:00 - 05:59)
NIGHT_HOURS = frozenset({22, 23, 0, 1, 2, 3, 4, 5})

# Стоянка короче суток не тарифицируется
MIN_STAYING_HOURS = 24


def _money(value: float) -> float:
    return round(value, 2)


class PricingCalculator:
    """Калькулятор стоимости."""

    def base_fare(self, vehicles: Sequence[tuple[Vehicle, int]]) -> float:
        """Сумма базовых тарифов машин с учётом количества."""
        return sum(vehicle.base_fare * quantity for vehicle, quantity in vehicles)

    def distance_fare(
        self,
        total_distance_km: float,
        vehicles: Sequence[tuple[Vehicle, int]],
        fuel_price: float,
    ) -> float:
        """Пробег: расстояние x суммарный расход x цена топлива."""
        consumption = sum(vehicle.fuel_consumption * quantity for vehicle, quantity in vehicles)
        return total_distance_km * consumption * fuel_price

    def driver_charge(self, duration_hours: float, rate_per_hour: float) -> float:
        return duration_hours * rate_per_hour

    def night_charge(self, stops: Iterable[ItineraryStop], per_night: float) -> float:
        """Надбавка за каждую остановку с прибытием в ночные часы."""
        nights = sum(1 for stop in stops if stop.arrival_time.hour in NIGHT_HOURS)
        return nights * per_night

    def staying_charge(self, stops: Iterable[ItineraryStop], per_day: float) -> float:
        """Надбавка за стоянку водителя от суток, округление дней вверх."""
        total = 0.0
        for stop in stops:
            hours = stop.staying_duration_hours or 0
            if stop.is_driver_staying and hours >= MIN_STAYING_HOURS:
                total += math.ceil(hours / 24) * per_day
        return total

    def amenities_total(self, amenities: Iterable[Amenity]) -> float:
        return sum(amenity.price for amenity in amenities)

    def tax(self, subtotal: float, tax_percentage: float) -> float:
        return subtotal * tax_percentage / 100

    def calculate(
        self,
        *,
        stops: Sequence[ItineraryStop],
        vehicles: Sequence[tuple[Vehicle, int]],
        amenities: Sequence[Amenity],
        config: PricingConfig,
        route_data: RouteData | None,
        duration_hours: float,
        driver_rate: float | None = None,
    ) -> PricingBreakdown:
        """
        Полный расчёт стоимости.

        Args:
            stops: Все остановки (туда и обратно)
            vehicles: Пары (машина, количество)
            amenities: Выбранные удобства
            config: Активный тариф
            route_data: Рассчитанный маршрут (None = пробег не учитывается)
            duration_hours: Длительность поездки в часах
            driver_rate: Ставка водителя; None = средняя ставка из тарифа (оценка)

        Returns:
            Разбивка стоимости
        """
        rate = config.average_driver_rate if driver_rate is None else driver_rate
        distance_km = route_data.total_distance_km if route_data else 0.0

        base_fare = _money(self.base_fare(vehicles))
        distance_fare = _money(self.distance_fare(distance_km, vehicles, config.fuel_price))
        driver_charge = _money(self.driver_charge(duration_hours, rate))
        night_charge = _money(self.night_charge(stops, config.night_charge_per_night))
        staying_charge = _money(self.staying_charge(stops, config.staying_charge_per_day))
        amenities_total = _money(self.amenities_total(amenities))

        subtotal = _money(
            base_fare + distance_fare + driver_charge + night_charge + staying_charge + amenities_total
        )
        tax = _money(self.tax(subtotal, config.tax_percentage))

        return PricingBreakdown(
            fuel_price_at_time=config.fuel_price,
            average_driver_rate_at_time=config.average_driver_rate,
            tax_percentage_at_time=config.tax_percentage,
            base_fare=base_fare,
            distance_fare=distance_fare,
            driver_charge=driver_charge,
            night_charge=night_charge,
            staying_charge=staying_charge,
            amenities_total=amenities_total,
            subtotal=subtotal,
            tax=tax,
            total=_money(subtotal + tax),
            driver_rate=driver_rate,
            duration_hours=duration_hours,
        )
