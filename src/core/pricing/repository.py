# src/core/pricing/repository.py
"""
Репозиторий тарифов, машин и удобств.
"""

from __future__ import annotations

from typing import Optional

from src.common.logger import log_error
from src.core.pricing.models import Amenity, PricingConfig, Vehicle
from src.infra.database import DatabaseManager


class PricingRepository:
    """Чтение справочников для расчёта цены."""

    def __init__(self, db: DatabaseManager) -> None:
        """
        Args:
            db: Менеджер базы данных (Dependency Injection)
        """
        self._db = db

    async def get_active_config(self) -> Optional[PricingConfig]:
        """Последняя активная тарифная конфигурация или None."""
        try:
            row = await self._db.fetchrow(
                """
                SELECT id, fuel_price, average_driver_rate, tax_percentage,
                       night_charge_per_night, staying_charge_per_day, is_active, created_at
                FROM pricing_configs
                WHERE is_active = TRUE
                ORDER BY created_at DESC
                LIMIT 1
                """
            )
            return PricingConfig.model_validate(dict(row)) if row else None
        except Exception as e:
            await log_error(f"Ошибка получения тарифной конфигурации: {e}")
            return None

    async def get_vehicles_by_ids(self, vehicle_ids: list[str]) -> dict[str, Vehicle]:
        """Машины по списку ID (отсутствующие просто не попадают в результат)."""
        if not vehicle_ids:
            return {}
        try:
            rows = await self._db.fetch(
                """
                SELECT id, name, capacity, base_fare, fuel_consumption, is_active
                FROM vehicles
                WHERE id = ANY($1::text[])
                """,
                vehicle_ids,
            )
            return {row["id"]: Vehicle.model_validate(dict(row)) for row in rows}
        except Exception as e:
            await log_error(f"Ошибка получения машин {vehicle_ids}: {e}")
            return {}

    async def get_amenities_by_ids(self, amenity_ids: list[str]) -> list[Amenity]:
        if not amenity_ids:
            return []
        try:
            rows = await self._db.fetch(
                "SELECT id, name, price FROM amenities WHERE id = ANY($1::text[])",
                amenity_ids,
            )
            return [Amenity.model_validate(dict(row)) for row in rows]
        except Exception as e:
            await log_error(f"Ошибка получения удобств {amenity_ids}: {e}")
            return []
