# src/core/drivers/repository.py
"""
Репозитории водителей и выплат водителям.

Методы записи принимают необязательное соединение conn: внутри транзакции
запись идёт через него, иначе через пул. Ошибки записи пробрасываются,
чтобы транзакция откатилась, а задача очереди ушла на повтор.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from asyncpg import Connection

from src.common.constants import DriverStatus, TypeMsg
from src.common.logger import log_info
from src.core.drivers.models import Driver, DriverPayment
from src.infra.database import DatabaseManager

_DRIVER_COLUMNS = """
    id, full_name, phone, status, hourly_rate, is_onboarded, is_deleted,
    last_assigned_at, total_earnings, created_at, updated_at
"""


class DriverRepository:
    """Репозиторий водителей."""

    def __init__(self, db: DatabaseManager) -> None:
        """
        Args:
            db: Менеджер базы данных (Dependency Injection)
        """
        self._db = db

    async def get_by_id(self, driver_id: str) -> Optional[Driver]:
        """
        Получает водителя по ID.

        Returns:
            Водитель или None
        """
        row = await self._db.fetchrow(
            f"SELECT {_DRIVER_COLUMNS} FROM drivers WHERE id = $1 AND is_deleted = FALSE",
            driver_id,
        )
        return self._row_to_driver(row) if row else None

    async def find_available(self) -> list[Driver]:
        """
        Свободные водители с завершённым онбордингом.
        Упорядочены по давности последнего назначения (никогда не назначенные первыми).
        """
        rows = await self._db.fetch(
            f"""
            SELECT {_DRIVER_COLUMNS}
            FROM drivers
            WHERE status = $1
              AND is_onboarded = TRUE
              AND is_deleted = FALSE
            ORDER BY last_assigned_at ASC NULLS FIRST, created_at ASC
            """,
            DriverStatus.AVAILABLE.value,
        )
        return [self._row_to_driver(row) for row in rows]

    async def update_status(self, driver_id: str, status: DriverStatus, now: datetime) -> bool:
        """
        Обновляет статус водителя.

        Returns:
            True если водитель найден и обновлён
        """
        result = await self._db.execute(
            "UPDATE drivers SET status = $2, updated_at = $3 WHERE id = $1",
            driver_id,
            status.value,
            now,
        )
        await log_info(
            f"Статус водителя {driver_id} обновлён на {status.value}",
            type_msg=TypeMsg.DEBUG,
        )
        return result.endswith(" 1")

    async def touch_last_assigned(self, driver_id: str, assigned_at: datetime) -> None:
        """Отмечает новое назначение (для очерёдности выбора)."""
        await self._db.execute(
            "UPDATE drivers SET last_assigned_at = $2, updated_at = $2 WHERE id = $1",
            driver_id,
            assigned_at,
        )

    async def increment_earnings(
        self,
        driver_id: str,
        amount: float,
        conn: Connection | None = None,
    ) -> None:
        """Атомарно увеличивает total_earnings на amount."""
        executor: Any = conn or self._db
        await executor.execute(
            """
            UPDATE drivers
            SET total_earnings = total_earnings + $2, updated_at = NOW()
            WHERE id = $1
            """,
            driver_id,
            amount,
        )

    def _row_to_driver(self, row) -> Driver:
        """Конвертирует строку БД в модель Driver."""
        return Driver(
            id=row["id"],
            full_name=row["full_name"],
            phone=row["phone"],
            status=DriverStatus(row["status"]),
            hourly_rate=float(row["hourly_rate"]),
            is_onboarded=row["is_onboarded"],
            is_deleted=row["is_deleted"],
            last_assigned_at=row["last_assigned_at"],
            total_earnings=float(row["total_earnings"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class DriverPaymentRepository:
    """Репозиторий начислений водителям."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def exists_for_reservation(self, reservation_id: str) -> bool:
        """Есть ли уже начисление за бронирование."""
        value = await self._db.fetchval(
            "SELECT 1 FROM driver_payments WHERE reservation_id = $1",
            reservation_id,
        )
        return value is not None

    async def create(self, payment: DriverPayment, conn: Connection | None = None) -> bool:
        """
        Создаёт начисление.
        Повторное начисление за то же бронирование отклоняется уникальным индексом.

        Returns:
            True если запись создана, False если начисление уже было
        """
        executor: Any = conn or self._db
        inserted_id = await executor.fetchval(
            """
            INSERT INTO driver_payments (id, driver_id, reservation_id, quote_id, amount, currency, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (reservation_id) DO NOTHING
            RETURNING id
            """,
            payment.id,
            payment.driver_id,
            payment.reservation_id,
            payment.quote_id,
            payment.amount,
            payment.currency,
            payment.created_at,
        )
        return inserted_id is not None
