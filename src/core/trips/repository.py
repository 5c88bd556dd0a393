# src/core/trips/repository.py
"""
Репозитории бронирований и доплат.

Отметки started_at/completed_at ставятся условным UPDATE: повторный вызов
не перезаписывает уже установленную отметку.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from src.common.constants import TERMINAL_RESERVATION_STATUSES, ReservationStatus, TypeMsg
from src.common.logger import log_info
from src.core.trips.models import Reservation, UnpaidChargesSummary
from src.infra.database import DatabaseManager

_RESERVATION_COLUMNS = """
    id, quote_id, user_id, assigned_driver_id, status, itinerary,
    started_at, completed_at, created_at, updated_at
"""

_TERMINAL_VALUES = [s.value for s in TERMINAL_RESERVATION_STATUSES]


class ReservationRepository:
    """Репозиторий бронирований."""

    def __init__(self, db: DatabaseManager) -> None:
        """
        Args:
            db: Менеджер базы данных (Dependency Injection)
        """
        self._db = db

    async def get_by_id(self, reservation_id: str) -> Optional[Reservation]:
        """
        Получает бронирование по ID.

        Returns:
            Бронирование или None
        """
        row = await self._db.fetchrow(
            f"SELECT {_RESERVATION_COLUMNS} FROM reservations WHERE id = $1",
            reservation_id,
        )
        return self._row_to_reservation(row) if row else None

    async def find_active_by_driver(
        self,
        driver_id: str,
        exclude_reservation_id: str | None = None,
    ) -> Optional[Reservation]:
        """Начатая и не завершённая поездка водителя (кроме exclude_reservation_id)."""
        row = await self._db.fetchrow(
            f"""
            SELECT {_RESERVATION_COLUMNS}
            FROM reservations
            WHERE assigned_driver_id = $1
              AND started_at IS NOT NULL
              AND completed_at IS NULL
              AND ($2::text IS NULL OR id <> $2)
            LIMIT 1
            """,
            driver_id,
            exclude_reservation_id,
        )
        return self._row_to_reservation(row) if row else None

    async def find_last_completed_by_driver(self, driver_id: str) -> Optional[Reservation]:
        """Последняя завершённая поездка водителя (для снятия задачи остывания)."""
        row = await self._db.fetchrow(
            f"""
            SELECT {_RESERVATION_COLUMNS}
            FROM reservations
            WHERE assigned_driver_id = $1 AND completed_at IS NOT NULL
            ORDER BY completed_at DESC
            LIMIT 1
            """,
            driver_id,
        )
        return self._row_to_reservation(row) if row else None

    async def find_active_trips(self) -> list[Reservation]:
        """Все начатые и не завершённые поездки в нетерминальном статусе."""
        rows = await self._db.fetch(
            f"""
            SELECT {_RESERVATION_COLUMNS}
            FROM reservations
            WHERE started_at IS NOT NULL
              AND completed_at IS NULL
              AND status <> ALL($1::text[])
            ORDER BY started_at ASC
            """,
            _TERMINAL_VALUES,
        )
        return [self._row_to_reservation(row) for row in rows]

    async def mark_started(self, reservation_id: str, started_at: datetime) -> bool:
        """
        Отмечает начало поездки.
        Частичный уникальный индекс не даёт водителю иметь две активные поездки.

        Returns:
            True если отметка поставлена сейчас
        """
        result = await self._db.execute(
            """
            UPDATE reservations
            SET started_at = $2, updated_at = $2
            WHERE id = $1 AND started_at IS NULL AND completed_at IS NULL
            """,
            reservation_id,
            started_at,
        )
        return result.endswith(" 1")

    async def mark_completed(self, reservation_id: str, completed_at: datetime) -> bool:
        """
        Отмечает завершение поездки.
        Статус становится COMPLETED, кроме уже терминальных (CANCELLED, REFUNDED).

        Returns:
            True если отметка поставлена сейчас
        """
        result = await self._db.execute(
            """
            UPDATE reservations
            SET completed_at = $2,
                status = CASE WHEN status = ANY($3::text[]) THEN status ELSE $4 END,
                updated_at = $2
            WHERE id = $1 AND started_at IS NOT NULL AND completed_at IS NULL
            """,
            reservation_id,
            completed_at,
            _TERMINAL_VALUES,
            ReservationStatus.COMPLETED.value,
        )
        if result.endswith(" 1"):
            await log_info(f"Поездка {reservation_id} отмечена завершённой", type_msg=TypeMsg.DEBUG)
            return True
        return False

    def _row_to_reservation(self, row) -> Reservation:
        """Конвертирует строку БД в модель Reservation."""
        return Reservation.model_validate({
            "id": row["id"],
            "quote_id": row["quote_id"],
            "user_id": row["user_id"],
            "assigned_driver_id": row["assigned_driver_id"],
            "status": row["status"],
            "itinerary": row["itinerary"] or [],
            "started_at": row["started_at"],
            "completed_at": row["completed_at"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        })


class ChargeRepository:
    """Репозиторий доплат к бронированиям."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def get_unpaid_summary(self, reservation_id: str, default_currency: str = "INR") -> UnpaidChargesSummary:
        """Сумма и количество неоплаченных доплат."""
        row = await self._db.fetchrow(
            """
            SELECT COALESCE(SUM(amount), 0) AS amount,
                   COUNT(*) AS count,
                   MIN(currency) AS currency
            FROM reservation_charges
            WHERE reservation_id = $1 AND is_paid = FALSE
            """,
            reservation_id,
        )
        if row is None:
            return UnpaidChargesSummary(currency=default_currency)
        return UnpaidChargesSummary(
            amount=float(row["amount"]),
            count=int(row["count"]),
            currency=row["currency"] or default_currency,
        )
