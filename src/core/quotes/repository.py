# src/core/quotes/repository.py
"""
Репозиторий заявок.

Маршрут, выбранные машины, удобства, маршрутные данные и разбивка цены
хранятся в JSONB. Окно поездки (window_start/window_end) дублируется в
колонки, чтобы искать пересечения по индексу.

Переходы статуса выполняются условным UPDATE ... WHERE status = ...:
повторная доставка задачи не может откатить заявку назад.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from src.common.constants import QuoteStatus, TypeMsg
from src.common.logger import log_info
from src.core.pricing.models import PricingBreakdown
from src.core.quotes.models import Quote
from src.infra.database import DatabaseManager

_QUOTE_COLUMNS = """
    id, user_id, trip_name, trip_type, status, current_step,
    itinerary, selected_vehicles, selected_amenities, route_data, pricing,
    assigned_driver_id, actual_driver_rate, quoted_at, pricing_last_updated_at,
    created_at, updated_at, is_deleted
"""

# Статусы, при которых водитель и машины заняты на окно поездки
BLOCKING_STATUSES = (
    QuoteStatus.PAID,
    QuoteStatus.ACCEPTED,
    QuoteStatus.QUOTED,
    QuoteStatus.NEGOTIATING,
)


def _window_bounds(quote: Quote) -> tuple[Optional[datetime], Optional[datetime]]:
    if not quote.itinerary:
        return None, None
    start = min(stop.arrival_time for stop in quote.itinerary)
    end = max(stop.latest_time for stop in quote.itinerary)
    return start, end


class QuoteRepository:
    """Репозиторий заявок."""

    def __init__(self, db: DatabaseManager) -> None:
        """
        Args:
            db: Менеджер базы данных (Dependency Injection)
        """
        self._db = db

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def get_by_id(self, quote_id: str) -> Optional[Quote]:
        """
        Получает заявку по ID.

        Returns:
            Заявка или None
        """
        row = await self._db.fetchrow(
            f"SELECT {_QUOTE_COLUMNS} FROM quotes WHERE id = $1 AND is_deleted = FALSE",
            quote_id,
        )
        return self._row_to_quote(row) if row else None

    async def find_by_status(self, status: QuoteStatus, limit: int = 500) -> list[Quote]:
        """Заявки в статусе status, старые первыми."""
        rows = await self._db.fetch(
            f"""
            SELECT {_QUOTE_COLUMNS}
            FROM quotes
            WHERE status = $1 AND is_deleted = FALSE
            ORDER BY created_at ASC
            LIMIT $2
            """,
            status.value,
            limit,
        )
        return [self._row_to_quote(row) for row in rows]

    async def find_booked_driver_ids(
        self,
        start: datetime,
        end: datetime,
        quoted_since: datetime,
        exclude_quote_id: str | None = None,
    ) -> set[str]:
        """
        Водители, занятые другими заявками в окне [start, end] (границы включительно).

        Заявка в статусе QUOTED держит водителя только пока не истекло окно оплаты
        (quoted_at >= quoted_since).
        """
        rows = await self._db.fetch(
            """
            SELECT DISTINCT assigned_driver_id
            FROM quotes
            WHERE status = ANY($1::text[])
              AND is_deleted = FALSE
              AND assigned_driver_id IS NOT NULL
              AND (status <> $2 OR quoted_at >= $3)
              AND ($4::text IS NULL OR id <> $4)
              AND window_start <= $6
              AND window_end >= $5
            """,
            [s.value for s in BLOCKING_STATUSES],
            QuoteStatus.QUOTED.value,
            quoted_since,
            exclude_quote_id,
            start,
            end,
        )
        return {row["assigned_driver_id"] for row in rows}

    async def find_booked_vehicle_ids(
        self,
        start: datetime,
        end: datetime,
        quoted_since: datetime,
        exclude_quote_id: str | None = None,
    ) -> set[str]:
        """Машины, занятые другими заявками в окне [start, end] (правила как у водителей)."""
        rows = await self._db.fetch(
            """
            SELECT DISTINCT v ->> 'vehicle_id' AS vehicle_id
            FROM quotes q
            CROSS JOIN LATERAL jsonb_array_elements(q.selected_vehicles) AS v
            WHERE q.status = ANY($1::text[])
              AND q.is_deleted = FALSE
              AND (q.status <> $2 OR q.quoted_at >= $3)
              AND ($4::text IS NULL OR q.id <> $4)
              AND q.window_start <= $6
              AND q.window_end >= $5
            """,
            [s.value for s in BLOCKING_STATUSES],
            QuoteStatus.QUOTED.value,
            quoted_since,
            exclude_quote_id,
            start,
            end,
        )
        return {row["vehicle_id"] for row in rows}

    # =========================================================================
    # ЗАПИСЬ
    # =========================================================================

    async def create(self, quote: Quote) -> Quote:
        """Создаёт заявку (окно поездки вычисляется из маршрута)."""
        window_start, window_end = _window_bounds(quote)
        await self._db.execute(
            """
            INSERT INTO quotes (
                id, user_id, trip_name, trip_type, status, current_step,
                itinerary, selected_vehicles, selected_amenities, route_data, pricing,
                assigned_driver_id, actual_driver_rate, quoted_at, pricing_last_updated_at,
                window_start, window_end, created_at, updated_at, is_deleted
            )
            VALUES (
                $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15,
                $16, $17, $18, $19, $20
            )
            """,
            quote.id,
            quote.user_id,
            quote.trip_name,
            quote.trip_type.value,
            quote.status.value,
            quote.current_step,
            [stop.model_dump(mode="json") for stop in quote.itinerary],
            [vehicle.model_dump(mode="json") for vehicle in quote.selected_vehicles],
            quote.selected_amenities,
            quote.route_data.model_dump(mode="json", by_alias=True) if quote.route_data else None,
            quote.pricing.model_dump(mode="json") if quote.pricing else None,
            quote.assigned_driver_id,
            quote.actual_driver_rate,
            quote.quoted_at,
            quote.pricing_last_updated_at,
            window_start,
            window_end,
            quote.created_at,
            quote.updated_at,
            quote.is_deleted,
        )
        await log_info(f"Заявка {quote.id} создана", type_msg=TypeMsg.DEBUG)
        return quote

    async def save_quoted(
        self,
        quote_id: str,
        *,
        pricing: PricingBreakdown,
        driver_id: str,
        driver_rate: float,
        quoted_at: datetime,
        from_statuses: tuple[QuoteStatus, ...],
    ) -> bool:
        """
        Переводит заявку в QUOTED с водителем и ценой.

        Returns:
            True если заявка была в одном из from_statuses и обновлена
        """
        result = await self._db.execute(
            """
            UPDATE quotes
            SET status = $2,
                pricing = $3,
                assigned_driver_id = $4,
                actual_driver_rate = $5,
                quoted_at = $6,
                pricing_last_updated_at = $6,
                updated_at = $6
            WHERE id = $1 AND status = ANY($7::text[])
            """,
            quote_id,
            QuoteStatus.QUOTED.value,
            pricing.model_dump(mode="json"),
            driver_id,
            driver_rate,
            quoted_at,
            [s.value for s in from_statuses],
        )
        return result.endswith(" 1")

    async def save_submitted(self, quote_id: str, *, pricing: PricingBreakdown, now: datetime) -> bool:
        """Переводит заявку в SUBMITTED с оценочной ценой и без водителя."""
        result = await self._db.execute(
            """
            UPDATE quotes
            SET status = $2,
                pricing = $3,
                assigned_driver_id = NULL,
                actual_driver_rate = NULL,
                pricing_last_updated_at = $4,
                updated_at = $4
            WHERE id = $1 AND status = ANY($5::text[])
            """,
            quote_id,
            QuoteStatus.SUBMITTED.value,
            pricing.model_dump(mode="json"),
            now,
            [QuoteStatus.DRAFT.value, QuoteStatus.SUBMITTED.value],
        )
        return result.endswith(" 1")

    async def mark_expired(self, quote_id: str, now: datetime) -> bool:
        """QUOTED -> EXPIRED с освобождением водителя."""
        result = await self._db.execute(
            """
            UPDATE quotes
            SET status = $2,
                assigned_driver_id = NULL,
                actual_driver_rate = NULL,
                updated_at = $3
            WHERE id = $1 AND status = $4
            """,
            quote_id,
            QuoteStatus.EXPIRED.value,
            now,
            QuoteStatus.QUOTED.value,
        )
        return result.endswith(" 1")

    async def mark_paid(self, quote_id: str, now: datetime) -> bool:
        """QUOTED -> PAID."""
        result = await self._db.execute(
            "UPDATE quotes SET status = $2, updated_at = $3 WHERE id = $1 AND status = $4",
            quote_id,
            QuoteStatus.PAID.value,
            now,
            QuoteStatus.QUOTED.value,
        )
        return result.endswith(" 1")

    def _row_to_quote(self, row) -> Quote:
        """Конвертирует строку БД в модель Quote."""
        return Quote.model_validate({
            "id": row["id"],
            "user_id": row["user_id"],
            "trip_name": row["trip_name"],
            "trip_type": row["trip_type"],
            "status": row["status"],
            "current_step": row["current_step"],
            "itinerary": row["itinerary"] or [],
            "selected_vehicles": row["selected_vehicles"] or [],
            "selected_amenities": row["selected_amenities"] or [],
            "route_data": row["route_data"],
            "pricing": row["pricing"],
            "assigned_driver_id": row["assigned_driver_id"],
            "actual_driver_rate": row["actual_driver_rate"],
            "quoted_at": row["quoted_at"],
            "pricing_last_updated_at": row["pricing_last_updated_at"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "is_deleted": row["is_deleted"],
        })
