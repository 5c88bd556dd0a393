# src/core/earnings/service.py
"""
Начисление заработка водителю за завершённую поездку.

Повторное начисление исключено дважды: проверкой существующей записи и
уникальным индексом driver_payments.reservation_id (вставка ON CONFLICT DO NOTHING,
увеличение total_earnings только если вставка произошла).
"""

from __future__ import annotations

from typing import Optional

from asyncpg import Connection

from src.common.clock import Clock, utc_now
from src.common.constants import ErrorCode, TypeMsg
from src.common.exceptions import NotFoundError
from src.common.logger import log_info
from src.config.loader import LifecycleSettings
from src.core.drivers.models import DriverPayment
from src.core.drivers.repository import DriverPaymentRepository, DriverRepository
from src.core.quotes.repository import QuoteRepository
from src.core.trips.repository import ReservationRepository
from src.infra.transactions import TransactionalWriter


class DriverEarningsLedger:
    """Журнал заработка водителей."""

    def __init__(
        self,
        reservation_repo: ReservationRepository,
        quote_repo: QuoteRepository,
        driver_repo: DriverRepository,
        payment_repo: DriverPaymentRepository,
        writer: TransactionalWriter,
        lifecycle: LifecycleSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        if lifecycle is None:
            from src.config import settings
            lifecycle = settings.lifecycle

        self._reservations = reservation_repo
        self._quotes = quote_repo
        self._drivers = driver_repo
        self._payments = payment_repo
        self._writer = writer
        self._currency = lifecycle.DEFAULT_CURRENCY
        self._clock = clock or utc_now

    async def credit(self, reservation_id: str) -> Optional[DriverPayment]:
        """
        Начисляет водителю оплату из заявки за завершённую поездку.

        Returns:
            Созданное начисление или None, если начислять нечего (не завершена,
            нет водителя, уже начислено, нулевая оплата)

        Raises:
            NotFoundError: бронирование не найдено
        """
        reservation = await self._reservations.get_by_id(reservation_id)
        if reservation is None:
            raise NotFoundError(ErrorCode.RESERVATION_NOT_FOUND, f"Бронирование {reservation_id} не найдено")

        if not reservation.is_completed or not reservation.assigned_driver_id:
            await log_info(
                f"Начисление по {reservation_id} пропущено: поездка не завершена или нет водителя",
                type_msg=TypeMsg.DEBUG,
            )
            return None

        if await self._payments.exists_for_reservation(reservation_id):
            await log_info(f"Начисление по {reservation_id} уже существует", type_msg=TypeMsg.DEBUG)
            return None

        quote = await self._quotes.get_by_id(reservation.quote_id)
        amount = quote.pricing.driver_charge if quote and quote.pricing else 0.0
        if amount <= 0:
            await log_info(f"Начисление по {reservation_id} пропущено: оплата водителя 0", type_msg=TypeMsg.DEBUG)
            return None

        payment = DriverPayment(
            driver_id=reservation.assigned_driver_id,
            reservation_id=reservation_id,
            quote_id=reservation.quote_id,
            amount=amount,
            currency=self._currency,
            created_at=self._clock(),
        )

        async def work(conn: Connection | None) -> bool:
            if not await self._payments.create(payment, conn=conn):
                return False
            await self._drivers.increment_earnings(payment.driver_id, payment.amount, conn=conn)
            return True

        if not await self._writer.write("driver_earnings", work):
            await log_info(f"Начисление по {reservation_id} уже создано параллельно", type_msg=TypeMsg.DEBUG)
            return None

        await log_info(
            f"Водителю {payment.driver_id} начислено {payment.amount} {payment.currency} за {reservation_id}",
            type_msg=TypeMsg.INFO,
        )
        return payment
