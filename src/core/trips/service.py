# src/core/trips/service.py
"""
Жизненный цикл поездки: {не начата} -> {начата} -> {завершена}.

Начало и завершение ортогональны статусу бронирования
(CONFIRMED, COMPLETED, CANCELLED, REFUNDED); терминальные статусы не перезаписываются.

Отложенная работа:
- trip-auto-complete (correlation = reservation_id): через 24ч после планового конца поездки
- driver-cooldown (correlation = driver_id:reservation_id): водитель остаётся ON_TRIP до срабатывания
"""

from __future__ import annotations

from datetime import datetime, timedelta

import asyncpg

from src.common.clock import Clock, utc_now
from src.common.constants import (
    DriverStatus,
    ErrorCode,
    JobKind,
    TypeMsg,
)
from src.common.exceptions import NotFoundError, StateConflictError, ValidationError
from src.common.logger import log_error, log_info, log_warning
from src.config.loader import LifecycleSettings
from src.core.drivers.repository import DriverRepository
from src.core.earnings.service import DriverEarningsLedger
from src.core.notifications.dispatcher import SideEffectDispatcher
from src.core.notifications.service import Notifier
from src.core.trips.location import LocationThrottle
from src.core.trips.models import LocationUpdateResult, Reservation
from src.core.trips.repository import ChargeRepository, ReservationRepository
from src.infra.job_queue import JobQueue


def cooldown_correlation_id(driver_id: str, reservation_id: str) -> str:
    return f"{driver_id}:{reservation_id}"


def driver_freed_correlation_id(driver_id: str) -> str:
    return f"driver-freed-{driver_id}"


class TripLifecycleService:
    """Контроллер начала и завершения поездок."""

    def __init__(
        self,
        reservation_repo: ReservationRepository,
        charge_repo: ChargeRepository,
        driver_repo: DriverRepository,
        job_queue: JobQueue,
        location: LocationThrottle,
        ledger: DriverEarningsLedger,
        notifier: Notifier,
        dispatcher: SideEffectDispatcher,
        lifecycle: LifecycleSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        """
        Args:
            reservation_repo: Репозиторий бронирований
            charge_repo: Репозиторий доплат
            driver_repo: Репозиторий водителей
            job_queue: Очередь отложенных задач
            location: Кэш геолокации
            ledger: Журнал заработка водителей
            notifier: Уведомления
            dispatcher: Диспетчер побочных эффектов (начисление заработка)
            lifecycle: Настройки жизненного цикла
            clock: Источник времени
        """
        if lifecycle is None:
            from src.config import settings
            lifecycle = settings.lifecycle

        self._reservations = reservation_repo
        self._charges = charge_repo
        self._drivers = driver_repo
        self._queue = job_queue
        self._location = location
        self._ledger = ledger
        self._notifier = notifier
        self._dispatcher = dispatcher
        self._lifecycle = lifecycle
        self._clock = clock or utc_now

    # =========================================================================
    # ПРОВЕРКИ
    # =========================================================================

    @staticmethod
    def _validate_ids(driver_id: str, reservation_id: str) -> None:
        if not driver_id or not str(driver_id).strip():
            raise ValidationError(ErrorCode.INVALID_DRIVER_ID, "Некорректный ID водителя")
        if not reservation_id or not str(reservation_id).strip():
            raise ValidationError(ErrorCode.INVALID_RESERVATION_ID, "Некорректный ID бронирования")

    async def _get_owned(self, driver_id: str, reservation_id: str) -> Reservation:
        """Бронирование водителя; чужое неотличимо от отсутствующего."""
        self._validate_ids(driver_id, reservation_id)
        reservation = await self._reservations.get_by_id(reservation_id)
        if reservation is None or reservation.assigned_driver_id != driver_id:
            raise NotFoundError(ErrorCode.RESERVATION_NOT_FOUND, f"Бронирование {reservation_id} не найдено")
        return reservation

    def auto_complete_at(self, reservation: Reservation) -> datetime | None:
        """Момент автозавершения: плановый конец поездки + grace."""
        trip_end = reservation.trip_end_at
        if trip_end is None:
            return None
        return trip_end + timedelta(hours=self._lifecycle.AUTO_COMPLETE_GRACE_HOURS)

    # =========================================================================
    # START
    # =========================================================================

    async def start_trip(self, driver_id: str, reservation_id: str) -> Reservation:
        """
        Водитель начинает поездку.

        Raises:
            ValidationError: INVALID_DRIVER_ID, INVALID_RESERVATION_ID
            NotFoundError: RESERVATION_NOT_FOUND
            StateConflictError: RESERVATION_TERMINAL, TRIP_ALREADY_COMPLETED,
                TRIP_ALREADY_STARTED, DRIVER_HAS_ACTIVE_TRIP
        """
        reservation = await self._get_owned(driver_id, reservation_id)

        if reservation.is_terminal:
            raise StateConflictError(
                ErrorCode.RESERVATION_TERMINAL,
                f"Бронирование в статусе {reservation.status.value}",
                details={"status": reservation.status.value},
            )
        if reservation.is_completed:
            raise StateConflictError(ErrorCode.TRIP_ALREADY_COMPLETED, "Поездка уже завершена")
        if reservation.is_started:
            raise StateConflictError(ErrorCode.TRIP_ALREADY_STARTED, "Поездка уже начата")

        active = await self._reservations.find_active_by_driver(driver_id, exclude_reservation_id=reservation_id)
        if active is not None:
            raise StateConflictError(
                ErrorCode.DRIVER_HAS_ACTIVE_TRIP,
                "У водителя уже есть активная поездка",
                details={"active_reservation_id": active.id},
            )

        now = self._clock()
        try:
            started = await self._reservations.mark_started(reservation_id, now)
        except asyncpg.UniqueViolationError:
            raise StateConflictError(ErrorCode.DRIVER_HAS_ACTIVE_TRIP, "У водителя уже есть активная поездка")
        if not started:
            raise StateConflictError(ErrorCode.TRIP_ALREADY_STARTED, "Поездка уже начата")

        await self._drivers.update_status(driver_id, DriverStatus.ON_TRIP, now)

        # Новая поездка внутри окна остывания: задача остывания больше не нужна
        previous = await self._reservations.find_last_completed_by_driver(driver_id)
        if previous is not None:
            await self._queue.cancel(JobKind.DRIVER_COOLDOWN, cooldown_correlation_id(driver_id, previous.id))

        fire_at = self.auto_complete_at(reservation)
        if fire_at is None:
            await log_warning(
                f"Поездка {reservation_id} без маршрута: автозавершение не запланировано",
                extra={"reservation_id": reservation_id},
            )
        else:
            await self._queue.enqueue(
                JobKind.TRIP_AUTO_COMPLETE,
                reservation_id,
                fire_at,
                {"reservation_id": reservation_id},
            )

        self._notifier.trip_started(reservation_id, driver_id, reservation.user_id)
        self._notifier.driver_status_changed(driver_id, DriverStatus.ON_TRIP.value)
        await log_info(f"Водитель {driver_id} начал поездку {reservation_id}", type_msg=TypeMsg.INFO)

        return reservation.model_copy(update={"started_at": now, "updated_at": now})

    # =========================================================================
    # END
    # =========================================================================

    async def end_trip(self, driver_id: str, reservation_id: str) -> Reservation:
        """
        Водитель завершает поездку.

        Raises:
            ValidationError: INVALID_DRIVER_ID, INVALID_RESERVATION_ID
            NotFoundError: RESERVATION_NOT_FOUND
            StateConflictError: TRIP_NOT_STARTED, TRIP_ALREADY_COMPLETED,
                UNPAID_CHARGES_BLOCK_COMPLETION (details: amount, currency)
        """
        reservation = await self._get_owned(driver_id, reservation_id)

        if not reservation.is_started:
            raise StateConflictError(ErrorCode.TRIP_NOT_STARTED, "Поездка не начата")
        if reservation.is_completed:
            raise StateConflictError(ErrorCode.TRIP_ALREADY_COMPLETED, "Поездка уже завершена")

        unpaid = await self._charges.get_unpaid_summary(reservation_id, self._lifecycle.DEFAULT_CURRENCY)
        if unpaid.has_unpaid:
            raise StateConflictError(
                ErrorCode.UNPAID_CHARGES_BLOCK_COMPLETION,
                "Есть неоплаченные доплаты, завершение невозможно",
                details={"amount": unpaid.amount, "currency": unpaid.currency},
            )

        await self._queue.cancel(JobKind.TRIP_AUTO_COMPLETE, reservation_id)

        now = self._clock()
        if not await self._finalize(reservation, driver_id, now, auto=False):
            raise StateConflictError(ErrorCode.TRIP_ALREADY_COMPLETED, "Поездка уже завершена")

        await log_info(f"Водитель {driver_id} завершил поездку {reservation_id}", type_msg=TypeMsg.INFO)
        return await self._reservations.get_by_id(reservation_id) or reservation

    async def _finalize(self, reservation: Reservation, driver_id: str, now: datetime, auto: bool) -> bool:
        """
        Общие шаги завершения: отметка, очистка геолокации, остывание,
        начисление заработка (в фоне) и уведомление.

        Returns:
            False если поездку уже завершили параллельно
        """
        if not await self._reservations.mark_completed(reservation.id, now):
            return False

        await self._location.clear(driver_id, reservation.id)

        await self._queue.enqueue_in(
            JobKind.DRIVER_COOLDOWN,
            cooldown_correlation_id(driver_id, reservation.id),
            self._lifecycle.cooldown_seconds,
            {"driver_id": driver_id, "reservation_id": reservation.id},
        )

        self._dispatcher.dispatch(f"earnings:{reservation.id}", self._ledger.credit(reservation.id))
        self._notifier.trip_ended(reservation.id, driver_id, reservation.user_id, auto=auto)
        return True

    # =========================================================================
    # ОБРАБОТЧИКИ ЗАДАЧ
    # =========================================================================

    async def auto_complete_trip(self, reservation_id: str) -> bool:
        """
        Автозавершение поездки (задача trip-auto-complete).
        Не бросает исключений: ошибка логируется, задача считается выполненной.

        Returns:
            True если поездка завершена этим вызовом
        """
        try:
            reservation = await self._reservations.get_by_id(reservation_id)
            if reservation is None:
                await log_info(f"Автозавершение: бронирование {reservation_id} не найдено", type_msg=TypeMsg.DEBUG)
                return False
            if not reservation.is_started:
                await log_info(f"Автозавершение: поездка {reservation_id} не начата", type_msg=TypeMsg.DEBUG)
                return False
            if reservation.is_completed:
                await log_info(f"Автозавершение: поездка {reservation_id} уже завершена", type_msg=TypeMsg.DEBUG)
                return False

            now = self._clock()
            due_at = self.auto_complete_at(reservation)
            if due_at is None:
                await log_warning(f"Автозавершение: у поездки {reservation_id} нет маршрута")
                return False
            if now < due_at:
                await log_info(
                    f"Автозавершение: для {reservation_id} grace ещё не истёк (до {due_at.isoformat()})",
                    type_msg=TypeMsg.DEBUG,
                )
                return False

            driver_id = reservation.assigned_driver_id
            if not driver_id:
                await log_warning(f"Автозавершение: у поездки {reservation_id} нет водителя")
                return False

            if not await self._finalize(reservation, driver_id, now, auto=True):
                return False

            await log_info(f"Поездка {reservation_id} завершена автоматически", type_msg=TypeMsg.INFO)
            return True
        except Exception as e:
            await log_error(f"Ошибка автозавершения поездки {reservation_id}: {e}", exc_info=True)
            return False

    async def release_driver_after_cooldown(self, driver_id: str, reservation_id: str | None = None) -> bool:
        """
        Возвращает водителя в AVAILABLE после остывания (задача driver-cooldown).

        Returns:
            True если статус изменён
        """
        driver = await self._drivers.get_by_id(driver_id)
        if driver is None:
            await log_info(f"Остывание: водитель {driver_id} не найден", type_msg=TypeMsg.DEBUG)
            return False

        if driver.status != DriverStatus.ON_TRIP:
            await log_info(
                f"Остывание: водитель {driver_id} в статусе {driver.status.value}, пропуск",
                type_msg=TypeMsg.DEBUG,
            )
            return False

        active = await self._reservations.find_active_by_driver(driver_id)
        if active is not None:
            await log_info(
                f"Остывание: у водителя {driver_id} активная поездка {active.id}, пропуск",
                type_msg=TypeMsg.DEBUG,
            )
            return False

        if not await self._drivers.update_status(driver_id, DriverStatus.AVAILABLE, self._clock()):
            return False

        self._notifier.driver_status_changed(driver_id, DriverStatus.AVAILABLE.value)

        if driver.is_onboarded:
            await self._queue.enqueue_in(
                JobKind.PROCESS_PENDING_QUOTES,
                driver_freed_correlation_id(driver_id),
                0,
                {"driver_id": driver_id},
            )

        await log_info(
            f"Водитель {driver_id} снова доступен после поездки {reservation_id or '-'}",
            type_msg=TypeMsg.INFO,
        )
        return True

    # =========================================================================
    # ГЕОЛОКАЦИЯ
    # =========================================================================

    async def update_location(
        self,
        driver_id: str,
        reservation_id: str,
        latitude: float,
        longitude: float,
        **extra: float | None,
    ) -> LocationUpdateResult:
        """Принимает точку геолокации водителя (с троттлингом)."""
        return await self._location.try_accept(driver_id, reservation_id, latitude, longitude, **extra)
