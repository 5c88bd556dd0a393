# src/core/quotes/service.py
"""
Жизненный цикл заявки.

DRAFT -> SUBMITTED -> QUOTED -> {PAID, EXPIRED}

- Submit: подбор водителя; найден -> QUOTED + задача quote-expiry на quoted_at + окно оплаты;
  не найден -> SUBMITTED с оценочной ценой + разовая задача assign-driver
  + периодическая process-pending-quotes.
- Recalculate: QUOTED -> QUOTED с новым quoted_at и перенесённой задачей истечения.
  Если машины заняты, возвращается требование перевыбора без изменений.
- Expire: только из задачи quote-expiry, только из QUOTED.
- Pay: сигнал платёжного шлюза, QUOTED -> PAID и снятие задачи истечения.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from src.common.clock import Clock, utc_now
from src.common.constants import (
    PROCESS_PENDING_QUOTES_JOB_ID,
    ErrorCode,
    JobKind,
    QuoteStatus,
    TypeMsg,
)
from src.common.exceptions import AppError, NotFoundError, StateConflictError, ValidationError
from src.common.logger import log_error, log_info, log_warning
from src.config.loader import LifecycleSettings
from src.core.assignment.service import AssignmentOutcome, DriverAssignmentEngine
from src.core.notifications.service import Notifier
from src.core.quotes.models import Quote, QuoteRecalculation
from src.core.quotes.repository import QuoteRepository
from src.infra.job_queue import JobQueue


class QuoteLifecycleService:
    """
    Сервис жизненного цикла заявок.
    Вместе с DriverAssignmentEngine единственный источник assigned_driver_id и pricing.
    """

    def __init__(
        self,
        quote_repo: QuoteRepository,
        engine: DriverAssignmentEngine,
        job_queue: JobQueue,
        notifier: Notifier,
        lifecycle: LifecycleSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        """
        Args:
            quote_repo: Репозиторий заявок
            engine: Движок подбора водителя и расчёта цены
            job_queue: Очередь отложенных задач
            notifier: Уведомления (fire-and-forget)
            lifecycle: Настройки жизненного цикла (по умолчанию из конфига)
            clock: Источник времени
        """
        if lifecycle is None:
            from src.config import settings
            lifecycle = settings.lifecycle

        self._quotes = quote_repo
        self._engine = engine
        self._queue = job_queue
        self._notifier = notifier
        self._lifecycle = lifecycle
        self._clock = clock or utc_now

    @staticmethod
    def _validate_id(quote_id: str) -> None:
        if not quote_id or not str(quote_id).strip():
            raise ValidationError(ErrorCode.INVALID_QUOTE_ID, "Некорректный ID заявки")

    async def _get_quote(self, quote_id: str, user_id: str | None = None) -> Quote:
        """Заявка по ID; чужая заявка неотличима от отсутствующей."""
        self._validate_id(quote_id)
        quote = await self._quotes.get_by_id(quote_id)
        if quote is None or (user_id is not None and quote.user_id != user_id):
            raise NotFoundError(ErrorCode.QUOTE_NOT_FOUND, f"Заявка {quote_id} не найдена")
        return quote

    # =========================================================================
    # ПЛАНИРОВАНИЕ ЗАДАЧ
    # =========================================================================

    async def _schedule_expiry(self, quote_id: str, quoted_at: datetime, reschedule: bool = False) -> None:
        fire_at = quoted_at + timedelta(hours=self._lifecycle.PAYMENT_WINDOW_HOURS)
        if reschedule:
            await self._queue.reschedule(JobKind.QUOTE_EXPIRY, quote_id, fire_at, {"quote_id": quote_id})
        else:
            await self._queue.enqueue(JobKind.QUOTE_EXPIRY, quote_id, fire_at, {"quote_id": quote_id})

    async def ensure_pending_quotes_job(self) -> bool:
        """
        Гарантирует, что периодическая задача process-pending-quotes запланирована.

        Returns:
            True если задача была создана сейчас
        """
        return await self._queue.ensure_recurring(
            JobKind.PROCESS_PENDING_QUOTES,
            PROCESS_PENDING_QUOTES_JOB_ID,
            self._lifecycle.pending_quotes_interval_seconds,
        )

    async def _apply_quoted(
        self,
        quote: Quote,
        outcome: AssignmentOutcome,
        from_statuses: tuple[QuoteStatus, ...],
    ) -> Optional[datetime]:
        """Сохраняет QUOTED с водителем; возвращает quoted_at или None, если статус уже сменился."""
        if outcome.driver is None:
            raise StateConflictError(ErrorCode.NO_DRIVERS_AVAILABLE, f"Для заявки {quote.id} нет водителя")
        quoted_at = self._clock()
        saved = await self._quotes.save_quoted(
            quote.id,
            pricing=outcome.pricing,
            driver_id=outcome.driver.id,
            driver_rate=outcome.driver.hourly_rate,
            quoted_at=quoted_at,
            from_statuses=from_statuses,
        )
        if not saved:
            return None
        await self._engine.commit_assignment(outcome)
        return quoted_at

    # =========================================================================
    # SUBMIT
    # =========================================================================

    async def submit_quote(self, quote_id: str, user_id: str | None = None) -> Quote:
        """
        Отправляет заявку на оценку.

        Raises:
            NotFoundError: QUOTE_NOT_FOUND
            ValidationError: QUOTE_INCOMPLETE, ITINERARY_REQUIRED, VEHICLES_REQUIRED
            StateConflictError: INVALID_QUOTE_STATUS
            ConfigurationError: PRICING_CONFIG_NOT_FOUND
        """
        quote = await self._get_quote(quote_id, user_id)

        if quote.status not in (QuoteStatus.DRAFT, QuoteStatus.SUBMITTED):
            raise StateConflictError(
                ErrorCode.INVALID_QUOTE_STATUS,
                f"Заявку в статусе {quote.status.value} нельзя отправить",
                details={"status": quote.status.value},
            )

        if quote.current_step < self._lifecycle.QUOTE_REQUIRED_STEP:
            raise ValidationError(
                ErrorCode.QUOTE_INCOMPLETE,
                "Заявка заполнена не полностью",
                details={"current_step": quote.current_step, "required_step": self._lifecycle.QUOTE_REQUIRED_STEP},
            )

        outcome = await self._engine.assign(quote, exclude_quote_id=quote.id)

        if outcome.found:
            quoted_at = await self._apply_quoted(quote, outcome, (QuoteStatus.DRAFT, QuoteStatus.SUBMITTED))
            if quoted_at is None:
                raise StateConflictError(ErrorCode.INVALID_QUOTE_STATUS, f"Статус заявки {quote.id} изменился")

            await self._schedule_expiry(quote.id, quoted_at)
            self._notifier.quote_quoted(quote.id, quote.user_id, outcome.driver.id, outcome.pricing.total)
            await log_info(f"Заявка {quote.id} оценена, водитель {outcome.driver.id}", type_msg=TypeMsg.INFO)
        else:
            now = self._clock()
            if not await self._quotes.save_submitted(quote.id, pricing=outcome.pricing, now=now):
                raise StateConflictError(ErrorCode.INVALID_QUOTE_STATUS, f"Статус заявки {quote.id} изменился")

            await self._queue.enqueue_in(
                JobKind.ASSIGN_DRIVER,
                quote.id,
                self._lifecycle.ASSIGN_DRIVER_RETRY_DELAY_SECONDS,
                {"quote_id": quote.id},
            )
            await self.ensure_pending_quotes_job()
            self._notifier.quote_pending_driver(quote.id, quote.user_id)
            await log_info(f"Заявка {quote.id} ждёт водителя", type_msg=TypeMsg.INFO)

        return await self._get_quote(quote.id)

    # =========================================================================
    # RECALCULATE
    # =========================================================================

    async def recalculate_quote(self, quote_id: str) -> QuoteRecalculation:
        """
        Пересчитывает оценённую заявку и продлевает окно оплаты.

        Занятость выбранных машин не ошибка: возвращается requires_vehicle_reselection,
        заявка не меняется.

        Raises:
            NotFoundError: QUOTE_NOT_FOUND, VEHICLE_NOT_FOUND
            ValidationError: ITINERARY_REQUIRED, VEHICLES_REQUIRED
            StateConflictError: INVALID_QUOTE_STATUS, NO_DRIVERS_AVAILABLE
            ConfigurationError: PRICING_CONFIG_NOT_FOUND
        """
        quote = await self._get_quote(quote_id)

        if quote.status != QuoteStatus.QUOTED:
            raise StateConflictError(
                ErrorCode.INVALID_QUOTE_STATUS,
                "Пересчитать можно только оценённую заявку",
                details={"status": quote.status.value},
            )

        window = self._engine.validate(quote)

        unavailable = await self._engine.find_booked_vehicle_ids(quote, window)
        if unavailable:
            await log_warning(f"Заявка {quote.id}: машины {sorted(unavailable)} больше недоступны")
            return QuoteRecalculation(
                success=False,
                requires_vehicle_reselection=True,
                unavailable_vehicle_ids=sorted(unavailable),
                quote=quote,
                message="Выбранные машины недоступны на эти даты",
            )

        now = self._clock()
        preferred = (
            quote.assigned_driver_id
            if quote.is_within_payment_window(now, self._lifecycle.PAYMENT_WINDOW_HOURS)
            else None
        )
        outcome = await self._engine.assign(quote, exclude_quote_id=quote.id, preferred_driver_id=preferred)

        if not outcome.found:
            raise StateConflictError(
                ErrorCode.NO_DRIVERS_AVAILABLE,
                "Нет свободных водителей на выбранные даты",
            )

        quoted_at = await self._apply_quoted(quote, outcome, (QuoteStatus.QUOTED,))
        if quoted_at is None:
            raise StateConflictError(ErrorCode.INVALID_QUOTE_STATUS, f"Статус заявки {quote.id} изменился")

        await self._schedule_expiry(quote.id, quoted_at, reschedule=True)
        self._notifier.quote_recalculated(quote.id, quote.user_id, outcome.driver.id, outcome.pricing.total)
        await log_info(f"Заявка {quote.id} пересчитана, итог {outcome.pricing.total}", type_msg=TypeMsg.INFO)

        return QuoteRecalculation(
            success=True,
            driver_changed=outcome.driver.id != quote.assigned_driver_id,
            quote=await self._get_quote(quote.id),
            message="Заявка пересчитана",
        )

    # =========================================================================
    # EXPIRE / PAY
    # =========================================================================

    async def expire_quote(self, quote_id: str) -> bool:
        """
        Истечение окна оплаты (обработчик задачи quote-expiry).
        Ошибки БД пробрасываются: задача считается упавшей.

        Returns:
            True если заявка переведена в EXPIRED
        """
        quote = await self._quotes.get_by_id(quote_id)
        if quote is None:
            await log_warning(f"Истечение: заявка {quote_id} не найдена")
            return False

        if quote.status != QuoteStatus.QUOTED:
            await log_info(
                f"Истечение: заявка {quote_id} в статусе {quote.status.value}, пропуск",
                type_msg=TypeMsg.DEBUG,
            )
            return False

        now = self._clock()
        if quote.is_within_payment_window(now, self._lifecycle.PAYMENT_WINDOW_HOURS):
            # Заявку пересчитали после постановки этой задачи
            await log_info(f"Истечение: окно оплаты заявки {quote_id} ещё открыто, пропуск", type_msg=TypeMsg.DEBUG)
            return False

        if not await self._quotes.mark_expired(quote_id, now):
            return False

        self._notifier.quote_expired(quote.id, quote.user_id)
        await log_info(f"Заявка {quote_id} истекла, водитель {quote.assigned_driver_id} освобождён", type_msg=TypeMsg.INFO)
        return True

    async def handle_payment_succeeded(self, quote_id: str) -> bool:
        """
        Сигнал успешной оплаты: QUOTED -> PAID и снятие задачи истечения.

        Returns:
            True если заявка оплачена (в том числе ранее)
        """
        quote = await self._get_quote(quote_id)

        if quote.status == QuoteStatus.PAID:
            await self._queue.cancel(JobKind.QUOTE_EXPIRY, quote_id)
            return True

        if quote.status != QuoteStatus.QUOTED:
            await log_warning(f"Оплата заявки {quote_id} в статусе {quote.status.value} не применена")
            return False

        if not await self._quotes.mark_paid(quote_id, self._clock()):
            return False

        await self._queue.cancel(JobKind.QUOTE_EXPIRY, quote_id)
        self._notifier.quote_paid(quote.id, quote.user_id)
        await log_info(f"Заявка {quote_id} оплачена", type_msg=TypeMsg.INFO)
        return True

    # =========================================================================
    # ФОНОВОЕ НАЗНАЧЕНИЕ
    # =========================================================================

    async def try_assign_driver_to_quote(self, quote_id: str) -> bool:
        """
        Повторная попытка подобрать водителя для заявки в SUBMITTED.

        Доменные ошибки (нет маршрута, машины) логируются и дают False;
        инфраструктурные пробрасываются для повтора задачи.

        Returns:
            True если водитель назначен
        """
        quote = await self._quotes.get_by_id(quote_id)
        if quote is None:
            await log_warning(f"Автоназначение: заявка {quote_id} не найдена")
            return False

        if quote.status != QuoteStatus.SUBMITTED or quote.has_driver:
            await log_info(
                f"Автоназначение: заявка {quote_id} в статусе {quote.status.value}, пропуск",
                type_msg=TypeMsg.DEBUG,
            )
            return False

        try:
            outcome = await self._engine.assign(quote, exclude_quote_id=quote.id)
        except AppError as e:
            await log_warning(f"Автоназначение заявки {quote_id} невозможно: {e.code.value} {e.message}")
            return False

        if not outcome.found:
            return False

        quoted_at = await self._apply_quoted(quote, outcome, (QuoteStatus.SUBMITTED,))
        if quoted_at is None:
            return False

        await self._queue.cancel(JobKind.ASSIGN_DRIVER, quote.id)
        await self._schedule_expiry(quote.id, quoted_at)
        self._notifier.quote_quoted(quote.id, quote.user_id, outcome.driver.id, outcome.pricing.total)
        await log_info(f"Заявке {quote_id} автоматически назначен водитель {outcome.driver.id}", type_msg=TypeMsg.INFO)
        return True

    async def process_pending_quotes(self) -> int:
        """
        Перебирает заявки в SUBMITTED без водителя и пробует назначить водителя.

        Returns:
            Количество заявок, получивших водителя
        """
        pending = [q for q in await self._quotes.find_by_status(QuoteStatus.SUBMITTED) if not q.has_driver]
        if not pending:
            await log_info("Нет заявок, ожидающих водителя", type_msg=TypeMsg.DEBUG)
            return 0

        assigned = 0
        for quote in pending:
            try:
                if await self.try_assign_driver_to_quote(quote.id):
                    assigned += 1
            except Exception as e:
                await log_error(f"Ошибка автоназначения заявки {quote.id}: {e}")

        await log_info(
            f"Назначены водители для {assigned} из {len(pending)} ожидающих заявок",
            type_msg=TypeMsg.INFO,
        )
        return assigned
