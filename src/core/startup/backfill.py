# src/core/startup/backfill.py
"""
Сверка отложенных задач при старте воркеров.

Поездки, начатые до запуска (или чьи задачи потерялись), получают задачу
автозавершения; оценённые заявки получают задачу истечения; периодическая
обработка ожидающих заявок гарантированно запланирована.
Каждый шаг считает scheduled/skipped и никогда не бросает исключений.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from src.common.clock import Clock, utc_now
from src.common.constants import PROCESS_PENDING_QUOTES_JOB_ID, JobKind, QuoteStatus, TypeMsg
from src.common.logger import log_error, log_info, log_warning
from src.config.loader import LifecycleSettings
from src.core.quotes.repository import QuoteRepository
from src.core.trips.repository import ReservationRepository
from src.infra.job_queue import JobQueue


@dataclass
class BackfillStepReport:
    scheduled: int = 0
    skipped: int = 0
    failed: bool = False


@dataclass
class BackfillReport:
    """Итог сверки по шагам."""
    trip_auto_complete: BackfillStepReport = field(default_factory=BackfillStepReport)
    quote_expiry: BackfillStepReport = field(default_factory=BackfillStepReport)
    pending_quotes_job_created: bool = False

    @property
    def total_scheduled(self) -> int:
        return self.trip_auto_complete.scheduled + self.quote_expiry.scheduled


class LifecycleBackfill:
    """Восстановление недостающих отложенных задач."""

    def __init__(
        self,
        reservation_repo: ReservationRepository,
        quote_repo: QuoteRepository,
        job_queue: JobQueue,
        lifecycle: LifecycleSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        if lifecycle is None:
            from src.config import settings
            lifecycle = settings.lifecycle

        self._reservations = reservation_repo
        self._quotes = quote_repo
        self._queue = job_queue
        self._lifecycle = lifecycle
        self._clock = clock or utc_now

    async def run(self) -> BackfillReport:
        """Выполняет все шаги сверки."""
        report = BackfillReport(
            trip_auto_complete=await self.backfill_trip_auto_complete(),
            quote_expiry=await self.backfill_quote_expiry(),
            pending_quotes_job_created=await self.ensure_pending_quotes_job(),
        )
        await log_info(
            f"Сверка задач завершена: автозавершение {report.trip_auto_complete.scheduled}/"
            f"{report.trip_auto_complete.skipped}, истечение {report.quote_expiry.scheduled}/"
            f"{report.quote_expiry.skipped} (запланировано/пропущено)",
            type_msg=TypeMsg.INFO,
            logger_name="jobs",
        )
        return report

    async def backfill_trip_auto_complete(self) -> BackfillStepReport:
        """Задачи автозавершения для начатых и не завершённых поездок."""
        step = BackfillStepReport()
        try:
            trips = await self._reservations.find_active_trips()
            if not trips:
                await log_info("Активных поездок для сверки нет", type_msg=TypeMsg.DEBUG, logger_name="jobs")
                return step

            grace = timedelta(hours=self._lifecycle.AUTO_COMPLETE_GRACE_HOURS)
            for trip in trips:
                try:
                    trip_end = trip.trip_end_at
                    if trip_end is None:
                        await log_warning(f"Поездка {trip.id} без маршрута, сверка пропущена", logger_name="jobs")
                        step.skipped += 1
                        continue

                    if await self._queue.is_scheduled(JobKind.TRIP_AUTO_COMPLETE, trip.id):
                        step.skipped += 1
                        continue

                    # Просроченные срабатывают сразу
                    fire_at = max(trip_end + grace, self._clock())
                    handle = await self._queue.enqueue(
                        JobKind.TRIP_AUTO_COMPLETE, trip.id, fire_at, {"reservation_id": trip.id},
                    )
                    if handle.created:
                        step.scheduled += 1
                    else:
                        step.skipped += 1
                except Exception as e:
                    await log_error(f"Ошибка сверки поездки {trip.id}: {e}", logger_name="jobs")
                    step.skipped += 1
        except Exception as e:
            step.failed = True
            await log_error(f"Ошибка сверки автозавершения поездок: {e}", logger_name="jobs")
        return step

    async def backfill_quote_expiry(self) -> BackfillStepReport:
        """Задачи истечения для оценённых заявок."""
        step = BackfillStepReport()
        try:
            window = timedelta(hours=self._lifecycle.PAYMENT_WINDOW_HOURS)
            for quote in await self._quotes.find_by_status(QuoteStatus.QUOTED):
                try:
                    if quote.quoted_at is None:
                        await log_warning(f"Заявка {quote.id} в QUOTED без quoted_at", logger_name="jobs")
                        step.skipped += 1
                        continue

                    if await self._queue.is_scheduled(JobKind.QUOTE_EXPIRY, quote.id):
                        step.skipped += 1
                        continue

                    fire_at = max(quote.quoted_at + window, self._clock())
                    handle = await self._queue.enqueue(
                        JobKind.QUOTE_EXPIRY, quote.id, fire_at, {"quote_id": quote.id},
                    )
                    if handle.created:
                        step.scheduled += 1
                    else:
                        step.skipped += 1
                except Exception as e:
                    await log_error(f"Ошибка сверки заявки {quote.id}: {e}", logger_name="jobs")
                    step.skipped += 1
        except Exception as e:
            step.failed = True
            await log_error(f"Ошибка сверки истечения заявок: {e}", logger_name="jobs")
        return step

    async def ensure_pending_quotes_job(self) -> bool:
        """Периодическая задача process-pending-quotes существует."""
        try:
            return await self._queue.ensure_recurring(
                JobKind.PROCESS_PENDING_QUOTES,
                PROCESS_PENDING_QUOTES_JOB_ID,
                self._lifecycle.pending_quotes_interval_seconds,
            )
        except Exception as e:
            await log_error(f"Не удалось запланировать обработку ожидающих заявок: {e}", logger_name="jobs")
            return False
