# src/worker/lifecycle.py
"""
Воркеры отложенных задач жизненного цикла заявок и поездок.
"""

from __future__ import annotations

from typing import List

from src.common.constants import JobKind, TypeMsg
from src.common.logger import log_info, log_warning
from src.core.quotes.service import QuoteLifecycleService
from src.core.trips.service import TripLifecycleService
from src.infra.job_queue import DelayedJob, JobQueue
from src.worker.base import LOGGER, BaseWorker


def _require(job: DelayedJob, key: str) -> str | None:
    value = job.payload.get(key)
    return str(value) if value else None


class QuoteExpiryWorker(BaseWorker):
    """Переводит неоплаченные заявки в EXPIRED по истечении окна оплаты."""

    def __init__(self, job_queue: JobQueue, quotes: QuoteLifecycleService, **kwargs) -> None:
        super().__init__(job_queue, **kwargs)
        self.quotes = quotes

    @property
    def name(self) -> str:
        return "QuoteExpiryWorker"

    @property
    def kinds(self) -> List[JobKind]:
        return [JobKind.QUOTE_EXPIRY]

    async def handle_job(self, job: DelayedJob) -> None:
        quote_id = _require(job, "quote_id") or job.correlation_id
        await self.quotes.expire_quote(quote_id)


class TripAutoCompleteWorker(BaseWorker):
    """Завершает поездки, которые водитель не закрыл вручную."""

    def __init__(self, job_queue: JobQueue, trips: TripLifecycleService, **kwargs) -> None:
        super().__init__(job_queue, **kwargs)
        self.trips = trips

    @property
    def name(self) -> str:
        return "TripAutoCompleteWorker"

    @property
    def kinds(self) -> List[JobKind]:
        return [JobKind.TRIP_AUTO_COMPLETE]

    async def handle_job(self, job: DelayedJob) -> None:
        reservation_id = _require(job, "reservation_id") or job.correlation_id
        await self.trips.auto_complete_trip(reservation_id)


class DriverCooldownWorker(BaseWorker):
    """Возвращает водителя в AVAILABLE после остывания."""

    def __init__(self, job_queue: JobQueue, trips: TripLifecycleService, **kwargs) -> None:
        super().__init__(job_queue, **kwargs)
        self.trips = trips

    @property
    def name(self) -> str:
        return "DriverCooldownWorker"

    @property
    def kinds(self) -> List[JobKind]:
        return [JobKind.DRIVER_COOLDOWN]

    async def handle_job(self, job: DelayedJob) -> None:
        driver_id = _require(job, "driver_id")
        if driver_id is None:
            await log_warning(f"Задача остывания {job.correlation_id} без driver_id, пропуск", logger_name=LOGGER)
            return
        await self.trips.release_driver_after_cooldown(driver_id, _require(job, "reservation_id"))


class DriverAssignmentWorker(BaseWorker):
    """
    Фоновое назначение водителей заявкам в SUBMITTED:
    разовые попытки (assign-driver) и периодический проход (process-pending-quotes).
    """

    def __init__(self, job_queue: JobQueue, quotes: QuoteLifecycleService, **kwargs) -> None:
        super().__init__(job_queue, **kwargs)
        self.quotes = quotes

    @property
    def name(self) -> str:
        return "DriverAssignmentWorker"

    @property
    def kinds(self) -> List[JobKind]:
        return [JobKind.ASSIGN_DRIVER, JobKind.PROCESS_PENDING_QUOTES]

    async def handle_job(self, job: DelayedJob) -> None:
        if job.kind == JobKind.ASSIGN_DRIVER:
            quote_id = _require(job, "quote_id") or job.correlation_id
            await self.quotes.try_assign_driver_to_quote(quote_id)
            return

        assigned = await self.quotes.process_pending_quotes()
        if job.payload.get("driver_id"):
            await log_info(
                f"Освободился водитель {job.payload['driver_id']}: назначено {assigned} заявок",
                type_msg=TypeMsg.DEBUG,
                logger_name=LOGGER,
            )
