# src/worker/payments.py
"""
Воркер событий платёжной системы.
"""

from __future__ import annotations

from typing import List

from src.common.exceptions import AppError
from src.common.logger import log_error, log_warning
from src.core.quotes.service import QuoteLifecycleService
from src.infra.event_bus import DomainEvent, EventBus, EventTypes
from src.infra.job_queue import JobQueue
from src.worker.base import LOGGER, BaseWorker


class PaymentEventsWorker(BaseWorker):
    """
    Подписывается на PAYMENT_SUCCEEDED и переводит заявку в PAID.
    Повторная доставка события безопасна: оплата идемпотентна.
    """

    def __init__(
        self,
        job_queue: JobQueue,
        event_bus: EventBus,
        quotes: QuoteLifecycleService,
        **kwargs,
    ) -> None:
        super().__init__(job_queue, event_bus=event_bus, **kwargs)
        self.quotes = quotes

    @property
    def name(self) -> str:
        return "PaymentEventsWorker"

    @property
    def subscriptions(self) -> List[str]:
        return [EventTypes.PAYMENT_SUCCEEDED]

    async def handle_event(self, event: DomainEvent) -> None:
        quote_id = event.payload.get("quote_id")
        if not quote_id:
            await log_warning(
                "Событие оплаты без quote_id",
                logger_name=LOGGER,
                extra={"event_id": event.event_id},
            )
            return

        try:
            await self.quotes.handle_payment_succeeded(str(quote_id))
        except AppError as e:
            await log_error(
                f"Оплата заявки {quote_id} не применена: {e.code.value} {e.message}",
                logger_name=LOGGER,
                extra={"event_id": event.event_id},
            )
