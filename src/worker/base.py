# src/worker/base.py
"""
Базовый класс для воркеров.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import List, Optional

from src.common.constants import JobKind, TypeMsg
from src.common.logger import log_error, log_info
from src.infra.event_bus import DomainEvent, EventBus
from src.infra.job_queue import DelayedJob, JobQueue

LOGGER = "jobs"


class BaseWorker(ABC):
    """
    Базовый класс для всех воркеров.

    Воркер опрашивает очередь отложенных задач по своим видам (kinds)
    и, при необходимости, подписывается на события шины (subscriptions).
    """

    def __init__(
        self,
        job_queue: JobQueue,
        event_bus: Optional[EventBus] = None,
        poll_interval: Optional[float] = None,
    ) -> None:
        """
        Args:
            job_queue: Очередь отложенных задач (общая на процесс)
            event_bus: Шина событий (нужна только воркерам с подписками)
            poll_interval: Пауза между опросами пустой очереди, секунды
        """
        if poll_interval is None:
            from src.config import settings
            poll_interval = settings.queue.JOB_POLL_INTERVAL

        self.job_queue = job_queue
        self.event_bus = event_bus
        self.poll_interval = poll_interval
        self._running = False
        self._tasks: List[asyncio.Task] = []

    @property
    @abstractmethod
    def name(self) -> str:
        """Имя воркера."""
        pass

    @property
    def kinds(self) -> List[JobKind]:
        """Виды задач, которые обрабатывает воркер."""
        return []

    @property
    def subscriptions(self) -> List[str]:
        """Список типов событий для подписки."""
        return []

    async def handle_job(self, job: DelayedJob) -> None:
        """
        Обрабатывает задачу. Исключение означает неудачную попытку
        и запускает политику повторов очереди.
        """
        raise NotImplementedError(f"{self.name} не обрабатывает задачи {job.kind.value}")

    async def handle_event(self, event: DomainEvent) -> None:
        """Обрабатывает событие шины."""
        pass

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Запускает воркер."""
        if self._running:
            return

        self._running = True
        await log_info(f"Воркер {self.name} запускается...", type_msg=TypeMsg.INFO, logger_name=LOGGER)

        for kind in self.kinds:
            self._tasks.append(asyncio.create_task(self._poll_loop(kind), name=f"{self.name}:{kind.value}"))

        if self.subscriptions and self.event_bus is None:
            await log_error(f"Воркеру {self.name} не передана шина событий, подписки пропущены", logger_name=LOGGER)
        elif self.event_bus is not None:
            for event_type in self.subscriptions:
                await self.event_bus.subscribe(event_type=event_type, handler=self._on_event)
                await log_info(
                    f"Воркер {self.name} подписан на {event_type}",
                    type_msg=TypeMsg.DEBUG,
                    logger_name=LOGGER,
                )

        await log_info(f"Воркер {self.name} запущен", type_msg=TypeMsg.INFO, logger_name=LOGGER)

    async def stop(self) -> None:
        """Останавливает воркер."""
        if not self._running:
            return

        self._running = False

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks.clear()
        await log_info(f"Воркер {self.name} остановлен", type_msg=TypeMsg.INFO, logger_name=LOGGER)

    async def run_once(self, kind: JobKind) -> int:
        """Один проход по созревшим задачам вида kind."""
        return await self.job_queue.dequeue_and_execute(kind, self._on_job)

    async def _poll_loop(self, kind: JobKind) -> None:
        while self._running:
            try:
                processed = await self.run_once(kind)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Redis недоступен и т.п.: ждём и пробуем снова
                await log_error(f"Ошибка опроса очереди {kind.value} в {self.name}: {e}", logger_name=LOGGER)
                processed = 0

            if not processed:
                await asyncio.sleep(self.poll_interval)

    async def _on_job(self, job: DelayedJob) -> None:
        await log_info(
            f"Воркер {self.name} выполняет {job.kind.value}:{job.correlation_id} (попытка {job.attempts})",
            type_msg=TypeMsg.DEBUG,
            logger_name=LOGGER,
        )
        try:
            await self.handle_job(job)
        except Exception as e:
            await log_error(
                f"Ошибка в воркере {self.name}: {e}",
                logger_name=LOGGER,
                extra={"kind": job.kind.value, "correlation_id": job.correlation_id},
            )
            raise

    async def _on_event(self, event: DomainEvent) -> None:
        if not self._running:
            return

        try:
            await log_info(
                f"Воркер {self.name} получил событие {event.event_type}",
                type_msg=TypeMsg.DEBUG,
                logger_name=LOGGER,
            )
            await self.handle_event(event)
        except Exception as e:
            await log_error(
                f"Ошибка в воркере {self.name}: {e}",
                logger_name=LOGGER,
                extra={"event_type": event.event_type, "payload": event.payload},
            )
