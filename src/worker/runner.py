# src/worker/runner.py
"""
Запускалка всех воркеров.
"""

from __future__ import annotations

import asyncio
from typing import List

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info
from src.infra.database import close_db, get_db, init_db
from src.infra.event_bus import close_event_bus, get_event_bus, init_event_bus
from src.infra.job_queue import log_queue_ready
from src.infra.redis_client import close_redis, get_redis, init_redis
from src.worker.base import BaseWorker
from src.worker.container import LifecycleContainer, build_container
from src.worker.lifecycle import (
    DriverAssignmentWorker,
    DriverCooldownWorker,
    QuoteExpiryWorker,
    TripAutoCompleteWorker,
)
from src.worker.payments import PaymentEventsWorker


def build_workers(container: LifecycleContainer) -> List[BaseWorker]:
    """Воркеры процесса; все используют одну очередь из контейнера."""
    queue = container.job_queue
    return [
        QuoteExpiryWorker(queue, container.quotes),
        TripAutoCompleteWorker(queue, container.trips),
        DriverCooldownWorker(queue, container.trips),
        DriverAssignmentWorker(queue, container.quotes),
        PaymentEventsWorker(queue, get_event_bus(), container.quotes),
    ]


async def run_workers(init_infra: bool = True) -> None:
    """
    Запускает воркеры отложенных задач и подписчика событий оплаты.

    Args:
        init_infra: Если True, инициализирует инфраструктуру (БД, Redis, RabbitMQ).
                    При запуске через main.py в режиме all передаётся False,
                    так как инфраструктура уже инициализирована.
    """
    await log_info("Запуск воркеров жизненного цикла...", type_msg=TypeMsg.INFO, logger_name="jobs")

    if init_infra:
        await log_info("Инициализация инфраструктуры для воркеров...", type_msg=TypeMsg.DEBUG)
        await init_db()
        await init_redis()
        await init_event_bus()

    container = build_container(get_db(), get_redis(), get_event_bus())
    workers = build_workers(container)

    try:
        # Сверка до старта: задачи, потерянные при простое, ставятся заново
        await container.backfill.run()
        await log_queue_ready(container.job_queue)

        for worker in workers:
            await worker.start()

        await log_info(f"Запущено {len(workers)} воркеров", type_msg=TypeMsg.INFO, logger_name="jobs")

        while True:
            await asyncio.sleep(1)

    except asyncio.CancelledError:
        await log_info("Получен сигнал остановки", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка воркеров: {e}", exc_info=True)
    finally:
        for worker in workers:
            await worker.stop()

        # Дожидаемся уведомлений и начислений, запущенных обработчиками
        await container.dispatcher.drain()

        if init_infra:
            await close_event_bus()
            await close_redis()
            await close_db()

        await log_info("Воркеры остановлены", type_msg=TypeMsg.INFO)


def main() -> None:
    """Точка входа."""
    try:
        asyncio.run(run_workers())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
