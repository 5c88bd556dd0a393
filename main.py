#!/usr/bin/env python3
# main.py
"""
Главная точка входа оркестратора заявок и поездок.
Запускает воркеры, health-сервис или всё вместе в зависимости от аргументов.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from src.config import settings
from src.common.logger import setup_logging, log_info, log_error
from src.common.constants import TypeMsg
from src.infra.database import init_db, close_db
from src.infra.redis_client import init_redis, close_redis
from src.infra.event_bus import init_event_bus, close_event_bus


VALID_MODES = ("worker", "health", "all")

# Глобальный флаг для graceful shutdown
_shutdown_event: asyncio.Event | None = None
_running_tasks: list[asyncio.Task] = []


def setup_signal_handlers() -> None:
    """Настраивает обработчики сигналов для graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        """Обработчик сигналов SIGINT и SIGTERM."""
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()
            for task in _running_tasks:
                if not task.done():
                    task.cancel()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))


async def init_infrastructure() -> None:
    """Инициализирует все подключения к инфраструктуре."""
    await log_info("Инициализация инфраструктуры...", type_msg=TypeMsg.INFO)

    await init_db()
    await init_redis()
    await init_event_bus()

    await log_info("Инфраструктура инициализирована", type_msg=TypeMsg.INFO)


async def close_infrastructure() -> None:
    """Закрывает все подключения."""
    await log_info("Закрытие подключений...", type_msg=TypeMsg.INFO)

    await close_event_bus()
    await close_redis()
    await close_db()

    await log_info("Подключения закрыты", type_msg=TypeMsg.INFO)


async def run_workers() -> None:
    """Запускает воркеры отложенных задач и подписчика оплат."""
    from src.worker.runner import run_workers as start_workers

    # Инфраструктура уже инициализирована в main()
    await start_workers(init_infra=False)


async def run_health() -> None:
    """Запускает health-сервис (uvicorn)."""
    import uvicorn

    await log_info(
        f"Запуск health-сервиса на {settings.deployment.HEALTH_HOST}:{settings.deployment.HEALTH_PORT}...",
        type_msg=TypeMsg.INFO,
    )

    config = uvicorn.Config(
        "src.services.lifecycle.app:app",
        host=settings.deployment.HEALTH_HOST,
        port=settings.deployment.HEALTH_PORT,
        log_level="debug" if settings.system.DEBUG else "info",
    )

    server = uvicorn.Server(config)
    try:
        await server.serve()
    except asyncio.CancelledError:
        await log_info("Health-сервис: graceful shutdown", type_msg=TypeMsg.DEBUG)
        await server.shutdown()


def resolve_mode(mode: str | None) -> str:
    """Режим из аргумента или COMPONENT_MODE; по умолчанию all."""
    if mode in VALID_MODES:
        return mode
    component_mode = settings.system.COMPONENT_MODE
    if component_mode in VALID_MODES:
        return component_mode
    return "all"


async def main(mode: str | None = None) -> None:
    """
    Главная функция запуска.

    Args:
        mode: Режим запуска (worker, health, all).
              Если None, определяется из COMPONENT_MODE.
    """
    global _running_tasks

    setup_logging()
    setup_signal_handlers()

    mode = resolve_mode(mode)
    await log_info(
        f"{settings.system.PROJECT_NAME} v{settings.system.VERSION} — запуск в режиме '{mode}'",
        type_msg=TypeMsg.INFO,
    )

    try:
        await init_infrastructure()

        if mode == "worker":
            _running_tasks = [asyncio.create_task(run_workers())]
        elif mode == "health":
            _running_tasks = [asyncio.create_task(run_health())]
        else:
            _running_tasks = [
                asyncio.create_task(run_workers()),
                asyncio.create_task(run_health()),
            ]

        try:
            await asyncio.gather(*_running_tasks, return_exceptions=True)
        except asyncio.CancelledError:
            await log_info("Отмена всех компонентов...", type_msg=TypeMsg.INFO)
            for task in _running_tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*_running_tasks, return_exceptions=True)
            raise

    except KeyboardInterrupt:
        await log_info("Получен сигнал остановки (Ctrl+C)", type_msg=TypeMsg.INFO)
    except asyncio.CancelledError:
        await log_info("Задача отменена, выполняется graceful shutdown", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}", exc_info=True)
        raise
    finally:
        if _running_tasks:
            for task in _running_tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*_running_tasks, return_exceptions=True)
            _running_tasks.clear()

        try:
            await close_infrastructure()
        except Exception as e:
            await log_error(f"Ошибка при закрытии подключений: {e}")
        await log_info("Приложение остановлено", type_msg=TypeMsg.INFO)


def print_usage() -> None:
    """Выводит справку по использованию."""
    print("""
Charter Lifecycle — заявки, назначение водителей, поездки

Использование:
    python main.py [mode]

Режимы:
    worker    — воркеры отложенных задач и событий оплаты
    health    — health-сервис (/health, /health/ready, /stats/jobs)
    all       — всё в одном процессе (по умолчанию)

Без аргумента режим берётся из COMPONENT_MODE.
    """)


if __name__ == "__main__":
    mode = None

    if len(sys.argv) > 1:
        arg = sys.argv[1].lower()
        if arg in ("--help", "-h"):
            print_usage()
            sys.exit(0)
        elif arg in VALID_MODES:
            mode = arg
        else:
            print(f"Неизвестный режим: {arg}")
            print_usage()
            sys.exit(1)

    try:
        asyncio.run(main(mode))
    except KeyboardInterrupt:
        pass
