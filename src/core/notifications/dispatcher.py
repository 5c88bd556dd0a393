# src/core/notifications/dispatcher.py
"""
Диспетчер побочных эффектов (fire-and-forget).

Уведомления, начисление заработка и трансляция геолокации не должны влиять на
результат основной операции. Их ошибки уходят в отдельный канал логов
"side_effects" и никогда не возвращаются вызывающему.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable

from src.common.logger import log_debug, log_error

LOGGER = "side_effects"


class SideEffectDispatcher:
    """Запускает корутины в фоне и хранит ссылки на задачи до их завершения."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Количество незавершённых побочных эффектов."""
        return len(self._tasks)

    def dispatch(self, label: str, effect: Awaitable[Any]) -> asyncio.Task:
        """
        Запускает побочный эффект в фоне.

        Args:
            label: Имя эффекта для логов
            effect: Корутина
        """
        task = asyncio.create_task(self._run(label, effect), name=f"side-effect:{label}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, label: str, effect: Awaitable[Any]) -> None:
        try:
            await effect
            await log_debug(f"Побочный эффект {label} выполнен", logger_name=LOGGER)
        except Exception as e:
            await log_error(
                f"Побочный эффект {label} завершился ошибкой: {e}",
                logger_name=LOGGER,
                extra={"effect": label},
                exc_info=True,
            )

    async def drain(self) -> None:
        """Дожидается всех запущенных эффектов (при остановке процесса и в тестах)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
