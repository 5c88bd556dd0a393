# src/infra/transactions.py
"""
Запись нескольких изменений одной транзакцией, если БД это позволяет.

Если транзакции выключены конфигурацией или сервер их не поддерживает,
изменения выполняются последовательно без транзакции. Такой режим всегда
сопровождается предупреждением в канале "transactions".
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

import asyncpg
from asyncpg import Connection

from src.common.logger import log_debug, log_warning
from src.infra.database import DatabaseManager

LOGGER = "transactions"

# work(conn): conn = соединение транзакции или None (писать через пул)
WriteWork = Callable[[Optional[Connection]], Awaitable[Any]]


class WriteBackend(ABC):
    """Способ выполнения группы изменений."""

    name: str = ""

    @abstractmethod
    async def run(self, label: str, work: WriteWork) -> Any:
        ...


class TransactionBackend(WriteBackend):
    """Все изменения в одной транзакции PostgreSQL."""

    name = "transaction"

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def run(self, label: str, work: WriteWork) -> Any:
        async with self._db.transaction() as conn:
            result = await work(conn)
        await log_debug(f"Транзакция {label} зафиксирована", logger_name=LOGGER)
        return result


class SequentialBackend(WriteBackend):
    """Последовательные независимые записи (без атомарности)."""

    name = "sequential"

    async def run(self, label: str, work: WriteWork) -> Any:
        await log_warning(
            f"{label}: транзакции недоступны, изменения пишутся последовательно без атомарности",
            logger_name=LOGGER,
            extra={"label": label, "backend": self.name},
        )
        return await work(None)


class TransactionalWriter:
    """
    Единая точка для составных записей.

    Вызывающий код не знает, какой бэкенд активен: он передаёт функцию work,
    которая пишет через переданное соединение (или через пул, если оно None).
    """

    def __init__(self, db: DatabaseManager, enabled: bool | None = None) -> None:
        if enabled is None:
            from src.config import settings
            enabled = settings.database.DB_TRANSACTIONS_ENABLED

        self._transactional = TransactionBackend(db)
        self._sequential = SequentialBackend()
        self._enabled = enabled

    @property
    def backend(self) -> WriteBackend:
        """Текущий бэкенд."""
        return self._transactional if self._enabled else self._sequential

    async def write(self, label: str, work: WriteWork) -> Any:
        """
        Выполняет work транзакционно, при невозможности последовательно.

        Args:
            label: Имя операции для логов
            work: Корутина-функция, принимающая соединение или None

        Returns:
            Результат work
        """
        if not self._enabled:
            return await self._sequential.run(label, work)

        try:
            return await self._transactional.run(label, work)
        except asyncpg.FeatureNotSupportedError as e:
            # Сервер отказал в транзакции: дальше работаем последовательно
            self._enabled = False
            await log_warning(
                f"{label}: сервер не поддерживает транзакции ({e}), переключение на последовательную запись",
                logger_name=LOGGER,
            )
            return await self._sequential.run(label, work)
