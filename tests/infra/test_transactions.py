# tests/infra/test_transactions.py
"""
Тесты составной записи: транзакция или последовательный режим.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from src.infra.transactions import SequentialBackend, TransactionBackend, TransactionalWriter


def _db_with_connection(connection: object) -> MagicMock:
    @asynccontextmanager
    async def transaction():
        yield connection

    db = MagicMock()
    db.transaction = transaction
    return db


class TestTransactionalWriter:

    @pytest.mark.asyncio
    async def test_work_receives_transaction_connection(self) -> None:
        connection = AsyncMock()
        writer = TransactionalWriter(_db_with_connection(connection), enabled=True)
        work = AsyncMock(return_value="done")

        result = await writer.write("credit", work)

        assert result == "done"
        work.assert_awaited_once_with(connection)
        assert isinstance(writer.backend, TransactionBackend)

    @pytest.mark.asyncio
    async def test_disabled_runs_sequentially(self) -> None:
        writer = TransactionalWriter(_db_with_connection(AsyncMock()), enabled=False)
        work = AsyncMock(return_value=1)

        assert await writer.write("credit", work) == 1
        work.assert_awaited_once_with(None)
        assert isinstance(writer.backend, SequentialBackend)

    @pytest.mark.asyncio
    async def test_falls_back_when_server_refuses(self) -> None:
        @asynccontextmanager
        async def transaction():
            raise asyncpg.FeatureNotSupportedError("no transactions")
            yield  # pragma: no cover

        db = MagicMock()
        db.transaction = transaction
        writer = TransactionalWriter(db, enabled=True)
        work = AsyncMock(return_value="sequential")

        assert await writer.write("credit", work) == "sequential"
        work.assert_awaited_once_with(None)
        # Переключение запоминается
        assert isinstance(writer.backend, SequentialBackend)

    @pytest.mark.asyncio
    async def test_work_errors_propagate(self) -> None:
        writer = TransactionalWriter(_db_with_connection(AsyncMock()), enabled=True)

        with pytest.raises(ValueError):
            await writer.write("credit", AsyncMock(side_effect=ValueError("boom")))

    def test_enabled_from_settings(self) -> None:
        from src.config import settings

        writer = TransactionalWriter(_db_with_connection(AsyncMock()))

        expected = TransactionBackend if settings.database.DB_TRANSACTIONS_ENABLED else SequentialBackend
        assert isinstance(writer.backend, expected)
