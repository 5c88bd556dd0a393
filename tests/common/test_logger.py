# tests/common/test_logger.py
"""
Тесты модуля логирования (src/common/logger.py).
"""

import json
import logging
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from src.common.constants import TypeMsg
from src.common.logger import (
    ColoredFormatter,
    DateBasedRotatingFileHandler,
    JsonFormatter,
    _get_caller_info,
    _loggers,
    get_logger,
    log_debug,
    log_error,
    log_info,
    log_warning,
    setup_logging,
)


def _record(level: int = logging.INFO, msg: str = "Сообщение", exc_info=None) -> logging.LogRecord:
    record = logging.LogRecord(
        name="jobs",
        level=level,
        pathname="job_queue.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )
    record.module = "job_queue"
    record.funcName = "enqueue"
    return record


class TestFormatters:

    def test_json_basic_record(self) -> None:
        data = json.loads(JsonFormatter().format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "jobs"
        assert data["message"] == "Сообщение"
        assert data["timestamp"].endswith("Z")

    def test_json_extra_and_exception(self) -> None:
        try:
            raise ValueError("Нет активного тарифа")
        except ValueError:
            record = _record(logging.ERROR, exc_info=sys.exc_info())
        record.extra_data = {"job_id": "j-1", "attempts": 3}

        data = json.loads(JsonFormatter().format(record))

        assert data["extra"] == {"job_id": "j-1", "attempts": 3}
        assert "ValueError" in data["exception"]

    def test_colored_includes_caller(self) -> None:
        record = _record(logging.WARNING)
        record.extra_data = {
            "caller_module": "src.infra.job_queue",
            "caller_function": "enqueue",
            "caller_file": "job_queue.py",
            "caller_line": 42,
        }

        result = ColoredFormatter().format(record)

        assert "[WARNING]" in result
        assert "src.infra.job_queue.enqueue()" in result
        assert "job_queue.py:42" in result


class TestRotatingHandler:

    def test_writes_to_fixed_file(self, tmp_path: Path) -> None:
        handler = DateBasedRotatingFileHandler(str(tmp_path / "logs"), max_bytes=0, logger_name="charter")
        try:
            assert Path(handler.baseFilename).name == "charter.log"
            assert handler.shouldRollover(_record()) is False
        finally:
            handler.close()

    def test_rollover_archives_file(self, tmp_path: Path) -> None:
        handler = DateBasedRotatingFileHandler(str(tmp_path), max_bytes=10, logger_name="jobs")
        handler.setFormatter(logging.Formatter("%(message)s"))
        try:
            handler.emit(_record(msg="x" * 20))
            handler.emit(_record(msg="после ротации"))
        finally:
            handler.close()

        archives = [p for p in tmp_path.iterdir() if p.name.startswith("jobs_")]
        assert len(archives) == 1
        assert "после ротации" in (tmp_path / "jobs.log").read_text(encoding="utf-8")


class TestGetLogger:

    def setup_method(self) -> None:
        _loggers.clear()

    def test_cached(self) -> None:
        assert get_logger("side_effects") is get_logger("side_effects")

    def test_does_not_propagate(self) -> None:
        assert get_logger("transactions").propagate is False

    def test_setup_logging_quiets_third_party(self) -> None:
        with patch("src.common.logger._LOGGING_INITIALIZED", False):
            setup_logging()

        assert logging.getLogger("aio_pika").level == logging.WARNING
        assert logging.getLogger("asyncpg").level == logging.WARNING


class TestCallerInfo:

    def test_contains_caller_data(self) -> None:
        def wrapper() -> dict:
            return _get_caller_info()

        info = wrapper()

        assert info["caller_function"] == "test_contains_caller_data"
        assert info["caller_file"] == "test_logger.py"


class TestLogFunctions:
    """Асинхронные помощники логирования."""

    def setup_method(self) -> None:
        _loggers.clear()

    @pytest.mark.asyncio
    async def test_log_info_routes_by_type(self) -> None:
        with patch.object(logging.Logger, "debug") as mock_debug:
            await log_info("Отладка", type_msg=TypeMsg.DEBUG)
            mock_debug.assert_called_once()

        with patch.object(logging.Logger, "critical") as mock_critical:
            await log_info("Критично", type_msg=TypeMsg.CRITICAL)
            mock_critical.assert_called_once()

    @pytest.mark.asyncio
    async def test_extra_merged_with_caller(self) -> None:
        with patch.object(logging.Logger, "info") as mock_info:
            await log_info("Задача запланирована", extra={"job_id": "j-1"})

        extra_data = mock_info.call_args.kwargs["extra"]["extra_data"]
        assert extra_data["job_id"] == "j-1"
        assert "caller_function" in extra_data

    @pytest.mark.asyncio
    async def test_shortcuts(self) -> None:
        with patch.object(logging.Logger, "debug") as mock_debug, \
                patch.object(logging.Logger, "warning") as mock_warning:
            await log_debug("d")
            await log_warning("w")

        mock_debug.assert_called_once()
        mock_warning.assert_called_once()

    @pytest.mark.asyncio
    async def test_log_error_with_exc_info(self) -> None:
        with patch.object(logging.Logger, "error") as mock_error:
            await log_error("Ошибка", exc_info=True)

        assert mock_error.call_args.kwargs["exc_info"] is True

    @pytest.mark.asyncio
    async def test_custom_channel(self) -> None:
        with patch("src.common.logger.get_logger") as mock_get_logger:
            mock_get_logger.return_value = MagicMock()
            await log_warning("Побочный эффект упал", logger_name="side_effects")

        mock_get_logger.assert_called_once_with("side_effects")
