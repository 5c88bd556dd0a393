# src/common/exceptions.py
"""
Доменные исключения.

Каждое исключение несёт код ошибки (ErrorCode) и HTTP-совместимый статус,
чтобы транспортный слой мог отдать их клиенту без дополнительного маппинга.
"""

from __future__ import annotations

from typing import Any

from src.common.constants import ErrorCode


class AppError(Exception):
    """Базовое исключение приложения."""

    status_code: int = 400

    def __init__(
        self,
        code: ErrorCode,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.code = code
        self.message = message or code.value
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Сериализует ошибку для ответа API."""
        data: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(AppError):
    """Некорректные входные данные."""
    status_code = 400


class NotFoundError(AppError):
    """Сущность не найдена (в том числе при несовпадении владельца)."""
    status_code = 404


class StateConflictError(AppError):
    """Операция недопустима в текущем состоянии сущности."""
    status_code = 409


class ConfigurationError(AppError):
    """Неустранимая ошибка конфигурации (например, нет активного тарифа)."""
    status_code = 500
