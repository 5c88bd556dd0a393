# src/services/lifecycle/models.py
"""
Модели ответов health-сервиса.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class HealthStatus(BaseModel):
    """Статус здоровья сервиса."""

    service: str
    status: str = "healthy"  # healthy, degraded
    version: str | None = None
    uptime_seconds: float | None = None
    dependencies: dict[str, str] = Field(default_factory=dict)


class QueueKindStats(BaseModel):
    """Размеры очереди одного вида задач."""

    pending: int = 0
    active: int = 0
    failed: int = 0


class JobStats(BaseModel):
    """Статистика очереди по видам задач."""

    kinds: dict[str, QueueKindStats] = Field(default_factory=dict)

    @property
    def total_pending(self) -> int:
        return sum(item.pending for item in self.kinds.values())
