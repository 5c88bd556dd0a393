# src/services/lifecycle/app.py
"""
FastAPI приложение для проверки здоровья воркеров жизненного цикла.
Инфраструктуру подключает main.py; приложение пользуется глобальными клиентами.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, Response, status

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info
from src.config import settings
from src.infra.database import get_db
from src.infra.event_bus import get_event_bus
from src.infra.job_queue import JobQueue
from src.infra.redis_client import get_redis
from src.services.lifecycle.models import HealthStatus, JobStats, QueueKindStats

SERVICE_NAME = "charter_lifecycle"

_started_at = time.monotonic()


# =============================================================================
# LIFESPAN
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Жизненный цикл приложения."""
    await log_info("Health-сервис запускается...", type_msg=TypeMsg.INFO)
    yield
    await log_info("Health-сервис остановлен", type_msg=TypeMsg.INFO)


# =============================================================================
# ПРИЛОЖЕНИЕ
# =============================================================================

app = FastAPI(
    title="Charter Lifecycle",
    description="Health и статистика очереди отложенных задач",
    version=settings.system.VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url=None,
)


# =============================================================================
# HEALTH CHECK
# =============================================================================

@app.get("/health", response_model=HealthStatus, tags=["Health"])
async def health() -> HealthStatus:
    """Процесс жив."""
    return HealthStatus(
        service=SERVICE_NAME,
        version=settings.system.VERSION,
        uptime_seconds=round(time.monotonic() - _started_at, 1),
    )


@app.get("/health/ready", response_model=HealthStatus, tags=["Health"])
async def readiness(response: Response) -> HealthStatus:
    """Готовность: доступны PostgreSQL, Redis и RabbitMQ."""
    checks = {
        "postgres": get_db().health_check,
        "redis": get_redis().health_check,
        "rabbitmq": get_event_bus().health_check,
    }

    deps: dict[str, str] = {}
    for name, check in checks.items():
        try:
            deps[name] = "healthy" if await check() else "unhealthy"
        except Exception as e:
            await log_error(f"Проверка {name} упала: {e}")
            deps[name] = "unhealthy"

    overall = "healthy" if all(v == "healthy" for v in deps.values()) else "degraded"
    if overall != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthStatus(
        service=SERVICE_NAME,
        status=overall,
        version=settings.system.VERSION,
        uptime_seconds=round(time.monotonic() - _started_at, 1),
        dependencies=deps,
    )


# =============================================================================
# СТАТИСТИКА ОЧЕРЕДИ
# =============================================================================

@app.get("/stats/jobs", response_model=JobStats, tags=["Jobs"])
async def job_stats() -> JobStats:
    """Размеры очередей отложенных задач по видам."""
    try:
        raw = await JobQueue(get_redis()).stats()
    except Exception as e:
        await log_error(f"Не удалось получить статистику очереди: {e}", logger_name="jobs")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Очередь задач недоступна",
        )

    return JobStats(kinds={kind: QueueKindStats(**counts) for kind, counts in raw.items()})
