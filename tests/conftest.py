# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("REDIS_PASSWORD", "")
os.environ.setdefault("RABBITMQ_PASSWORD", "guest")

from src.config.loader import LifecycleSettings
from src.core.pricing.models import Amenity, PricingConfig, Vehicle
from tests.helpers import FrozenClock, InMemoryRedis


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def memory_redis(clock: FrozenClock) -> InMemoryRedis:
    return InMemoryRedis(clock)


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

@pytest.fixture
def mock_db() -> AsyncMock:
    """Мок менеджера базы данных."""
    db = AsyncMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="UPDATE 1")
    db.fetchval = AsyncMock(return_value=None)
    return db


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Мок клиента Redis."""
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.set_px = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.exists = AsyncMock(return_value=False)
    redis.get_model = AsyncMock(return_value=None)
    redis.set_model = AsyncMock(return_value=True)
    redis.hget = AsyncMock(return_value=None)
    redis.hset = AsyncMock(return_value=1)
    redis.eval_script = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def mock_event_bus() -> AsyncMock:
    """Мок шины событий."""
    event_bus = AsyncMock()
    event_bus.publish = AsyncMock(return_value=None)
    event_bus.subscribe = AsyncMock(return_value=None)
    event_bus.is_connected = True
    return event_bus


@pytest.fixture
def mock_queue() -> AsyncMock:
    """Мок очереди отложенных задач."""
    queue = AsyncMock()
    queue.enqueue = AsyncMock()
    queue.enqueue_in = AsyncMock()
    queue.cancel = AsyncMock(return_value=True)
    queue.reschedule = AsyncMock()
    queue.ensure_recurring = AsyncMock(return_value=True)
    queue.is_scheduled = AsyncMock(return_value=False)
    return queue


@pytest.fixture
def mock_notifier() -> MagicMock:
    """Уведомления синхронные (fire-and-forget)."""
    return MagicMock()


@pytest.fixture
def lifecycle() -> LifecycleSettings:
    return LifecycleSettings()


@pytest.fixture
def pricing_config() -> PricingConfig:
    return PricingConfig(
        id="cfg-1",
        fuel_price=100.0,
        average_driver_rate=150.0,
        tax_percentage=5.0,
        night_charge_per_night=500.0,
        staying_charge_per_day=1000.0,
    )


@pytest.fixture
def vehicle() -> Vehicle:
    return Vehicle(id="veh-1", name="Tempo Traveller", capacity=12, base_fare=2000.0, fuel_consumption=0.1)


@pytest.fixture
def amenity() -> Amenity:
    return Amenity(id="am-1", name="Wi-Fi", price=300.0)


# =============================================================================
# УТИЛИТЫ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture
def temp_config_file(tmp_path: Path) -> Path:
    """Создаёт временный файл конфигурации."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({
        "PROJECT_NAME": "charter_test",
        "LOG_TO_FILE": False,
        "PAYMENT_WINDOW_HOURS": 12,
        "RETRY_POLICIES": {"driver-cooldown": {"ATTEMPTS": 5, "BACKOFF_SECONDS": 1}},
    }, ensure_ascii=False, indent=2))
    return config_file
