# src/config/loader.py
"""
Загрузчик конфигурации проекта.
Единственный источник истины — config/config.json.
Секреты и адреса инфраструктуры переопределяются из переменных окружения.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


# =============================================================================
# ОПРЕДЕЛЕНИЕ ПУТЕЙ
# =============================================================================

def get_project_root() -> Path:
    """Возвращает корневую директорию проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Возвращает путь к файлу конфигурации."""
    return get_project_root() / "config" / "config.json"


def load_config_json() -> dict[str, Any]:
    """Загружает config.json и возвращает словарь."""
    config_path = get_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Файл конфигурации не найден: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        return json.load(f)


# =============================================================================
# PYDANTIC МОДЕЛИ КОНФИГУРАЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "charter_lifecycle"
    VERSION: str = "1.0.0"
    DEBUG: bool = True
    ENVIRONMENT: str = "development"
    COMPONENT_MODE: str = "all"


class DeploymentSettings(BaseModel):
    """Настройки развертывания компонентов."""
    HEALTH_HOST: str = "0.0.0.0"
    HEALTH_PORT: int = 8095
    WORKER_INSTANCES_COUNT: int = 1


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "DEBUG"
    LOG_TO_FILE: bool = True
    LOG_FILE_PATH: str = "logs/app.log"
    LOG_FORMAT: str = "colored"
    LOG_MAX_BYTES: int = 10485760


class DatabaseSettings(BaseModel):
    """Настройки PostgreSQL."""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "charter"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_MIN_POOL_SIZE: int = 5
    DB_MAX_POOL_SIZE: int = 20
    DB_COMMAND_TIMEOUT: int = 60
    DB_RETRY_ATTEMPTS: int = 3
    DB_RETRY_DELAY: float = 1.0
    # false: например, за pgbouncer в режиме statement pooling
    DB_TRANSACTIONS_ENABLED: bool = True

    @field_validator("DB_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("DB_PASSWORD", "")
        return v

    @property
    def dsn(self) -> str:
        """Возвращает DSN для подключения к PostgreSQL."""
        return (
            f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )


class RedisSettings(BaseModel):
    """Настройки Redis."""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""
    REDIS_NAMESPACE: str = "charter"
    REDIS_MAX_CONNECTIONS: int = 50

    @field_validator("REDIS_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        if not v:
            return os.getenv("REDIS_PASSWORD", "")
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к Redis."""
        auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
        return f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"


class RabbitMQSettings(BaseModel):
    """Настройки RabbitMQ."""
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_EXCHANGE: str = "charter.events"
    RABBITMQ_PREFETCH_COUNT: int = 10

    @field_validator("RABBITMQ_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Получает пароль из переменных окружения."""
        env_pass = os.getenv("RABBITMQ_PASSWORD", "")
        if env_pass:
            return env_pass
        return v

    @property
    def url(self) -> str:
        """Возвращает URL для подключения к RabbitMQ."""
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}{self.RABBITMQ_VHOST}"
        )


class RetryPolicySettings(BaseModel):
    """Политика повторов для одного вида задач."""
    ATTEMPTS: int = Field(default=1, ge=1)
    BACKOFF_SECONDS: float = Field(default=0.0, ge=0.0)


def _default_retry_policies() -> dict[str, RetryPolicySettings]:
    return {
        "quote-expiry": RetryPolicySettings(ATTEMPTS=3, BACKOFF_SECONDS=5.0),
        "trip-auto-complete": RetryPolicySettings(ATTEMPTS=1),
        "driver-cooldown": RetryPolicySettings(ATTEMPTS=3, BACKOFF_SECONDS=2.0),
        "assign-driver": RetryPolicySettings(ATTEMPTS=3, BACKOFF_SECONDS=2.0),
        "process-pending-quotes": RetryPolicySettings(ATTEMPTS=2, BACKOFF_SECONDS=5.0),
    }


class QueueSettings(BaseModel):
    """Настройки очереди отложенных задач."""
    JOB_POLL_INTERVAL: float = 1.0
    JOB_BATCH_SIZE: int = 20
    JOB_LEASE_SECONDS: int = 300
    RETRY_POLICIES: dict[str, RetryPolicySettings] = Field(default_factory=_default_retry_policies)


class LifecycleSettings(BaseModel):
    """Тайминги жизненного цикла заявок и поездок."""
    PAYMENT_WINDOW_HOURS: float = 24.0
    AUTO_COMPLETE_GRACE_HOURS: float = 24.0
    DRIVER_COOLDOWN_HOURS: float = 24.0
    PENDING_QUOTES_INTERVAL_MINUTES: float = 10.0
    ASSIGN_DRIVER_RETRY_DELAY_SECONDS: float = 60.0
    SOON_START_THRESHOLD_HOURS: float = 2.0
    QUOTE_REQUIRED_STEP: int = 5
    DEFAULT_CURRENCY: str = "INR"

    @property
    def payment_window_seconds(self) -> float:
        return self.PAYMENT_WINDOW_HOURS * 3600

    @property
    def grace_seconds(self) -> float:
        return self.AUTO_COMPLETE_GRACE_HOURS * 3600

    @property
    def cooldown_seconds(self) -> float:
        return self.DRIVER_COOLDOWN_HOURS * 3600

    @property
    def pending_quotes_interval_seconds(self) -> int:
        return int(self.PENDING_QUOTES_INTERVAL_MINUTES * 60)


class LocationSettings(BaseModel):
    """Настройки приёма геолокации."""
    LOCATION_THROTTLE_MS: int = 5000
    LOCATION_TTL_SECONDS: int = 86400


# =============================================================================
# ГЛАВНЫЙ КЛАСС НАСТРОЕК
# =============================================================================

class Settings(BaseSettings):
    """
    Главный класс настроек приложения.
    Агрегирует все секции конфигурации.
    """
    system: SystemSettings = Field(default_factory=SystemSettings)
    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    rabbitmq: RabbitMQSettings = Field(default_factory=RabbitMQSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    lifecycle: LifecycleSettings = Field(default_factory=LifecycleSettings)
    location: LocationSettings = Field(default_factory=LocationSettings)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @classmethod
    def from_config_json(cls) -> "Settings":
        """
        Создаёт объект Settings из config.json.
        Секреты переопределяются из переменных окружения.
        """
        config_data = load_config_json()
        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, config_data: dict[str, Any]) -> "Settings":
        """Собирает секции из плоского словаря (формат config.json)."""
        # Ключи _comment_* это пояснения внутри JSON
        data = {k: v for k, v in config_data.items() if not k.startswith("_comment_")}

        retry_policies = _default_retry_policies()
        for kind, policy in data.get("RETRY_POLICIES", {}).items():
            retry_policies[kind] = RetryPolicySettings(**policy)

        return cls(
            system=SystemSettings(
                PROJECT_NAME=data.get("PROJECT_NAME", "charter_lifecycle"),
                VERSION=data.get("VERSION", "1.0.0"),
                DEBUG=data.get("DEBUG", True),
                ENVIRONMENT=os.getenv("ENVIRONMENT", data.get("ENVIRONMENT", "development")),
                COMPONENT_MODE=os.getenv("COMPONENT_MODE", data.get("COMPONENT_MODE", "all")),
            ),
            deployment=DeploymentSettings(
                HEALTH_HOST=data.get("HEALTH_HOST", "0.0.0.0"),
                HEALTH_PORT=int(os.getenv("HEALTH_PORT", data.get("HEALTH_PORT", 8095))),
                WORKER_INSTANCES_COUNT=data.get("WORKER_INSTANCES_COUNT", 1),
            ),
            logging=LoggingSettings(
                LOG_LEVEL=data.get("LOG_LEVEL", "DEBUG"),
                LOG_TO_FILE=data.get("LOG_TO_FILE", True),
                LOG_FILE_PATH=data.get("LOG_FILE_PATH", "logs/app.log"),
                LOG_FORMAT=data.get("LOG_FORMAT", "json"),
                LOG_MAX_BYTES=data.get("LOG_MAX_BYTES", 10485760),
            ),
            database=DatabaseSettings(
                DB_HOST=os.getenv("DB_HOST", data.get("DB_HOST", "localhost")),
                DB_PORT=int(os.getenv("DB_PORT", data.get("DB_PORT", 5432))),
                DB_NAME=os.getenv("DB_NAME", data.get("DB_NAME", "charter")),
                DB_USER=os.getenv("DB_USER", data.get("DB_USER", "postgres")),
                DB_PASSWORD=os.getenv("DB_PASSWORD", data.get("DB_PASSWORD", "")),
                DB_MIN_POOL_SIZE=data.get("DB_MIN_POOL_SIZE", 5),
                DB_MAX_POOL_SIZE=data.get("DB_MAX_POOL_SIZE", 20),
                DB_COMMAND_TIMEOUT=data.get("DB_COMMAND_TIMEOUT", 60),
                DB_RETRY_ATTEMPTS=data.get("DB_RETRY_ATTEMPTS", 3),
                DB_RETRY_DELAY=data.get("DB_RETRY_DELAY", 1.0),
                DB_TRANSACTIONS_ENABLED=data.get("DB_TRANSACTIONS_ENABLED", True),
            ),
            redis=RedisSettings(
                REDIS_HOST=os.getenv("REDIS_HOST", data.get("REDIS_HOST", "localhost")),
                REDIS_PORT=int(os.getenv("REDIS_PORT", data.get("REDIS_PORT", 6379))),
                REDIS_DB=data.get("REDIS_DB", 0),
                REDIS_PASSWORD=os.getenv("REDIS_PASSWORD", data.get("REDIS_PASSWORD", "")),
                REDIS_NAMESPACE=data.get("REDIS_NAMESPACE", "charter"),
                REDIS_MAX_CONNECTIONS=data.get("REDIS_MAX_CONNECTIONS", 50),
            ),
            rabbitmq=RabbitMQSettings(
                RABBITMQ_HOST=os.getenv("RABBITMQ_HOST", data.get("RABBITMQ_HOST", "localhost")),
                RABBITMQ_PORT=int(os.getenv("RABBITMQ_PORT", data.get("RABBITMQ_PORT", 5672))),
                RABBITMQ_USER=os.getenv("RABBITMQ_USER", data.get("RABBITMQ_USER", "guest")),
                RABBITMQ_PASSWORD=os.getenv("RABBITMQ_PASSWORD", data.get("RABBITMQ_PASSWORD", "guest")),
                RABBITMQ_VHOST=data.get("RABBITMQ_VHOST", "/"),
                RABBITMQ_EXCHANGE=data.get("RABBITMQ_EXCHANGE", "charter.events"),
                RABBITMQ_PREFETCH_COUNT=data.get("RABBITMQ_PREFETCH_COUNT", 10),
            ),
            queue=QueueSettings(
                JOB_POLL_INTERVAL=data.get("JOB_POLL_INTERVAL", 1.0),
                JOB_BATCH_SIZE=data.get("JOB_BATCH_SIZE", 20),
                JOB_LEASE_SECONDS=data.get("JOB_LEASE_SECONDS", 300),
                RETRY_POLICIES=retry_policies,
            ),
            lifecycle=LifecycleSettings(
                PAYMENT_WINDOW_HOURS=data.get("PAYMENT_WINDOW_HOURS", 24.0),
                AUTO_COMPLETE_GRACE_HOURS=data.get("AUTO_COMPLETE_GRACE_HOURS", 24.0),
                DRIVER_COOLDOWN_HOURS=data.get("DRIVER_COOLDOWN_HOURS", 24.0),
                PENDING_QUOTES_INTERVAL_MINUTES=data.get("PENDING_QUOTES_INTERVAL_MINUTES", 10.0),
                ASSIGN_DRIVER_RETRY_DELAY_SECONDS=data.get("ASSIGN_DRIVER_RETRY_DELAY_SECONDS", 60.0),
                SOON_START_THRESHOLD_HOURS=data.get("SOON_START_THRESHOLD_HOURS", 2.0),
                QUOTE_REQUIRED_STEP=data.get("QUOTE_REQUIRED_STEP", 5),
                DEFAULT_CURRENCY=data.get("DEFAULT_CURRENCY", "INR"),
            ),
            location=LocationSettings(
                LOCATION_THROTTLE_MS=data.get("LOCATION_THROTTLE_MS", 5000),
                LOCATION_TTL_SECONDS=data.get("LOCATION_TTL_SECONDS", 86400),
            ),
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Возвращает синглтон настроек приложения.
    Использует кэширование для производительности.
    """
    from dotenv import load_dotenv

    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


# Экспорт синглтона для удобного импорта
settings = get_settings()
