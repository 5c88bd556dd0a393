# src/infra/redis_client.py
"""
Клиент Redis для кэша геолокации и очереди отложенных задач.
Все ключи автоматически получают префикс namespace.
"""

from __future__ import annotations

import json
from typing import Any, Type, TypeVar

import redis.asyncio as redis
from pydantic import BaseModel

from src.common.logger import log_error, log_info
from src.common.constants import TypeMsg

T = TypeVar("T", bound=BaseModel)


class RedisClient:
    """
    Асинхронный клиент Redis.
    Поддерживает:
    - строковые ключи с TTL (маркеры троттлинга)
    - JSON и Pydantic модели (последняя геолокация)
    - Hash и Sorted Set операции (очередь задач)
    - Lua-скрипты для атомарных переходов задач
    """

    _instance: RedisClient | None = None
    _client: redis.Redis | None = None

    def __new__(cls) -> RedisClient:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        """Инициализация (вызывается только один раз благодаря Singleton)."""
        if hasattr(self, "_initialized"):
            return
        self._initialized = True
        self._client = None
        self._namespace = "charter"
        self._scripts: dict[str, Any] = {}

    @property
    def client(self) -> redis.Redis:
        """Возвращает клиент Redis."""
        if self._client is None:
            raise RuntimeError("Redis клиент не инициализирован. Вызовите connect() сначала.")
        return self._client

    def _make_key(self, key: str) -> str:
        """Добавляет namespace к ключу."""
        return f"{self._namespace}:{key}"

    async def connect(
        self,
        url: str | None = None,
        max_connections: int = 50,
        namespace: str | None = None,
    ) -> None:
        """
        Подключается к Redis.

        Args:
            url: URL Redis (если None, берётся из конфига)
            max_connections: Максимальное количество соединений
            namespace: Префикс ключей
        """
        if self._client is not None:
            return

        if url is None:
            from src.config import settings
            url = settings.redis.url
            max_connections = settings.redis.REDIS_MAX_CONNECTIONS
            namespace = settings.redis.REDIS_NAMESPACE

        if namespace:
            self._namespace = namespace

        await log_info("Подключение к Redis...", type_msg=TypeMsg.INFO, logger_name="redis")

        self._client = redis.from_url(
            url,
            max_connections=max_connections,
            decode_responses=True,
        )

        await self._client.ping()

        await log_info("Подключение к Redis установлено", type_msg=TypeMsg.INFO, logger_name="redis")

    async def disconnect(self) -> None:
        """Закрывает соединение с Redis."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._scripts.clear()
            await log_info("Соединение с Redis закрыто", type_msg=TypeMsg.INFO, logger_name="redis")

    # =========================================================================
    # БАЗОВЫЕ ОПЕРАЦИИ
    # =========================================================================

    async def get(self, key: str) -> str | None:
        """Получает значение по ключу."""
        return await self.client.get(self._make_key(key))

    async def set(
        self,
        key: str,
        value: str,
        ttl: int | None = None,
    ) -> bool:
        """
        Устанавливает значение.

        Args:
            key: Ключ
            value: Значение
            ttl: Время жизни в секундах

        Returns:
            True если успешно
        """
        return await self.client.set(self._make_key(key), value, ex=ttl)

    async def set_px(self, key: str, value: str, ttl_ms: int) -> bool:
        """Устанавливает значение с TTL в миллисекундах."""
        return await self.client.set(self._make_key(key), value, px=ttl_ms)

    async def delete(self, *keys: str) -> int:
        """Удаляет ключи и возвращает количество удалённых."""
        if not keys:
            return 0
        return await self.client.delete(*(self._make_key(k) for k in keys))

    async def exists(self, key: str) -> bool:
        """Проверяет существование ключа."""
        return await self.client.exists(self._make_key(key)) > 0

    # =========================================================================
    # ТИПИЗИРОВАННЫЕ ОПЕРАЦИИ (PYDANTIC / JSON)
    # =========================================================================

    async def get_model(self, key: str, model_class: Type[T]) -> T | None:
        """Получает и десериализует Pydantic модель (None при ошибке формата)."""
        data = await self.get(key)
        if data is None:
            return None

        try:
            return model_class.model_validate_json(data)
        except Exception as e:
            await log_error(
                f"Ошибка десериализации модели {model_class.__name__}: {e}",
                logger_name="redis",
            )
            return None

    async def set_model(
        self,
        key: str,
        model: BaseModel,
        ttl: int | None = None,
    ) -> bool:
        """Сериализует и сохраняет Pydantic модель."""
        return await self.set(key, model.model_dump_json(), ttl=ttl)

    async def get_json(self, key: str) -> dict | list | None:
        """Получает и парсит JSON."""
        data = await self.get(key)
        if data is None:
            return None

        try:
            return json.loads(data)
        except json.JSONDecodeError:
            return None

    async def set_json(
        self,
        key: str,
        data: dict | list,
        ttl: int | None = None,
    ) -> bool:
        """Сериализует и сохраняет JSON."""
        return await self.set(key, json.dumps(data, ensure_ascii=False, default=str), ttl=ttl)

    # =========================================================================
    # HASH ОПЕРАЦИИ
    # =========================================================================

    async def hget(self, name: str, key: str) -> str | None:
        """Получает значение из хеша."""
        return await self.client.hget(self._make_key(name), key)

    async def hset(self, name: str, key: str, value: str) -> int:
        """Устанавливает значение в хеше."""
        return await self.client.hset(self._make_key(name), key, value)

    async def hexists(self, name: str, key: str) -> bool:
        """Проверяет наличие поля в хеше."""
        return bool(await self.client.hexists(self._make_key(name), key))

    async def hlen(self, name: str) -> int:
        """Количество полей в хеше."""
        return await self.client.hlen(self._make_key(name))

    # =========================================================================
    # SORTED SET ОПЕРАЦИИ (очередь задач по времени срабатывания)
    # =========================================================================

    async def zrangebyscore(
        self,
        name: str,
        min_score: float | str,
        max_score: float | str,
        limit: int | None = None,
    ) -> list[str]:
        """Элементы с весом в диапазоне [min_score, max_score] по возрастанию."""
        if limit is None:
            return await self.client.zrangebyscore(self._make_key(name), min_score, max_score)
        return await self.client.zrangebyscore(
            self._make_key(name), min_score, max_score, start=0, num=limit,
        )

    async def zcard(self, name: str) -> int:
        """Размер отсортированного множества."""
        return await self.client.zcard(self._make_key(name))

    # =========================================================================
    # LUA-СКРИПТЫ (атомарные переходы очереди задач)
    # =========================================================================

    async def eval_script(self, source: str, keys: list[str], args: list[Any]) -> Any:
        """
        Выполняет Lua-скрипт через EVALSHA (скрипт регистрируется один раз).

        Args:
            source: Текст скрипта
            keys: Ключи без namespace
            args: Аргументы ARGV
        """
        script = self._scripts.get(source)
        if script is None:
            script = self.client.register_script(source)
            self._scripts[source] = script
        return await script(keys=[self._make_key(k) for k in keys], args=args)

    # =========================================================================
    # HEALTH CHECK
    # =========================================================================

    async def health_check(self) -> bool:
        """Проверяет, что Redis отвечает на PING."""
        try:
            return await self.client.ping()
        except Exception as e:
            await log_error(f"Health check Redis failed: {e}", logger_name="redis")
            return False


def get_redis() -> RedisClient:
    """Возвращает глобальный экземпляр RedisClient."""
    return RedisClient()


async def init_redis() -> None:
    """
    Инициализирует подключение к Redis.
    Использует настройки из конфигурации.
    """
    from src.config import settings

    redis_client = get_redis()
    await redis_client.connect(
        url=settings.redis.url,
        max_connections=settings.redis.REDIS_MAX_CONNECTIONS,
        namespace=settings.redis.REDIS_NAMESPACE,
    )
    await log_info(
        f"Redis подключён: {settings.redis.REDIS_HOST}:{settings.redis.REDIS_PORT}/{settings.redis.REDIS_DB}",
        type_msg=TypeMsg.INFO,
        logger_name="redis",
    )


async def close_redis() -> None:
    """Закрывает подключение к Redis."""
    await get_redis().disconnect()
