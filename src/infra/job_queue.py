# src/infra/job_queue.py
"""
Очередь отложенных задач на Redis.

Гарантии:
- доставка at-least-once: обработчик может быть вызван повторно и обязан быть идемпотентным;
- не более одной живой (ожидающей или выполняющейся) задачи на пару (kind, correlation_id):
  повторный enqueue возвращает существующую задачу, для переноса нужен reschedule;
- cancel снимает задачу из ожидающих, но не прерывает уже выполняющуюся.

Структура ключей для каждого вида задач:
    jobs:{kind}:pending   ZSET  correlation_id -> fire_at (unix seconds)
    jobs:{kind}:payload   HASH  correlation_id -> DelayedJob JSON (прямой индекс)
    jobs:{kind}:active    HASH  correlation_id -> DelayedJob JSON (выполняется)
    jobs:{kind}:leases    ZSET  correlation_id -> срок аренды
    jobs:{kind}:failed    HASH  job_id -> DelayedJob JSON (исчерпаны попытки)

Каждый переход между pending/payload и active/leases выполняется одним Lua-скриптом:
обрыв соединения или падение процесса не оставляет задачу наполовину перенесённой.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from src.common.clock import Clock, utc_now
from src.common.constants import JobKind, TypeMsg
from src.common.logger import log_debug, log_error, log_info, log_warning
from src.infra.redis_client import RedisClient

LOGGER = "jobs"


# =============================================================================
# LUA-СКРИПТЫ
# =============================================================================

# KEYS: payload, pending, active, leases
# ARGV: correlation_id, job JSON, fire_at score, "1" = вытеснить выполняющийся экземпляр
SCHEDULE_LUA = """
if ARGV[4] == '1' then
    redis.call('HDEL', KEYS[3], ARGV[1])
    redis.call('ZREM', KEYS[4], ARGV[1])
elseif redis.call('HEXISTS', KEYS[3], ARGV[1]) == 1 then
    return 0
end
if redis.call('HSETNX', KEYS[1], ARGV[1], ARGV[2]) == 0 then
    return 0
end
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
return 1
"""

# KEYS: pending, payload
# ARGV: correlation_id
CANCEL_LUA = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 0 then
    return 0
end
redis.call('HDEL', KEYS[2], ARGV[1])
return 1
"""

# KEYS: pending, payload, active, leases
# ARGV: correlation_id, lease deadline score
CLAIM_LUA = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 0 then
    return false
end
local raw = redis.call('HGET', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[2], ARGV[1])
if not raw then
    return false
end
redis.call('HSET', KEYS[3], ARGV[1], raw)
redis.call('ZADD', KEYS[4], ARGV[2], ARGV[1])
return raw
"""

# KEYS: active, leases
# ARGV: correlation_id, job_id
RELEASE_LUA = """
local raw = redis.call('HGET', KEYS[1], ARGV[1])
if not raw then
    return 0
end
if cjson.decode(raw)['job_id'] ~= ARGV[2] then
    return 0
end
redis.call('HDEL', KEYS[1], ARGV[1])
redis.call('ZREM', KEYS[2], ARGV[1])
return 1
"""

# KEYS: leases, active, payload, pending
# ARGV: correlation_id, fire_at score
RECOVER_LUA = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 0 then
    return 0
end
local raw = redis.call('HGET', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[2], ARGV[1])
if not raw then
    return 0
end
if redis.call('HSETNX', KEYS[3], ARGV[1], raw) == 0 then
    return 0
end
redis.call('ZADD', KEYS[4], ARGV[2], ARGV[1])
return 1
"""


# =============================================================================
# МОДЕЛИ
# =============================================================================

class DelayedJob(BaseModel):
    """Отложенная задача."""

    job_id: str = Field(default_factory=lambda: str(uuid4()), description="Уникальный ID экземпляра")
    kind: JobKind = Field(..., description="Вид задачи")
    correlation_id: str = Field(..., description="Ключ идемпотентности (сущность)")
    fire_at: datetime = Field(..., description="Время срабатывания")
    payload: dict[str, Any] = Field(default_factory=dict, description="Данные для обработчика")
    attempts: int = Field(0, ge=0, description="Сделано попыток")
    max_attempts: int = Field(1, ge=1, description="Лимит попыток")
    repeat_every: Optional[int] = Field(None, description="Период повтора в секундах")
    last_error: Optional[str] = Field(None, description="Последняя ошибка обработчика")


@dataclass(frozen=True)
class JobHandle:
    """Результат постановки задачи."""
    job_id: str
    kind: JobKind
    correlation_id: str
    fire_at: datetime
    created: bool


@dataclass(frozen=True)
class RetryPolicy:
    """Политика повторов: число попыток и экспоненциальная задержка."""
    max_attempts: int = 1
    backoff_seconds: float = 0.0

    def delay_for(self, attempt: int) -> float:
        """Задержка перед следующей попыткой после неудачной попытки номер attempt."""
        return self.backoff_seconds * (2 ** max(attempt - 1, 0))


DEFAULT_RETRY_POLICIES: dict[JobKind, RetryPolicy] = {
    JobKind.QUOTE_EXPIRY: RetryPolicy(max_attempts=3, backoff_seconds=5.0),
    JobKind.TRIP_AUTO_COMPLETE: RetryPolicy(max_attempts=1),
    JobKind.DRIVER_COOLDOWN: RetryPolicy(max_attempts=3, backoff_seconds=2.0),
    JobKind.ASSIGN_DRIVER: RetryPolicy(max_attempts=3, backoff_seconds=2.0),
    JobKind.PROCESS_PENDING_QUOTES: RetryPolicy(max_attempts=2, backoff_seconds=5.0),
}


JobHandler = Callable[[DelayedJob], Awaitable[Any]]


def _score(moment: datetime) -> float:
    return moment.timestamp()


# =============================================================================
# ОЧЕРЕДЬ
# =============================================================================

class JobQueue:
    """
    Долговременная очередь отложенных задач.
    Создаётся один раз при старте процесса и передаётся компонентам через конструктор.
    """

    def __init__(
        self,
        redis: RedisClient,
        policies: dict[JobKind, RetryPolicy] | None = None,
        lease_seconds: int = 300,
        batch_size: int = 20,
        clock: Clock | None = None,
    ) -> None:
        self._redis = redis
        self._policies = {**DEFAULT_RETRY_POLICIES, **(policies or {})}
        self._lease_seconds = lease_seconds
        self._batch_size = batch_size
        self._clock = clock or utc_now

    @classmethod
    def from_settings(cls, redis: RedisClient, clock: Clock | None = None) -> JobQueue:
        """Собирает очередь из секции queue конфигурации."""
        from src.config import settings

        policies = {
            JobKind(kind): RetryPolicy(policy.ATTEMPTS, policy.BACKOFF_SECONDS)
            for kind, policy in settings.queue.RETRY_POLICIES.items()
            if kind in {k.value for k in JobKind}
        }
        return cls(
            redis,
            policies=policies,
            lease_seconds=settings.queue.JOB_LEASE_SECONDS,
            batch_size=settings.queue.JOB_BATCH_SIZE,
            clock=clock,
        )

    def policy_for(self, kind: JobKind) -> RetryPolicy:
        return self._policies.get(kind, RetryPolicy())

    # ключи

    @staticmethod
    def _pending_key(kind: JobKind) -> str:
        return f"jobs:{kind.value}:pending"

    @staticmethod
    def _payload_key(kind: JobKind) -> str:
        return f"jobs:{kind.value}:payload"

    @staticmethod
    def _active_key(kind: JobKind) -> str:
        return f"jobs:{kind.value}:active"

    @staticmethod
    def _leases_key(kind: JobKind) -> str:
        return f"jobs:{kind.value}:leases"

    @staticmethod
    def _failed_key(kind: JobKind) -> str:
        return f"jobs:{kind.value}:failed"

    async def _schedule(self, job: DelayedJob, supersede_active: bool = False) -> bool:
        """Атомарно пишет payload и pending. False если живая задача уже есть."""
        created = await self._redis.eval_script(
            SCHEDULE_LUA,
            keys=[
                self._payload_key(job.kind),
                self._pending_key(job.kind),
                self._active_key(job.kind),
                self._leases_key(job.kind),
            ],
            args=[job.correlation_id, job.model_dump_json(), _score(job.fire_at), "1" if supersede_active else "0"],
        )
        return bool(created)

    # =========================================================================
    # ПОСТАНОВКА И ОТМЕНА
    # =========================================================================

    async def enqueue(
        self,
        kind: JobKind,
        correlation_id: str,
        fire_at: datetime,
        payload: dict[str, Any] | None = None,
        *,
        repeat_every: int | None = None,
    ) -> JobHandle:
        """
        Ставит задачу на время fire_at.

        Если для (kind, correlation_id) уже есть ожидающая или выполняющаяся задача,
        новая не создаётся: возвращается handle существующей с created=False.
        """
        return await self._enqueue(kind, correlation_id, fire_at, payload, repeat_every=repeat_every)

    async def _enqueue(
        self,
        kind: JobKind,
        correlation_id: str,
        fire_at: datetime,
        payload: dict[str, Any] | None = None,
        *,
        repeat_every: int | None = None,
        supersede_active: bool = False,
    ) -> JobHandle:
        job = DelayedJob(
            kind=kind,
            correlation_id=correlation_id,
            fire_at=fire_at,
            payload=payload or {},
            max_attempts=self.policy_for(kind).max_attempts,
            repeat_every=repeat_every,
        )

        if not await self._schedule(job, supersede_active=supersede_active):
            existing = await self.get(kind, correlation_id) or await self._get_active(kind, correlation_id)
            await log_debug(
                f"Задача {kind.value}:{correlation_id} уже запланирована, дубликат отклонён",
                logger_name=LOGGER,
            )
            if existing is not None:
                return JobHandle(existing.job_id, kind, correlation_id, existing.fire_at, created=False)
            return JobHandle(job.job_id, kind, correlation_id, fire_at, created=False)

        await log_debug(
            f"Задача {kind.value}:{correlation_id} запланирована на {fire_at.isoformat()}",
            logger_name=LOGGER,
            extra={"job_id": job.job_id, "kind": kind.value, "correlation_id": correlation_id},
        )
        return JobHandle(job.job_id, kind, correlation_id, fire_at, created=True)

    async def enqueue_in(
        self,
        kind: JobKind,
        correlation_id: str,
        delay_seconds: float,
        payload: dict[str, Any] | None = None,
        *,
        repeat_every: int | None = None,
    ) -> JobHandle:
        """Ставит задачу через delay_seconds от текущего момента (отрицательная задержка = сейчас)."""
        fire_at = self._clock() + timedelta(seconds=max(delay_seconds, 0.0))
        return await self.enqueue(kind, correlation_id, fire_at, payload, repeat_every=repeat_every)

    async def ensure_recurring(self, kind: JobKind, correlation_id: str, interval_seconds: int) -> bool:
        """
        Гарантирует, что периодическая задача существует (первый запуск через interval_seconds).

        Returns:
            True если задача создана этим вызовом
        """
        if await self.is_scheduled(kind, correlation_id):
            return False
        handle = await self.enqueue_in(kind, correlation_id, interval_seconds, repeat_every=interval_seconds)
        return handle.created

    async def cancel(self, kind: JobKind, correlation_id: str) -> bool:
        """
        Снимает ожидающую задачу. Выполняющаяся задача не прерывается.

        Returns:
            True если задача была снята
        """
        removed = await self._redis.eval_script(
            CANCEL_LUA,
            keys=[self._pending_key(kind), self._payload_key(kind)],
            args=[correlation_id],
        )
        if removed:
            await log_debug(f"Задача {kind.value}:{correlation_id} отменена", logger_name=LOGGER)
        return bool(removed)

    async def reschedule(
        self,
        kind: JobKind,
        correlation_id: str,
        fire_at: datetime,
        payload: dict[str, Any] | None = None,
    ) -> JobHandle:
        """
        Переносит задачу: cancel + enqueue.
        Выполняющийся экземпляр дорабатывает, но живой считается только новая задача.
        """
        await self.cancel(kind, correlation_id)
        return await self._enqueue(kind, correlation_id, fire_at, payload, supersede_active=True)

    async def get(self, kind: JobKind, correlation_id: str) -> DelayedJob | None:
        """Ожидающая задача по correlation_id."""
        raw = await self._redis.hget(self._payload_key(kind), correlation_id)
        return DelayedJob.model_validate_json(raw) if raw else None

    async def _get_active(self, kind: JobKind, correlation_id: str) -> DelayedJob | None:
        raw = await self._redis.hget(self._active_key(kind), correlation_id)
        return DelayedJob.model_validate_json(raw) if raw else None

    async def is_scheduled(self, kind: JobKind, correlation_id: str) -> bool:
        """Есть ли живая (ожидающая или выполняющаяся) задача."""
        if await self._redis.hexists(self._payload_key(kind), correlation_id):
            return True
        return await self._redis.hexists(self._active_key(kind), correlation_id)

    # =========================================================================
    # ВЫБОРКА И ВЫПОЛНЕНИЕ
    # =========================================================================

    async def dequeue_and_execute(self, kind: JobKind, handler: JobHandler) -> int:
        """
        Забирает созревшие задачи вида kind и выполняет их обработчиком.
        Вызывается циклом воркера.

        Returns:
            Количество обработанных задач
        """
        await self.recover_expired_leases(kind)

        jobs = await self._claim_due(kind)
        for job in jobs:
            await self._execute(job, handler)
        return len(jobs)

    async def _claim_due(self, kind: JobKind) -> list[DelayedJob]:
        """
        Захватывает созревшие задачи.
        Задачей владеет тот воркер, чей скрипт захвата снял её из pending.
        """
        now = self._clock()
        members = await self._redis.zrangebyscore(
            self._pending_key(kind), "-inf", _score(now), limit=self._batch_size,
        )

        claimed: list[DelayedJob] = []
        for correlation_id in members:
            raw = await self._redis.eval_script(
                CLAIM_LUA,
                keys=[
                    self._pending_key(kind),
                    self._payload_key(kind),
                    self._active_key(kind),
                    self._leases_key(kind),
                ],
                args=[correlation_id, _score(now) + self._lease_seconds],
            )
            if raw:
                claimed.append(DelayedJob.model_validate_json(raw))

        return claimed

    async def _execute(self, job: DelayedJob, handler: JobHandler) -> bool:
        """Выполняет задачу и применяет политику повторов."""
        job.attempts += 1
        try:
            await handler(job)
        except Exception as e:
            job.last_error = f"{type(e).__name__}: {e}"
            await self._release(job)
            await self._handle_failure(job)
            return False

        await self._release(job)
        await log_debug(
            f"Задача {job.kind.value}:{job.correlation_id} выполнена (попытка {job.attempts})",
            logger_name=LOGGER,
        )
        await self._schedule_next_occurrence(job)
        return True

    async def _handle_failure(self, job: DelayedJob) -> None:
        if job.attempts < job.max_attempts:
            delay = self.policy_for(job.kind).delay_for(job.attempts)
            job.fire_at = self._clock() + timedelta(seconds=delay)
            # Повтор ставится только если задачу не перепланировали заново
            await self._schedule(job)
            await log_warning(
                f"Задача {job.kind.value}:{job.correlation_id} упала "
                f"(попытка {job.attempts}/{job.max_attempts}), повтор через {delay:.1f}с: {job.last_error}",
                logger_name=LOGGER,
            )
            return

        await self._redis.hset(self._failed_key(job.kind), job.job_id, job.model_dump_json())
        await log_error(
            f"Задача {job.kind.value}:{job.correlation_id} исчерпала попытки: {job.last_error}",
            logger_name=LOGGER,
            extra={"job_id": job.job_id, "attempts": job.attempts},
        )
        await self._schedule_next_occurrence(job)

    async def _schedule_next_occurrence(self, job: DelayedJob) -> None:
        """Для периодической задачи ставит следующий запуск."""
        if not job.repeat_every:
            return
        await self.enqueue(
            job.kind,
            job.correlation_id,
            self._clock() + timedelta(seconds=job.repeat_every),
            job.payload,
            repeat_every=job.repeat_every,
        )

    async def _release(self, job: DelayedJob) -> None:
        """Снимает аренду, если она всё ещё принадлежит этому экземпляру задачи."""
        await self._redis.eval_script(
            RELEASE_LUA,
            keys=[self._active_key(job.kind), self._leases_key(job.kind)],
            args=[job.correlation_id, job.job_id],
        )

    async def recover_expired_leases(self, kind: JobKind) -> int:
        """
        Возвращает в ожидание задачи, чей воркер умер, не успев завершить.

        Returns:
            Количество восстановленных задач
        """
        now = self._clock()
        expired = await self._redis.zrangebyscore(self._leases_key(kind), "-inf", _score(now))

        recovered = 0
        for correlation_id in expired:
            recovered += int(await self._redis.eval_script(
                RECOVER_LUA,
                keys=[
                    self._leases_key(kind),
                    self._active_key(kind),
                    self._payload_key(kind),
                    self._pending_key(kind),
                ],
                args=[correlation_id, _score(now)],
            ) or 0)

        if recovered:
            await log_warning(
                f"Восстановлено {recovered} задач {kind.value} с истёкшей арендой",
                logger_name=LOGGER,
            )
        return recovered

    # =========================================================================
    # СТАТИСТИКА
    # =========================================================================

    async def stats(self) -> dict[str, dict[str, int]]:
        """Размеры очередей по видам задач."""
        result: dict[str, dict[str, int]] = {}
        for kind in JobKind:
            result[kind.value] = {
                "pending": await self._redis.zcard(self._pending_key(kind)),
                "active": await self._redis.hlen(self._active_key(kind)),
                "failed": await self._redis.hlen(self._failed_key(kind)),
            }
        return result


async def log_queue_ready(queue: JobQueue) -> None:
    """Пишет в лог текущие размеры очередей (при старте воркеров)."""
    stats = await queue.stats()
    await log_info(
        "Очередь задач готова: " + ", ".join(f"{k}={v['pending']}" for k, v in stats.items()),
        type_msg=TypeMsg.INFO,
        logger_name=LOGGER,
    )
