# src/worker/container.py
"""
Сборка сервисов жизненного цикла.
Очередь, диспетчер и уведомления создаются один раз на процесс и передаются
всем сервисам через конструкторы.
"""

from __future__ import annotations

from dataclasses import dataclass

from src.common.clock import Clock, utc_now
from src.config.loader import Settings
from src.core.assignment.service import DriverAssignmentEngine
from src.core.drivers.repository import DriverPaymentRepository, DriverRepository
from src.core.earnings.service import DriverEarningsLedger
from src.core.notifications.dispatcher import SideEffectDispatcher
from src.core.notifications.service import Notifier
from src.core.pricing.repository import PricingRepository
from src.core.quotes.repository import QuoteRepository
from src.core.quotes.service import QuoteLifecycleService
from src.core.startup.backfill import LifecycleBackfill
from src.core.trips.location import LocationThrottle
from src.core.trips.repository import ChargeRepository, ReservationRepository
from src.core.trips.service import TripLifecycleService
from src.infra.database import DatabaseManager
from src.infra.event_bus import EventBus
from src.infra.job_queue import JobQueue
from src.infra.redis_client import RedisClient
from src.infra.transactions import TransactionalWriter


@dataclass
class LifecycleContainer:
    """Готовые к работе сервисы процесса."""
    job_queue: JobQueue
    dispatcher: SideEffectDispatcher
    notifier: Notifier
    quotes: QuoteLifecycleService
    trips: TripLifecycleService
    ledger: DriverEarningsLedger
    backfill: LifecycleBackfill


def build_container(
    db: DatabaseManager,
    redis: RedisClient,
    event_bus: EventBus,
    settings: Settings | None = None,
    clock: Clock | None = None,
) -> LifecycleContainer:
    """Собирает сервисы поверх уже подключённой инфраструктуры."""
    if settings is None:
        from src.config import settings

    clock = clock or utc_now
    lifecycle = settings.lifecycle

    job_queue = JobQueue.from_settings(redis, clock=clock)
    dispatcher = SideEffectDispatcher()
    notifier = Notifier(event_bus, dispatcher)

    quote_repo = QuoteRepository(db)
    reservation_repo = ReservationRepository(db)
    driver_repo = DriverRepository(db)

    engine = DriverAssignmentEngine(
        driver_repo, quote_repo, PricingRepository(db), lifecycle=lifecycle, clock=clock,
    )
    quotes = QuoteLifecycleService(quote_repo, engine, job_queue, notifier, lifecycle=lifecycle, clock=clock)

    ledger = DriverEarningsLedger(
        reservation_repo,
        quote_repo,
        driver_repo,
        DriverPaymentRepository(db),
        TransactionalWriter(db, enabled=settings.database.DB_TRANSACTIONS_ENABLED),
        lifecycle=lifecycle,
        clock=clock,
    )
    location = LocationThrottle(
        redis,
        reservation_repo,
        notifier,
        throttle_ms=settings.location.LOCATION_THROTTLE_MS,
        ttl_seconds=settings.location.LOCATION_TTL_SECONDS,
        clock=clock,
    )
    trips = TripLifecycleService(
        reservation_repo,
        ChargeRepository(db),
        driver_repo,
        job_queue,
        location,
        ledger,
        notifier,
        dispatcher,
        lifecycle=lifecycle,
        clock=clock,
    )
    backfill = LifecycleBackfill(reservation_repo, quote_repo, job_queue, lifecycle=lifecycle, clock=clock)

    return LifecycleContainer(
        job_queue=job_queue,
        dispatcher=dispatcher,
        notifier=notifier,
        quotes=quotes,
        trips=trips,
        ledger=ledger,
        backfill=backfill,
    )
