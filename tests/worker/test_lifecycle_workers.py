# tests/worker/test_lifecycle_workers.py
"""
Unit тесты воркеров жизненного цикла и событий оплаты.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from src.common.constants import DriverStatus, ErrorCode, JobKind
from src.common.exceptions import StateConflictError
from src.infra.event_bus import DomainEvent, EventTypes
from src.core.notifications.dispatcher import SideEffectDispatcher
from src.core.quotes.service import QuoteLifecycleService
from src.core.trips.service import TripLifecycleService
from src.infra.job_queue import DelayedJob, JobQueue
from src.worker.lifecycle import (
    DriverAssignmentWorker,
    DriverCooldownWorker,
    QuoteExpiryWorker,
    TripAutoCompleteWorker,
)
from src.worker.payments import PaymentEventsWorker
from tests.helpers import NOW, make_driver


def _job(kind: JobKind, correlation_id: str, **payload) -> DelayedJob:
    return DelayedJob(kind=kind, correlation_id=correlation_id, fire_at=NOW, payload=payload)


@pytest.fixture
def quotes() -> MagicMock:
    service = MagicMock()
    service.expire_quote = AsyncMock(return_value=True)
    service.try_assign_driver_to_quote = AsyncMock()
    service.process_pending_quotes = AsyncMock(return_value=2)
    service.handle_payment_succeeded = AsyncMock()
    return service


@pytest.fixture
def trips() -> MagicMock:
    service = MagicMock()
    service.auto_complete_trip = AsyncMock(return_value=True)
    service.release_driver_after_cooldown = AsyncMock(return_value=True)
    return service


class TestQuoteExpiryWorker:

    def test_kinds(self, mock_queue, quotes) -> None:
        assert QuoteExpiryWorker(mock_queue, quotes, poll_interval=1).kinds == [JobKind.QUOTE_EXPIRY]

    @pytest.mark.asyncio
    async def test_expires_quote_from_payload(self, mock_queue, quotes) -> None:
        worker = QuoteExpiryWorker(mock_queue, quotes, poll_interval=1)

        await worker.handle_job(_job(JobKind.QUOTE_EXPIRY, "quote-1", quote_id="quote-1"))

        quotes.expire_quote.assert_awaited_once_with("quote-1")

    @pytest.mark.asyncio
    async def test_falls_back_to_correlation_id(self, mock_queue, quotes) -> None:
        worker = QuoteExpiryWorker(mock_queue, quotes, poll_interval=1)

        await worker.handle_job(_job(JobKind.QUOTE_EXPIRY, "quote-7"))

        quotes.expire_quote.assert_awaited_once_with("quote-7")


class TestTripWorkers:

    @pytest.mark.asyncio
    async def test_auto_complete(self, mock_queue, trips) -> None:
        worker = TripAutoCompleteWorker(mock_queue, trips, poll_interval=1)

        await worker.handle_job(_job(JobKind.TRIP_AUTO_COMPLETE, "res-1", reservation_id="res-1"))

        trips.auto_complete_trip.assert_awaited_once_with("res-1")

    @pytest.mark.asyncio
    async def test_cooldown_releases_driver(self, mock_queue, trips) -> None:
        worker = DriverCooldownWorker(mock_queue, trips, poll_interval=1)

        await worker.handle_job(
            _job(JobKind.DRIVER_COOLDOWN, "driver-1:res-1", driver_id="driver-1", reservation_id="res-1"),
        )

        trips.release_driver_after_cooldown.assert_awaited_once_with("driver-1", "res-1")

    @pytest.mark.asyncio
    async def test_cooldown_without_driver_skipped(self, mock_queue, trips) -> None:
        worker = DriverCooldownWorker(mock_queue, trips, poll_interval=1)

        await worker.handle_job(_job(JobKind.DRIVER_COOLDOWN, "broken"))

        trips.release_driver_after_cooldown.assert_not_called()

    @pytest.mark.asyncio
    async def test_cooldown_error_propagates_for_retry(self, mock_queue, trips) -> None:
        trips.release_driver_after_cooldown.side_effect = ConnectionError("db down")
        worker = DriverCooldownWorker(mock_queue, trips, poll_interval=1)

        with pytest.raises(ConnectionError):
            await worker._on_job(_job(JobKind.DRIVER_COOLDOWN, "driver-1:res-1", driver_id="driver-1"))


class TestDriverAssignmentWorker:

    def test_kinds(self, mock_queue, quotes) -> None:
        worker = DriverAssignmentWorker(mock_queue, quotes, poll_interval=1)
        assert worker.kinds == [JobKind.ASSIGN_DRIVER, JobKind.PROCESS_PENDING_QUOTES]

    @pytest.mark.asyncio
    async def test_single_assignment(self, mock_queue, quotes) -> None:
        worker = DriverAssignmentWorker(mock_queue, quotes, poll_interval=1)

        await worker.handle_job(_job(JobKind.ASSIGN_DRIVER, "quote-1", quote_id="quote-1"))

        quotes.try_assign_driver_to_quote.assert_awaited_once_with("quote-1")
        quotes.process_pending_quotes.assert_not_called()

    @pytest.mark.asyncio
    async def test_pending_sweep(self, mock_queue, quotes) -> None:
        worker = DriverAssignmentWorker(mock_queue, quotes, poll_interval=1)

        await worker.handle_job(_job(JobKind.PROCESS_PENDING_QUOTES, "driver-freed-driver-1", driver_id="driver-1"))

        quotes.process_pending_quotes.assert_awaited_once_with()


class TestPaymentEventsWorker:

    @pytest.fixture
    def worker(self, mock_queue, mock_event_bus, quotes) -> PaymentEventsWorker:
        return PaymentEventsWorker(mock_queue, mock_event_bus, quotes, poll_interval=1)

    def test_subscriptions(self, worker: PaymentEventsWorker) -> None:
        assert worker.subscriptions == [EventTypes.PAYMENT_SUCCEEDED]
        assert worker.kinds == []

    @pytest.mark.asyncio
    async def test_marks_quote_paid(self, worker: PaymentEventsWorker, quotes) -> None:
        await worker.handle_event(DomainEvent(event_type=EventTypes.PAYMENT_SUCCEEDED, payload={"quote_id": "quote-1"}))

        quotes.handle_payment_succeeded.assert_awaited_once_with("quote-1")

    @pytest.mark.asyncio
    async def test_event_without_quote_ignored(self, worker: PaymentEventsWorker, quotes) -> None:
        await worker.handle_event(DomainEvent(event_type=EventTypes.PAYMENT_SUCCEEDED, payload={}))

        quotes.handle_payment_succeeded.assert_not_called()

    @pytest.mark.asyncio
    async def test_domain_error_logged(self, worker: PaymentEventsWorker, quotes) -> None:
        quotes.handle_payment_succeeded.side_effect = StateConflictError(ErrorCode.INVALID_QUOTE_STATUS)

        await worker.handle_event(DomainEvent(event_type=EventTypes.PAYMENT_SUCCEEDED, payload={"quote_id": "quote-1"}))

        quotes.handle_payment_succeeded.assert_awaited_once()


class TestDatabaseErrorsAreRetried:
    """Сбой БД в обработчике не выдаётся за выполненную задачу: очередь повторяет попытку."""

    @pytest.fixture
    def queue(self, memory_redis, clock) -> JobQueue:
        return JobQueue(memory_redis, clock=clock)

    @pytest.mark.asyncio
    async def test_cooldown_retried_after_db_error(self, queue, clock, mock_notifier, lifecycle) -> None:
        drivers = AsyncMock()
        drivers.get_by_id = AsyncMock(side_effect=[
            ConnectionError("db down"),
            make_driver(status=DriverStatus.ON_TRIP),
        ])
        drivers.update_status = AsyncMock(return_value=True)
        reservations = AsyncMock()
        reservations.find_active_by_driver = AsyncMock(return_value=None)
        trips = TripLifecycleService(
            reservations, AsyncMock(), drivers, queue, AsyncMock(), AsyncMock(),
            mock_notifier, SideEffectDispatcher(), lifecycle=lifecycle, clock=clock,
        )
        worker = DriverCooldownWorker(queue, trips, poll_interval=1)
        await queue.enqueue(
            JobKind.DRIVER_COOLDOWN, "driver-1:res-1", clock(), {"driver_id": "driver-1", "reservation_id": "res-1"},
        )

        await worker.run_once(JobKind.DRIVER_COOLDOWN)

        drivers.update_status.assert_not_called()
        retry = await queue.get(JobKind.DRIVER_COOLDOWN, "driver-1:res-1")
        assert retry.attempts == 1
        assert retry.last_error == "ConnectionError: db down"

        clock.advance(seconds=2)
        await worker.run_once(JobKind.DRIVER_COOLDOWN)

        drivers.update_status.assert_awaited_once_with("driver-1", DriverStatus.AVAILABLE, clock())
        assert await queue.is_scheduled(JobKind.DRIVER_COOLDOWN, "driver-1:res-1") is False

    @pytest.mark.asyncio
    async def test_assign_driver_retried_after_db_error(self, queue, clock, mock_notifier, lifecycle) -> None:
        quote_repo = AsyncMock()
        quote_repo.get_by_id = AsyncMock(side_effect=[ConnectionError("db down"), None])
        quotes = QuoteLifecycleService(quote_repo, AsyncMock(), queue, mock_notifier, lifecycle=lifecycle, clock=clock)
        worker = DriverAssignmentWorker(queue, quotes, poll_interval=1)
        await queue.enqueue(JobKind.ASSIGN_DRIVER, "quote-1", clock(), {"quote_id": "quote-1"})

        await worker.run_once(JobKind.ASSIGN_DRIVER)

        assert (await queue.get(JobKind.ASSIGN_DRIVER, "quote-1")).attempts == 1

        clock.advance(seconds=2)
        await worker.run_once(JobKind.ASSIGN_DRIVER)

        assert quote_repo.get_by_id.await_count == 2
        assert (await queue.stats())["assign-driver"] == {"pending": 0, "active": 0, "failed": 0}
