# tests/core/test_trips_service.py
"""
Тесты начала, завершения, автозавершения поездки и остывания водителя.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import asyncpg
import pytest

from src.common.constants import DriverStatus, ErrorCode, JobKind, ReservationStatus
from src.common.exceptions import NotFoundError, StateConflictError, ValidationError
from src.config.loader import LifecycleSettings
from src.core.notifications.dispatcher import SideEffectDispatcher
from src.core.trips.models import UnpaidChargesSummary
from src.core.trips.service import (
    TripLifecycleService,
    cooldown_correlation_id,
    driver_freed_correlation_id,
)
from tests.helpers import FrozenClock, make_driver, make_reservation


@pytest.fixture
def reservation_repo() -> AsyncMock:
    repo = AsyncMock()
    repo.get_by_id = AsyncMock(return_value=None)
    repo.find_active_by_driver = AsyncMock(return_value=None)
    repo.find_last_completed_by_driver = AsyncMock(return_value=None)
    repo.mark_started = AsyncMock(return_value=True)
    repo.mark_completed = AsyncMock(return_value=True)
    return repo


@pytest.fixture
def charge_repo() -> AsyncMock:
    repo = AsyncMock()
    repo.get_unpaid_summary = AsyncMock(return_value=UnpaidChargesSummary())
    return repo


@pytest.fixture
def driver_repo() -> AsyncMock:
    repo = AsyncMock()
    repo.get_by_id = AsyncMock(return_value=None)
    repo.update_status = AsyncMock(return_value=True)
    return repo


@pytest.fixture
def location() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def ledger() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def dispatcher() -> SideEffectDispatcher:
    return SideEffectDispatcher()


@pytest.fixture
def service(
    reservation_repo, charge_repo, driver_repo, mock_queue, location, ledger,
    mock_notifier, dispatcher, lifecycle: LifecycleSettings, clock: FrozenClock,
) -> TripLifecycleService:
    return TripLifecycleService(
        reservation_repo, charge_repo, driver_repo, mock_queue, location, ledger,
        mock_notifier, dispatcher, lifecycle=lifecycle, clock=clock,
    )


def test_correlation_ids() -> None:
    assert cooldown_correlation_id("d-1", "r-1") == "d-1:r-1"
    assert driver_freed_correlation_id("d-1") == "driver-freed-d-1"


# =============================================================================
# START
# =============================================================================

class TestStartTrip:

    @pytest.mark.asyncio
    async def test_starts_and_schedules_auto_complete(
        self, service, reservation_repo, driver_repo, mock_queue, mock_notifier, clock, lifecycle,
    ) -> None:
        reservation = make_reservation()
        reservation_repo.get_by_id.return_value = reservation

        started = await service.start_trip("driver-1", "res-1")

        assert started.started_at == clock()
        reservation_repo.mark_started.assert_awaited_once_with("res-1", clock())
        driver_repo.update_status.assert_awaited_once_with("driver-1", DriverStatus.ON_TRIP, clock())
        mock_queue.enqueue.assert_awaited_once_with(
            JobKind.TRIP_AUTO_COMPLETE,
            "res-1",
            reservation.trip_end_at + timedelta(hours=lifecycle.AUTO_COMPLETE_GRACE_HOURS),
            {"reservation_id": "res-1"},
        )
        mock_notifier.trip_started.assert_called_once_with("res-1", "driver-1", "user-1")
        mock_notifier.driver_status_changed.assert_called_once_with("driver-1", "ontrip")

    @pytest.mark.asyncio
    async def test_cancels_previous_cooldown(self, service, reservation_repo, mock_queue) -> None:
        reservation_repo.get_by_id.return_value = make_reservation()
        reservation_repo.find_last_completed_by_driver.return_value = make_reservation(id="res-0")

        await service.start_trip("driver-1", "res-1")

        mock_queue.cancel.assert_awaited_once_with(JobKind.DRIVER_COOLDOWN, "driver-1:res-0")

    @pytest.mark.asyncio
    async def test_other_drivers_reservation_looks_missing(self, service, reservation_repo) -> None:
        reservation_repo.get_by_id.return_value = make_reservation(assigned_driver_id="driver-2")

        with pytest.raises(NotFoundError) as exc:
            await service.start_trip("driver-1", "res-1")

        assert exc.value.code == ErrorCode.RESERVATION_NOT_FOUND

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "driver_id, reservation_id, code",
        [("", "res-1", ErrorCode.INVALID_DRIVER_ID), ("driver-1", " ", ErrorCode.INVALID_RESERVATION_ID)],
    )
    async def test_blank_ids(self, service, driver_id, reservation_id, code) -> None:
        with pytest.raises(ValidationError) as exc:
            await service.start_trip(driver_id, reservation_id)
        assert exc.value.code == code

    @pytest.mark.asyncio
    async def test_terminal_reservation(self, service, reservation_repo) -> None:
        reservation_repo.get_by_id.return_value = make_reservation(status=ReservationStatus.CANCELLED)

        with pytest.raises(StateConflictError) as exc:
            await service.start_trip("driver-1", "res-1")

        assert exc.value.code == ErrorCode.RESERVATION_TERMINAL

    @pytest.mark.asyncio
    async def test_already_started(self, service, reservation_repo, clock) -> None:
        reservation_repo.get_by_id.return_value = make_reservation(started_at=clock())

        with pytest.raises(StateConflictError) as exc:
            await service.start_trip("driver-1", "res-1")

        assert exc.value.code == ErrorCode.TRIP_ALREADY_STARTED

    @pytest.mark.asyncio
    async def test_driver_has_active_trip(self, service, reservation_repo, driver_repo) -> None:
        reservation_repo.get_by_id.return_value = make_reservation()
        reservation_repo.find_active_by_driver.return_value = make_reservation(id="res-other")

        with pytest.raises(StateConflictError) as exc:
            await service.start_trip("driver-1", "res-1")

        assert exc.value.code == ErrorCode.DRIVER_HAS_ACTIVE_TRIP
        assert exc.value.details == {"active_reservation_id": "res-other"}
        reservation_repo.mark_started.assert_not_called()
        driver_repo.update_status.assert_not_called()

    @pytest.mark.asyncio
    async def test_unique_index_race(self, service, reservation_repo, mock_queue) -> None:
        """Параллельный старт другой поездки ловится уникальным индексом."""
        reservation_repo.get_by_id.return_value = make_reservation()
        reservation_repo.mark_started.side_effect = asyncpg.UniqueViolationError("duplicate")

        with pytest.raises(StateConflictError) as exc:
            await service.start_trip("driver-1", "res-1")

        assert exc.value.code == ErrorCode.DRIVER_HAS_ACTIVE_TRIP
        mock_queue.enqueue.assert_not_called()

    @pytest.mark.asyncio
    async def test_without_itinerary_no_auto_complete(self, service, reservation_repo, mock_queue) -> None:
        reservation_repo.get_by_id.return_value = make_reservation(itinerary=[])

        await service.start_trip("driver-1", "res-1")

        mock_queue.enqueue.assert_not_called()


# =============================================================================
# END
# =============================================================================

class TestEndTrip:

    @pytest.mark.asyncio
    async def test_completes_and_runs_side_effects(
        self, service, reservation_repo, location, ledger, mock_queue, mock_notifier, dispatcher, clock, lifecycle,
    ) -> None:
        reservation_repo.get_by_id.return_value = make_reservation(started_at=clock() - timedelta(hours=2))

        await service.end_trip("driver-1", "res-1")
        await dispatcher.drain()

        mock_queue.cancel.assert_awaited_once_with(JobKind.TRIP_AUTO_COMPLETE, "res-1")
        reservation_repo.mark_completed.assert_awaited_once_with("res-1", clock())
        location.clear.assert_awaited_once_with("driver-1", "res-1")
        mock_queue.enqueue_in.assert_awaited_once_with(
            JobKind.DRIVER_COOLDOWN,
            "driver-1:res-1",
            lifecycle.cooldown_seconds,
            {"driver_id": "driver-1", "reservation_id": "res-1"},
        )
        ledger.credit.assert_awaited_once_with("res-1")
        mock_notifier.trip_ended.assert_called_once_with("res-1", "driver-1", "user-1", auto=False)

    @pytest.mark.asyncio
    async def test_unpaid_charges_block(self, service, reservation_repo, charge_repo, mock_queue, clock) -> None:
        reservation_repo.get_by_id.return_value = make_reservation(started_at=clock())
        charge_repo.get_unpaid_summary.return_value = UnpaidChargesSummary(amount=750.0, currency="INR", count=2)

        with pytest.raises(StateConflictError) as exc:
            await service.end_trip("driver-1", "res-1")

        assert exc.value.code == ErrorCode.UNPAID_CHARGES_BLOCK_COMPLETION
        assert exc.value.details == {"amount": 750.0, "currency": "INR"}
        # Автозавершение остаётся запланированным
        mock_queue.cancel.assert_not_called()
        reservation_repo.mark_completed.assert_not_called()

    @pytest.mark.asyncio
    async def test_not_started(self, service, reservation_repo) -> None:
        reservation_repo.get_by_id.return_value = make_reservation()

        with pytest.raises(StateConflictError) as exc:
            await service.end_trip("driver-1", "res-1")

        assert exc.value.code == ErrorCode.TRIP_NOT_STARTED

    @pytest.mark.asyncio
    async def test_already_completed(self, service, reservation_repo, clock) -> None:
        reservation_repo.get_by_id.return_value = make_reservation(started_at=clock(), completed_at=clock())

        with pytest.raises(StateConflictError) as exc:
            await service.end_trip("driver-1", "res-1")

        assert exc.value.code == ErrorCode.TRIP_ALREADY_COMPLETED

    @pytest.mark.asyncio
    async def test_parallel_completion(self, service, reservation_repo, ledger, dispatcher, clock) -> None:
        reservation_repo.get_by_id.return_value = make_reservation(started_at=clock())
        reservation_repo.mark_completed.return_value = False

        with pytest.raises(StateConflictError):
            await service.end_trip("driver-1", "res-1")
        await dispatcher.drain()

        ledger.credit.assert_not_called()

    @pytest.mark.asyncio
    async def test_ledger_failure_does_not_fail_end(self, service, reservation_repo, ledger, dispatcher, clock) -> None:
        reservation_repo.get_by_id.return_value = make_reservation(started_at=clock())
        ledger.credit.side_effect = RuntimeError("db down")

        await service.end_trip("driver-1", "res-1")
        await dispatcher.drain()

        ledger.credit.assert_awaited_once()


# =============================================================================
# АВТОЗАВЕРШЕНИЕ
# =============================================================================

class TestAutoComplete:

    @pytest.mark.asyncio
    async def test_completes_after_grace(
        self, service, reservation_repo, charge_repo, ledger, mock_notifier, dispatcher, clock,
    ) -> None:
        # Плановый конец поездки 30 часов назад
        reservation = make_reservation(start=clock() - timedelta(hours=40), started_at=clock() - timedelta(hours=40))
        reservation_repo.get_by_id.return_value = reservation
        charge_repo.get_unpaid_summary.return_value = UnpaidChargesSummary(amount=100.0, count=1)

        assert await service.auto_complete_trip("res-1") is True
        await dispatcher.drain()

        reservation_repo.mark_completed.assert_awaited_once_with("res-1", clock())
        ledger.credit.assert_awaited_once_with("res-1")
        mock_notifier.trip_ended.assert_called_once_with("res-1", "driver-1", "user-1", auto=True)
        charge_repo.get_unpaid_summary.assert_not_called()

    @pytest.mark.asyncio
    async def test_grace_not_elapsed(self, service, reservation_repo, clock) -> None:
        reservation_repo.get_by_id.return_value = make_reservation(started_at=clock() - timedelta(hours=2))

        assert await service.auto_complete_trip("res-1") is False
        reservation_repo.mark_completed.assert_not_called()

    @pytest.mark.asyncio
    async def test_already_completed_is_noop(self, service, reservation_repo, clock) -> None:
        reservation_repo.get_by_id.return_value = make_reservation(
            start=clock() - timedelta(days=3), started_at=clock() - timedelta(days=3), completed_at=clock(),
        )

        assert await service.auto_complete_trip("res-1") is False

    @pytest.mark.asyncio
    async def test_not_started_is_noop(self, service, reservation_repo, clock) -> None:
        reservation_repo.get_by_id.return_value = make_reservation(start=clock() - timedelta(days=3))
        assert await service.auto_complete_trip("res-1") is False

    @pytest.mark.asyncio
    async def test_errors_are_swallowed(self, service, reservation_repo) -> None:
        reservation_repo.get_by_id.side_effect = RuntimeError("db down")
        assert await service.auto_complete_trip("res-1") is False


# =============================================================================
# ОСТЫВАНИЕ
# =============================================================================

class TestCooldownRelease:

    @pytest.mark.asyncio
    async def test_releases_and_triggers_pending_quotes(
        self, service, driver_repo, mock_queue, mock_notifier, clock,
    ) -> None:
        driver_repo.get_by_id.return_value = make_driver(status=DriverStatus.ON_TRIP)

        assert await service.release_driver_after_cooldown("driver-1", "res-1") is True

        driver_repo.update_status.assert_awaited_once_with("driver-1", DriverStatus.AVAILABLE, clock())
        mock_notifier.driver_status_changed.assert_called_once_with("driver-1", "available")
        mock_queue.enqueue_in.assert_awaited_once_with(
            JobKind.PROCESS_PENDING_QUOTES, "driver-freed-driver-1", 0, {"driver_id": "driver-1"},
        )

    @pytest.mark.asyncio
    async def test_not_onboarded_not_offered(self, service, driver_repo, mock_queue) -> None:
        driver_repo.get_by_id.return_value = make_driver(status=DriverStatus.ON_TRIP, is_onboarded=False)

        assert await service.release_driver_after_cooldown("driver-1") is True
        mock_queue.enqueue_in.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [DriverStatus.AVAILABLE, DriverStatus.SUSPENDED, DriverStatus.OFFLINE])
    async def test_only_from_on_trip(self, service, driver_repo, status) -> None:
        driver_repo.get_by_id.return_value = make_driver(status=status)

        assert await service.release_driver_after_cooldown("driver-1") is False
        driver_repo.update_status.assert_not_called()

    @pytest.mark.asyncio
    async def test_active_trip_keeps_driver_busy(self, service, driver_repo, reservation_repo) -> None:
        driver_repo.get_by_id.return_value = make_driver(status=DriverStatus.ON_TRIP)
        reservation_repo.find_active_by_driver.return_value = make_reservation(id="res-2")

        assert await service.release_driver_after_cooldown("driver-1", "res-1") is False
        driver_repo.update_status.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_driver(self, service) -> None:
        assert await service.release_driver_after_cooldown("driver-404") is False


class TestUpdateLocation:

    @pytest.mark.asyncio
    async def test_delegates_to_throttle(self, service, location) -> None:
        await service.update_location("driver-1", "res-1", 12.9, 77.6, speed=40.0)

        location.try_accept.assert_awaited_once_with("driver-1", "res-1", 12.9, 77.6, speed=40.0)
