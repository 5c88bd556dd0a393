# tests/core/test_trips_repository.py
"""
Тесты SQL-репозиториев бронирований и доплат.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from src.common.constants import ReservationStatus
from src.core.trips.repository import ChargeRepository, ReservationRepository
from tests.helpers import NOW


def _row(**overrides):
    row = {
        "id": "res-1",
        "quote_id": "quote-1",
        "user_id": "user-1",
        "assigned_driver_id": "driver-1",
        "status": "confirmed",
        "itinerary": [{
            "location_name": "Bengaluru",
            "latitude": 12.97,
            "longitude": 77.59,
            "arrival_time": NOW.isoformat(),
            "stop_order": 0,
        }],
        "started_at": None,
        "completed_at": None,
        "created_at": NOW,
        "updated_at": None,
    }
    row.update(overrides)
    return row


class TestReservationRepository:

    @pytest.mark.asyncio
    async def test_get_by_id_maps_row(self, mock_db: AsyncMock) -> None:
        mock_db.fetchrow = AsyncMock(return_value=_row(started_at=NOW))

        reservation = await ReservationRepository(mock_db).get_by_id("res-1")

        assert reservation.status == ReservationStatus.CONFIRMED
        assert reservation.is_active_trip is True
        assert reservation.trip_end_at == NOW

    @pytest.mark.asyncio
    async def test_get_by_id_missing_returns_none(self, mock_db: AsyncMock) -> None:
        mock_db.fetchrow = AsyncMock(return_value=None)
        assert await ReservationRepository(mock_db).get_by_id("res-1") is None

    @pytest.mark.asyncio
    async def test_get_by_id_propagates_db_errors(self, mock_db: AsyncMock) -> None:
        mock_db.fetchrow = AsyncMock(side_effect=ConnectionError("db down"))

        with pytest.raises(ConnectionError):
            await ReservationRepository(mock_db).get_by_id("res-1")

    @pytest.mark.asyncio
    async def test_mark_started_conditional(self, mock_db: AsyncMock) -> None:
        repo = ReservationRepository(mock_db)

        assert await repo.mark_started("res-1", NOW) is True
        assert "started_at IS NULL" in mock_db.execute.await_args.args[0]

        mock_db.execute = AsyncMock(return_value="UPDATE 0")
        assert await repo.mark_started("res-1", NOW) is False

    @pytest.mark.asyncio
    async def test_mark_completed_keeps_terminal_status(self, mock_db: AsyncMock) -> None:
        await ReservationRepository(mock_db).mark_completed("res-1", NOW)

        sql, _, completed_at, terminal, status = mock_db.execute.await_args.args
        assert "CASE WHEN status = ANY($3::text[])" in sql
        assert completed_at == NOW
        assert {"cancelled", "refunded"} <= set(terminal)
        assert status == "completed"

    @pytest.mark.asyncio
    async def test_find_active_by_driver_excludes(self, mock_db: AsyncMock) -> None:
        await ReservationRepository(mock_db).find_active_by_driver("driver-1", exclude_reservation_id="res-1")

        assert mock_db.fetchrow.await_args.args[1:] == ("driver-1", "res-1")

    @pytest.mark.asyncio
    async def test_find_active_trips(self, mock_db: AsyncMock) -> None:
        mock_db.fetch = AsyncMock(return_value=[_row(started_at=NOW), _row(id="res-2", started_at=NOW)])

        trips = await ReservationRepository(mock_db).find_active_trips()

        assert [trip.id for trip in trips] == ["res-1", "res-2"]


class TestChargeRepository:

    @pytest.mark.asyncio
    async def test_unpaid_summary(self, mock_db: AsyncMock) -> None:
        mock_db.fetchrow = AsyncMock(return_value={"amount": 750, "count": 2, "currency": None})

        summary = await ChargeRepository(mock_db).get_unpaid_summary("res-1", "INR")

        assert summary.has_unpaid is True
        assert summary.amount == 750.0
        assert summary.currency == "INR"

    @pytest.mark.asyncio
    async def test_nothing_unpaid(self, mock_db: AsyncMock) -> None:
        mock_db.fetchrow = AsyncMock(return_value={"amount": 0, "count": 0, "currency": None})

        summary = await ChargeRepository(mock_db).get_unpaid_summary("res-1")

        assert summary.has_unpaid is False
