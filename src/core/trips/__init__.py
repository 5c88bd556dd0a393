# src/core/trips/__init__.py
"""
Домен поездок (бронирований).
Сервисы импортируются напрямую из src.core.trips.service и src.core.trips.location.
"""

from src.core.trips.models import (
    LocationRecord,
    LocationUpdateResult,
    Reservation,
    UnpaidChargesSummary,
)
from src.core.trips.repository import ChargeRepository, ReservationRepository

__all__ = [
    "LocationRecord",
    "LocationUpdateResult",
    "Reservation",
    "UnpaidChargesSummary",
    "ChargeRepository",
    "ReservationRepository",
]
