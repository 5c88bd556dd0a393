# src/common/constants.py
"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class QuoteStatus(str, Enum):
    """Статусы заявки (квоты)."""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    NEGOTIATING = "negotiating"
    QUOTED = "quoted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PAID = "paid"
    EXPIRED = "expired"


class ReservationStatus(str, Enum):
    """Статусы бронирования."""
    CONFIRMED = "confirmed"
    MODIFIED = "modified"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    REFUNDED = "refunded"


# Статусы, которые нельзя перезаписывать при завершении поездки
TERMINAL_RESERVATION_STATUSES = frozenset({
    ReservationStatus.CANCELLED,
    ReservationStatus.COMPLETED,
    ReservationStatus.REFUNDED,
})


class DriverStatus(str, Enum):
    """Статусы водителя."""
    AVAILABLE = "available"
    ON_TRIP = "ontrip"
    OFFLINE = "offline"
    SUSPENDED = "suspended"
    BLOCKED = "blocked"


class TripType(str, Enum):
    """Тип поездки."""
    ONE_WAY = "one_way"
    TWO_WAY = "two_way"


class StopLeg(str, Enum):
    """Направление остановки маршрута."""
    OUTBOUND = "outbound"
    RETURN = "return"


class JobKind(str, Enum):
    """Виды отложенных задач."""
    QUOTE_EXPIRY = "quote-expiry"
    TRIP_AUTO_COMPLETE = "trip-auto-complete"
    DRIVER_COOLDOWN = "driver-cooldown"
    ASSIGN_DRIVER = "assign-driver"
    PROCESS_PENDING_QUOTES = "process-pending-quotes"


# Идентификатор единственной периодической задачи обработки ожидающих заявок
PROCESS_PENDING_QUOTES_JOB_ID = "process-pending-quotes"


class LocationUpdateStatus(str, Enum):
    """Результат приёма геолокации."""
    ACCEPTED = "accepted"
    THROTTLED = "throttled"


class ErrorCode(str, Enum):
    """Доменные коды ошибок."""
    # Валидация
    ITINERARY_REQUIRED = "ITINERARY_REQUIRED"
    VEHICLES_REQUIRED = "VEHICLES_REQUIRED"
    QUOTE_INCOMPLETE = "QUOTE_INCOMPLETE"
    INVALID_LATITUDE = "INVALID_LATITUDE"
    INVALID_LONGITUDE = "INVALID_LONGITUDE"
    INVALID_DRIVER_ID = "INVALID_DRIVER_ID"
    INVALID_RESERVATION_ID = "INVALID_RESERVATION_ID"
    INVALID_QUOTE_ID = "INVALID_QUOTE_ID"

    # Не найдено
    QUOTE_NOT_FOUND = "QUOTE_NOT_FOUND"
    RESERVATION_NOT_FOUND = "RESERVATION_NOT_FOUND"
    VEHICLE_NOT_FOUND = "VEHICLE_NOT_FOUND"

    # Конфликт состояний
    INVALID_QUOTE_STATUS = "INVALID_QUOTE_STATUS"
    NO_DRIVERS_AVAILABLE = "NO_DRIVERS_AVAILABLE"
    RESERVATION_TERMINAL = "RESERVATION_TERMINAL"
    TRIP_ALREADY_STARTED = "TRIP_ALREADY_STARTED"
    TRIP_NOT_STARTED = "TRIP_NOT_STARTED"
    TRIP_ALREADY_COMPLETED = "TRIP_ALREADY_COMPLETED"
    DRIVER_HAS_ACTIVE_TRIP = "DRIVER_HAS_ACTIVE_TRIP"
    UNPAID_CHARGES_BLOCK_COMPLETION = "UNPAID_CHARGES_BLOCK_COMPLETION"

    # Фатальные
    PRICING_CONFIG_NOT_FOUND = "PRICING_CONFIG_NOT_FOUND"
