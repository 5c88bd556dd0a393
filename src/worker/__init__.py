# src/worker/__init__.py
"""
Фоновые воркеры: отложенные задачи из Redis и события оплаты из RabbitMQ.
"""

from src.worker.base import BaseWorker
from src.worker.lifecycle import (
    DriverAssignmentWorker,
    DriverCooldownWorker,
    QuoteExpiryWorker,
    TripAutoCompleteWorker,
)
from src.worker.payments import PaymentEventsWorker

__all__ = [
    "BaseWorker",
    "DriverAssignmentWorker",
    "DriverCooldownWorker",
    "QuoteExpiryWorker",
    "TripAutoCompleteWorker",
    "PaymentEventsWorker",
]
