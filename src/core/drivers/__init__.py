# src/core/drivers/__init__.py
"""
Домен водителей.
"""

from src.core.drivers.models import Driver, DriverPayment
from src.core.drivers.repository import DriverPaymentRepository, DriverRepository

__all__ = [
    "Driver",
    "DriverPayment",
    "DriverRepository",
    "DriverPaymentRepository",
]
