# src/core/pricing/__init__.py
"""
Домен тарификации.
"""

from src.core.pricing.models import Amenity, PricingBreakdown, PricingConfig, Vehicle
from src.core.pricing.repository import PricingRepository

__all__ = [
    "Amenity",
    "PricingBreakdown",
    "PricingConfig",
    "Vehicle",
    "PricingRepository",
]
