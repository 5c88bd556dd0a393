# src/core/quotes/__init__.py
"""
Домен заявок (квот).
Сервис жизненного цикла импортируется напрямую из src.core.quotes.service.
"""

from src.core.quotes.models import (
    ItineraryStop,
    Quote,
    QuoteRecalculation,
    RouteData,
    RouteLeg,
    SelectedVehicle,
)
from src.core.quotes.repository import QuoteRepository

__all__ = [
    "ItineraryStop",
    "Quote",
    "QuoteRecalculation",
    "RouteData",
    "RouteLeg",
    "SelectedVehicle",
    "QuoteRepository",
]
