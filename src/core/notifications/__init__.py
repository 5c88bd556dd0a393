# src/core/notifications/__init__.py
"""
Уведомления и побочные эффекты.
"""

from src.core.notifications.dispatcher import SideEffectDispatcher
from src.core.notifications.service import Notifier

__all__ = [
    "SideEffectDispatcher",
    "Notifier",
]
