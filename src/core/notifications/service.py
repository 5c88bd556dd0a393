# src/core/notifications/service.py
"""
Сервис уведомлений.
Публикует доменные события в шину; доставка клиентам (push, сокеты, email) на стороне подписчиков.
"""

from __future__ import annotations

from typing import Any

from src.common.logger import log_debug
from src.core.notifications.dispatcher import SideEffectDispatcher
from src.infra.event_bus import DomainEvent, EventBus, EventTypes


class Notifier:
    """
    Уведомления о переходах жизненного цикла.

    Все методы fire-and-forget: публикация идёт через SideEffectDispatcher
    и никогда не влияет на результат основной операции.
    """

    def __init__(self, event_bus: EventBus, dispatcher: SideEffectDispatcher) -> None:
        """
        Args:
            event_bus: Шина событий
            dispatcher: Диспетчер побочных эффектов
        """
        self._event_bus = event_bus
        self._dispatcher = dispatcher

    def notify(self, event_type: str, payload: dict[str, Any]) -> None:
        """Публикует событие в фоне."""
        event = DomainEvent(event_type=event_type, payload=payload)
        self._dispatcher.dispatch(f"notify:{event_type}", self._publish(event))

    async def _publish(self, event: DomainEvent) -> None:
        await self._event_bus.publish(event)
        await log_debug(f"Уведомление {event.event_type} отправлено", logger_name="side_effects")

    # =========================================================================
    # ЗАЯВКИ
    # =========================================================================

    def quote_quoted(self, quote_id: str, user_id: str, driver_id: str, total: float) -> None:
        self.notify(EventTypes.QUOTE_QUOTED, {
            "quote_id": quote_id,
            "user_id": user_id,
            "driver_id": driver_id,
            "total": total,
        })

    def quote_pending_driver(self, quote_id: str, user_id: str) -> None:
        self.notify(EventTypes.QUOTE_PENDING_DRIVER, {"quote_id": quote_id, "user_id": user_id})

    def quote_recalculated(self, quote_id: str, user_id: str, driver_id: str, total: float) -> None:
        self.notify(EventTypes.QUOTE_RECALCULATED, {
            "quote_id": quote_id,
            "user_id": user_id,
            "driver_id": driver_id,
            "total": total,
        })

    def quote_expired(self, quote_id: str, user_id: str) -> None:
        self.notify(EventTypes.QUOTE_EXPIRED, {"quote_id": quote_id, "user_id": user_id})

    def quote_paid(self, quote_id: str, user_id: str) -> None:
        self.notify(EventTypes.QUOTE_PAID, {"quote_id": quote_id, "user_id": user_id})

    # =========================================================================
    # ПОЕЗДКИ И ВОДИТЕЛИ
    # =========================================================================

    def trip_started(self, reservation_id: str, driver_id: str, user_id: str | None) -> None:
        self.notify(EventTypes.TRIP_STARTED, {
            "reservation_id": reservation_id,
            "driver_id": driver_id,
            "user_id": user_id,
        })

    def trip_ended(self, reservation_id: str, driver_id: str, user_id: str | None, auto: bool) -> None:
        self.notify(EventTypes.TRIP_ENDED, {
            "reservation_id": reservation_id,
            "driver_id": driver_id,
            "user_id": user_id,
            "auto_completed": auto,
        })

    def location_updated(self, payload: dict[str, Any]) -> None:
        """Трансляция геолокации водителю, заказчику и администраторам."""
        self.notify(EventTypes.TRIP_LOCATION_UPDATED, payload)

    def driver_status_changed(self, driver_id: str, status: str) -> None:
        self.notify(EventTypes.DRIVER_STATUS_CHANGED, {"driver_id": driver_id, "status": status})
