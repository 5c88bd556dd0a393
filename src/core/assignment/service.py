# src/core/assignment/service.py
"""
Подбор водителя для заявки.

Алгоритм:
1. Окно поездки [min(прибытие), max(прибытие или отправление)] по всем остановкам
2. Свободные водители с завершённым онбордингом
3. Исключаются водители, занятые другими заявками в этом окне
4. Проверка допустимости (блокировки, скорый старт); отказы логируются с причиной
5. Очерёдность: кто дольше всех не получал нового назначения (NULL первыми)
6. Первый кандидат или "водителя нет" (штатный исход, не ошибка)
7. Пересчёт полной цены с фактической ставкой водителя
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from src.common.clock import Clock, utc_now
from src.common.constants import DriverStatus, ErrorCode, TypeMsg
from src.common.exceptions import ConfigurationError, NotFoundError, ValidationError
from src.common.logger import log_info, log_warning
from src.config.loader import LifecycleSettings
from src.core.drivers.models import Driver
from src.core.drivers.repository import DriverRepository
from src.core.pricing.models import PricingBreakdown, PricingConfig, Vehicle
from src.core.pricing.repository import PricingRepository
from src.core.pricing.service import PricingCalculator
from src.core.quotes.models import ItineraryStop, Quote
from src.core.quotes.repository import QuoteRepository

# Статусы, при которых водителя нельзя назначать никогда
HARD_BLOCKER_STATUSES = frozenset({
    DriverStatus.SUSPENDED,
    DriverStatus.BLOCKED,
    DriverStatus.OFFLINE,
})

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


# =============================================================================
# ОКНО ПОЕЗДКИ
# =============================================================================

@dataclass(frozen=True)
class DateWindow:
    """Окно поездки, границы включительно."""
    start: datetime
    end: datetime

    @property
    def duration_hours(self) -> float:
        return (self.end - self.start).total_seconds() / 3600

    def overlaps(self, other: DateWindow) -> bool:
        return self.start <= other.end and other.start <= self.end


def derive_date_window(stops: Sequence[ItineraryStop]) -> DateWindow:
    """
    Окно поездки по остановкам маршрута.

    Raises:
        ValidationError: маршрут пуст
    """
    if not stops:
        raise ValidationError(ErrorCode.ITINERARY_REQUIRED, "Маршрут заявки пуст")
    return DateWindow(
        start=min(stop.arrival_time for stop in stops),
        end=max(stop.latest_time for stop in stops),
    )


# =============================================================================
# ПРОВЕРКА ДОПУСТИМОСТИ
# =============================================================================

@dataclass(frozen=True)
class EligibilityResult:
    can_assign: bool
    reason: Optional[str] = None


class DriverEligibilityGuard:
    """
    Правила допустимости водителя.

    Жёсткие блокировки: SUSPENDED, BLOCKED, OFFLINE, нет онбординга, удалён.
    Если поездка начинается в пределах порога "скорого старта", водитель обязан быть AVAILABLE.
    Пересечения по датам проверяются отдельно (репозиторием заявок).
    """

    def __init__(self, soon_start_threshold_hours: float = 2.0) -> None:
        self._soon_start = timedelta(hours=soon_start_threshold_hours)

    def check(self, driver: Driver, trip_start_at: datetime | None, now: datetime) -> EligibilityResult:
        if driver.is_deleted:
            return EligibilityResult(False, "водитель удалён")

        if driver.status in HARD_BLOCKER_STATUSES:
            return EligibilityResult(False, f"водитель в статусе {driver.status.value}")

        if not driver.is_onboarded:
            return EligibilityResult(False, "онбординг не завершён")

        if trip_start_at is not None and trip_start_at - now <= self._soon_start:
            if driver.status != DriverStatus.AVAILABLE:
                return EligibilityResult(
                    False,
                    f"поездка скоро начинается, а водитель в статусе {driver.status.value}",
                )

        return EligibilityResult(True)


# =============================================================================
# ДВИЖОК НАЗНАЧЕНИЯ
# =============================================================================

@dataclass
class AssignmentOutcome:
    """Результат подбора: водитель (или None) и пересчитанная цена."""
    driver: Optional[Driver]
    pricing: PricingBreakdown
    window: DateWindow
    driver_changed: bool = False

    @property
    def found(self) -> bool:
        return self.driver is not None


class DriverAssignmentEngine:
    """
    Подбор водителя и расчёт цены заявки.
    Единственный (вместе с сервисом заявок) источник assigned_driver_id и pricing.
    """

    def __init__(
        self,
        driver_repo: DriverRepository,
        quote_repo: QuoteRepository,
        pricing_repo: PricingRepository,
        calculator: PricingCalculator | None = None,
        guard: DriverEligibilityGuard | None = None,
        lifecycle: LifecycleSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        if lifecycle is None:
            from src.config import settings
            lifecycle = settings.lifecycle

        self._drivers = driver_repo
        self._quotes = quote_repo
        self._pricing = pricing_repo
        self._calculator = calculator or PricingCalculator()
        self._guard = guard or DriverEligibilityGuard(lifecycle.SOON_START_THRESHOLD_HOURS)
        self._lifecycle = lifecycle
        self._clock = clock or utc_now

    def _quoted_since(self, now: datetime) -> datetime:
        """Заявки QUOTED старше этой отметки больше не держат ресурсы."""
        return now - timedelta(hours=self._lifecycle.PAYMENT_WINDOW_HOURS)

    @staticmethod
    def validate(quote: Quote) -> DateWindow:
        """
        Проверяет, что заявку можно оценивать.

        Raises:
            ValidationError: нет маршрута или не выбраны машины
        """
        window = derive_date_window(quote.itinerary)
        if not quote.selected_vehicles:
            raise ValidationError(ErrorCode.VEHICLES_REQUIRED, "В заявке не выбраны машины")
        return window

    async def find_booked_vehicle_ids(self, quote: Quote, window: DateWindow) -> set[str]:
        """Машины заявки, занятые другими заявками в её окне."""
        booked = await self._quotes.find_booked_vehicle_ids(
            window.start, window.end, self._quoted_since(self._clock()), exclude_quote_id=quote.id,
        )
        return {sv.vehicle_id for sv in quote.selected_vehicles if sv.vehicle_id in booked}

    async def find_driver(
        self,
        quote: Quote,
        window: DateWindow,
        exclude_quote_id: str | None = None,
        preferred_driver_id: str | None = None,
    ) -> Optional[Driver]:
        """
        Подбирает водителя на окно заявки.

        Args:
            quote: Заявка
            window: Окно поездки
            exclude_quote_id: Заявка, чьё назначение не считается занятостью (сама заявка)
            preferred_driver_id: Текущий водитель, который сохраняется, если всё ещё допустим

        Returns:
            Водитель или None, если подходящих нет
        """
        now = self._clock()
        booked = await self._quotes.find_booked_driver_ids(
            window.start, window.end, self._quoted_since(now), exclude_quote_id=exclude_quote_id,
        )

        if preferred_driver_id and preferred_driver_id not in booked:
            preferred = await self._drivers.get_by_id(preferred_driver_id)
            if preferred is not None:
                result = self._guard.check(preferred, window.start, now)
                if result.can_assign:
                    return preferred
                await log_info(
                    f"Заявка {quote.id}: текущий водитель {preferred_driver_id} недопустим: {result.reason}",
                    type_msg=TypeMsg.INFO,
                )

        candidates: list[Driver] = []
        for driver in await self._drivers.find_available():
            if driver.id in booked:
                continue
            result = self._guard.check(driver, window.start, now)
            if not result.can_assign:
                await log_info(
                    f"Заявка {quote.id}: водитель {driver.id} отклонён: {result.reason}",
                    type_msg=TypeMsg.DEBUG,
                )
                continue
            candidates.append(driver)

        if not candidates:
            return None

        candidates.sort(key=lambda d: (d.last_assigned_at is not None, d.last_assigned_at or _EPOCH))
        return candidates[0]

    async def _load_vehicles(self, quote: Quote) -> list[tuple[Vehicle, int]]:
        vehicles = await self._pricing.get_vehicles_by_ids([sv.vehicle_id for sv in quote.selected_vehicles])
        result: list[tuple[Vehicle, int]] = []
        for selected in quote.selected_vehicles:
            vehicle = vehicles.get(selected.vehicle_id)
            if vehicle is None:
                raise NotFoundError(
                    ErrorCode.VEHICLE_NOT_FOUND,
                    f"Машина {selected.vehicle_id} не найдена",
                    details={"vehicle_id": selected.vehicle_id},
                )
            result.append((vehicle, selected.quantity))
        return result

    async def _load_config(self) -> PricingConfig:
        config = await self._pricing.get_active_config()
        if config is None:
            raise ConfigurationError(
                ErrorCode.PRICING_CONFIG_NOT_FOUND,
                "Нет активной тарифной конфигурации",
            )
        return config

    async def price(self, quote: Quote, window: DateWindow, driver_rate: float | None) -> PricingBreakdown:
        """
        Полный расчёт цены заявки.

        Raises:
            ConfigurationError: нет активного тарифа
            NotFoundError: выбранная машина не найдена
        """
        config = await self._load_config()
        vehicles = await self._load_vehicles(quote)
        amenities = await self._pricing.get_amenities_by_ids(quote.selected_amenities)

        return self._calculator.calculate(
            stops=quote.itinerary,
            vehicles=vehicles,
            amenities=amenities,
            config=config,
            route_data=quote.route_data,
            duration_hours=window.duration_hours,
            driver_rate=driver_rate,
        )

    async def assign(
        self,
        quote: Quote,
        exclude_quote_id: str | None = None,
        preferred_driver_id: str | None = None,
    ) -> AssignmentOutcome:
        """
        Подбирает водителя и считает цену.

        Если водитель не найден, цена считается по средней ставке тарифа (оценка).
        Ротацию (last_assigned_at) не трогает: её отмечает commit_assignment
        после успешного сохранения заявки.

        Raises:
            ValidationError: ITINERARY_REQUIRED, VEHICLES_REQUIRED
            ConfigurationError: PRICING_CONFIG_NOT_FOUND
        """
        window = self.validate(quote)
        # Без тарифа оценка невозможна: проверяем до подбора водителя
        await self._load_config()

        driver = await self.find_driver(
            quote,
            window,
            exclude_quote_id=exclude_quote_id,
            preferred_driver_id=preferred_driver_id,
        )

        if driver is None:
            await log_warning(f"Заявка {quote.id}: свободных водителей на окно нет")
            pricing = await self.price(quote, window, driver_rate=None)
            return AssignmentOutcome(driver=None, pricing=pricing, window=window)

        pricing = await self.price(quote, window, driver_rate=driver.hourly_rate)

        changed = driver.id != quote.assigned_driver_id

        await log_info(
            f"Заявка {quote.id}: назначен водитель {driver.id} "
            f"({'новый' if changed else 'прежний'}), оплата водителя {pricing.driver_charge}",
            type_msg=TypeMsg.INFO,
        )
        return AssignmentOutcome(driver=driver, pricing=pricing, window=window, driver_changed=changed)

    async def commit_assignment(self, outcome: AssignmentOutcome) -> None:
        """Отмечает назначение в ротации; только при смене водителя."""
        if outcome.driver is not None and outcome.driver_changed:
            await self._drivers.touch_last_assigned(outcome.driver.id, self._clock())
