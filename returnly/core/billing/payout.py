# returnly/core/billing/payout.py
"""
Расчёт выплаты водителю за выполненный заказ.
"""

from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal
from typing import Optional

from returnly.config.loader import PayoutSettings
from returnly.core.billing.models import PayoutBreakdown
from returnly.core.orders.models import Order
from returnly.core.pricing.models import ZERO, to_cents


class PayoutCalculator:
    """
    Калькулятор заработка водителя.

    driver_earning = база + ставка за милю * мили + бонус за размер коробок
    + оплата времени. Время берётся фактическое (забор -> доставка), но
    не дальше TIME_TOLERANCE_MINUTES от оценки.
    """

    def __init__(self, config: PayoutSettings | None = None) -> None:
        if config is None:
            from returnly.config import settings
            config = settings.payout
        self._config = config

    def estimate_minutes(self, distance_miles: Decimal) -> int:
        """Оценка времени заказа: дорога со средней скоростью плюс погрузка."""
        driving = Decimal(distance_miles) / self._config.AVERAGE_SPEED_MPH * 60
        return int(math.ceil(driving + self._config.HANDLING_MINUTES))

    def billable_minutes(
        self,
        estimated: int,
        picked_up_at: Optional[datetime],
        delivered_at: Optional[datetime],
    ) -> int:
        if picked_up_at is None or delivered_at is None:
            return estimated

        actual = math.ceil((delivered_at - picked_up_at).total_seconds() / 60)
        tolerance = self._config.TIME_TOLERANCE_MINUTES
        low = max(estimated - tolerance, 0)
        high = estimated + tolerance
        return min(max(actual, low), high)

    def calculate(self, order: Order) -> PayoutBreakdown:
        """
        Args:
            order: Заказ в статусе delivered (цена и отметки времени уже есть)

        Returns:
            Разбивка выплаты; platform_fee = total_price - driver_earning
        """
        base_pay = to_cents(self._config.DRIVER_BASE_PAY)
        distance_pay = to_cents(order.distance_miles * self._config.DRIVER_PER_MILE)

        size_bonus = ZERO
        for line in order.boxes:
            size_bonus += self._config.DRIVER_SIZE_BONUS.get(line.size.value, ZERO) * line.count
        size_bonus = to_cents(size_bonus)

        estimated = self.estimate_minutes(order.distance_miles)
        billable = self.billable_minutes(estimated, order.picked_up_at, order.actual_delivery_time)
        time_pay = to_cents(self._config.DRIVER_TIME_RATE_PER_HOUR * billable / 60)

        driver_earning = base_pay + distance_pay + size_bonus + time_pay
        # Чаевые целиком уходят водителю и в долю платформы не входят
        platform_fee = order.total_price - driver_earning

        return PayoutBreakdown(
            driver_earning=driver_earning,
            platform_fee=platform_fee,
            base_pay=base_pay,
            distance_pay=distance_pay,
            size_bonus=size_bonus,
            time_pay=time_pay,
            estimated_minutes=estimated,
            billable_minutes=billable,
        )
