# returnly/core/pricing/calculator.py
"""
Калькулятор стоимости заказа.

Чистая синхронная функция от входных данных: не ходит в сеть и в БД.
Цена считается один раз при оформлении и сохраняется в заказе.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from returnly.common.timeutils import utcnow
from returnly.config.loader import PricingSettings
from returnly.core.errors import PricingUnavailable, ValidationError
from returnly.core.pricing.models import ZERO, BoxLine, PriceBreakdown, PromoCode, to_cents
from returnly.core.pricing.promo import check_promo, compute_discount


class PricingCalculator:
    """
    Калькулятор тарифа для клиента.

    Все компоненты округляются до цента до суммирования, поэтому
    total_price всегда равен сумме сохранённых компонент.
    """

    def __init__(self, config: PricingSettings | None = None) -> None:
        """
        Args:
            config: Тарифы (если None, берутся из конфига)
        """
        if config is None:
            from returnly.config import settings
            config = settings.pricing
        self._config = config

    @property
    def base_price(self) -> Decimal:
        return to_cents(self._config.BASE_PRICE)

    def subtotal_parts(
        self,
        boxes: Iterable[BoxLine],
        distance_miles: Optional[float | Decimal],
    ) -> tuple[Decimal, Decimal, Decimal, Decimal]:
        """
        Считает компоненты до скидки.

        Returns:
            (base_price, distance_fee, size_fee, multi_box_fee)

        Raises:
            PricingUnavailable: расстояние неизвестно
            ValidationError: нет коробок, count < 1 или отрицательное расстояние
        """
        boxes = list(boxes)
        if distance_miles is None:
            raise PricingUnavailable("Не удалось определить расстояние маршрута")
        distance = Decimal(str(distance_miles))
        if distance < 0:
            raise ValidationError("Расстояние не может быть отрицательным", distance_miles=str(distance))
        if not boxes:
            raise ValidationError("Заказ должен содержать хотя бы одну коробку")

        box_count = 0
        size_fee = ZERO
        for line in boxes:
            if line.count < 1:
                raise ValidationError("Количество коробок должно быть >= 1", size=line.size.value)
            box_count += line.count
            upcharge = self._config.SIZE_UPCHARGES.get(line.size.value, ZERO)
            size_fee += upcharge * line.count

        distance_fee = to_cents(distance * self._config.DISTANCE_RATE_PER_MILE)
        multi_box_fee = to_cents(max(0, box_count - 1) * self._config.MULTI_BOX_FEE)

        return self.base_price, distance_fee, to_cents(size_fee), multi_box_fee

    def _floor_net(self, target: Decimal) -> Decimal:
        """
        Наименьшая сумма после скидки, при которой она вместе с сервисным
        сбором не меньше target.

        Из-за округления сбора итог может выйти на цент выше target.
        """
        rate = self._config.SERVICE_FEE_RATE
        cent = Decimal("0.01")

        net = max(ZERO, to_cents(target / (1 + rate)))
        while net > ZERO and (net - cent) + to_cents((net - cent) * rate) >= target:
            net -= cent
        while net + to_cents(net * rate) < target:
            net += cent
        return net

    def calculate(
        self,
        boxes: Iterable[BoxLine],
        distance_miles: Optional[float | Decimal],
        is_rush: bool = False,
        promo: Optional[PromoCode] = None,
        promo_code: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PriceBreakdown:
        """
        Рассчитывает стоимость заказа.

        Args:
            boxes: Коробки заказа
            distance_miles: Расстояние в милях (None, если провайдер не ответил)
            is_rush: Срочная доставка
            promo: Найденный промокод
            promo_code: Введённый клиентом код. Если задан, а promo is None,
                код считается несуществующим
            now: Момент расчёта (для срока действия промокода)

        Returns:
            Разбивка цены

        Raises:
            PricingUnavailable, ValidationError, InvalidPromo
        """
        now = now or utcnow()
        base_price, distance_fee, size_fee, multi_box_fee = self.subtotal_parts(boxes, distance_miles)
        subtotal = base_price + distance_fee + size_fee + multi_box_fee

        if promo_code is not None or promo is not None:
            promo = check_promo(promo, subtotal, now, code=promo_code)

        discount = compute_discount(promo, subtotal, base_price)
        service_fee = to_cents((subtotal - discount) * self._config.SERVICE_FEE_RATE)
        rush_fee = to_cents(self._config.RUSH_FEE) if is_rush else ZERO

        total_price = subtotal - discount + service_fee + rush_fee
        if total_price < base_price:
            # Нижняя граница цены: уменьшаем скидку, сбор считается от новой суммы
            net = self._floor_net(base_price - rush_fee)
            discount = subtotal - net
            service_fee = to_cents(net * self._config.SERVICE_FEE_RATE)
            total_price = net + service_fee + rush_fee

        return PriceBreakdown(
            base_price=base_price,
            distance_fee=distance_fee,
            size_fee=size_fee,
            multi_box_fee=multi_box_fee,
            subtotal=subtotal,
            discount=discount,
            service_fee=service_fee,
            rush_fee=rush_fee,
            total_price=total_price,
            promo_code=promo.code if promo else None,
            currency=self._config.CURRENCY,
        )
