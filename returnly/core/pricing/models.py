# returnly/core/pricing/models.py
"""
Модели ценообразования.
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from pydantic import BaseModel, Field

from returnly.common.constants import BoxSize, DiscountType

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_cents(value: Decimal | int | float | str) -> Decimal:
    """Округляет сумму до цента (половина вверх)."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class BoxLine(BaseModel):
    """Позиция заказа: коробки одного размера."""

    size: BoxSize = Field(..., description="Размер коробки")
    count: int = Field(1, ge=1, description="Количество коробок")


class PriceBreakdown(BaseModel):
    """
    Разбивка цены, фиксируется при оформлении заказа.

    total_price = base_price + distance_fee + size_fee + multi_box_fee
                  - discount + service_fee + rush_fee
    """

    base_price: Decimal
    distance_fee: Decimal
    size_fee: Decimal
    multi_box_fee: Decimal
    subtotal: Decimal
    discount: Decimal = ZERO
    service_fee: Decimal
    rush_fee: Decimal = ZERO
    total_price: Decimal
    promo_code: Optional[str] = None
    currency: str = "USD"

    @property
    def components_total(self) -> Decimal:
        """Сумма компонент (должна совпадать с total_price)."""
        return (
            self.base_price
            + self.distance_fee
            + self.size_fee
            + self.multi_box_fee
            - self.discount
            + self.service_fee
            + self.rush_fee
        )


class PromoCode(BaseModel):
    """Промокод."""

    code: str = Field(..., description="Код (в верхнем регистре)")
    discount_type: DiscountType = Field(..., description="Тип скидки")
    discount_value: Decimal = Field(ZERO, ge=0, description="Процент или сумма")
    min_order_value: Optional[Decimal] = Field(None, description="Минимальный subtotal")
    valid_until: Optional[datetime] = Field(None, description="Срок действия")
    max_uses: Optional[int] = Field(None, ge=0, description="Лимит использований")
    current_uses: int = Field(0, ge=0, description="Сколько раз использован")
    is_active: bool = Field(True, description="Активен ли код")

    model_config = {"from_attributes": True}
