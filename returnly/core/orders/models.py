# returnly/core/orders/models.py
"""
Модели данных заказов.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from returnly.common.constants import OrderStatus, PaymentStatus, ServiceTier
from returnly.common.timeutils import utcnow
from returnly.core.pricing.models import ZERO, BoxLine, PriceBreakdown

# Поля, которые можно менять через compare-and-swap.
# Цена и состав заказа фиксируются при создании и сюда не входят.
MUTABLE_FIELDS = frozenset({
    "status",
    "payment_status",
    "driver_id",
    "driver_earning",
    "platform_fee",
    "driver_tip",
    "customer_paid",
    "refunded_to_date",
    "payment_intent_id",
    "driver_paid_out_at",
    "needs_manual_reconciliation",
    "scheduled_pickup_time",
    "picked_up_at",
    "actual_delivery_time",
    "completed_at",
    "cancelled_at",
})


class Order(BaseModel):
    """Модель заказа на возврат."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="UUID заказа")
    tracking_number: str = Field(..., description="Трекинг-номер RTN-XXXXXXXX")
    status: OrderStatus = Field(OrderStatus.CREATED, description="Статус заказа")
    payment_status: PaymentStatus = Field(PaymentStatus.PENDING, description="Статус оплаты")

    customer_id: str = Field(..., description="ID клиента")
    driver_id: Optional[str] = Field(None, description="ID назначенного водителя")

    # Маршрут
    pickup_address: str = Field(..., description="Адрес забора")
    pickup_latitude: Optional[float] = Field(None, description="Широта забора")
    pickup_longitude: Optional[float] = Field(None, description="Долгота забора")
    dropoff_address: str = Field(..., description="Адрес магазина/склада")
    retailer: Optional[str] = Field(None, description="Магазин")
    item_description: Optional[str] = Field(None, description="Описание товара")

    # Состав и параметры
    boxes: list[BoxLine] = Field(..., min_length=1, description="Коробки")
    distance_miles: Decimal = Field(..., ge=0, description="Расстояние в милях")
    is_rush: bool = Field(False, description="Срочный заказ")
    promo_code: Optional[str] = Field(None, description="Применённый промокод")

    # Цена (фиксируется при создании)
    base_price: Decimal
    distance_fee: Decimal
    size_fee: Decimal
    multi_box_fee: Decimal
    subtotal: Decimal
    discount: Decimal = ZERO
    service_fee: Decimal
    rush_fee: Decimal = ZERO
    total_price: Decimal

    # Расчёты (при delivered -> completed)
    driver_earning: Optional[Decimal] = Field(None, description="Заработок водителя")
    platform_fee: Optional[Decimal] = Field(None, description="Доля платформы")
    driver_tip: Decimal = Field(ZERO, ge=0, description="Чаевые, 100% водителю")

    # Оплата и возвраты
    customer_paid: Decimal = Field(ZERO, ge=0, description="Списано с клиента")
    refunded_to_date: Decimal = Field(ZERO, ge=0, description="Возвращено или зарезервировано к возврату")
    payment_intent_id: Optional[str] = Field(None, description="ID платежа в процессоре")
    driver_paid_out_at: Optional[datetime] = Field(None, description="Время выплаты водителю")
    needs_manual_reconciliation: bool = Field(False, description="Требуется ручная сверка")

    version: int = Field(1, ge=1, description="Версия для compare-and-swap")

    # Временные метки
    created_at: datetime = Field(default_factory=utcnow)
    scheduled_pickup_time: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    actual_delivery_time: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = {"from_attributes": True}

    @property
    def box_count(self) -> int:
        return sum(line.count for line in self.boxes)

    @property
    def service_tier(self) -> ServiceTier:
        return ServiceTier.RUSH if self.is_rush else ServiceTier.STANDARD

    @property
    def refundable_balance(self) -> Decimal:
        """Сколько ещё можно вернуть клиенту."""
        return self.customer_paid - self.refunded_to_date

    @property
    def price(self) -> PriceBreakdown:
        return PriceBreakdown(
            base_price=self.base_price,
            distance_fee=self.distance_fee,
            size_fee=self.size_fee,
            multi_box_fee=self.multi_box_fee,
            subtotal=self.subtotal,
            discount=self.discount,
            service_fee=self.service_fee,
            rush_fee=self.rush_fee,
            total_price=self.total_price,
            promo_code=self.promo_code,
        )


class StatusChange(BaseModel):
    """Запись истории статусов."""

    order_id: str
    from_status: Optional[OrderStatus] = None
    to_status: OrderStatus
    actor: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)


class OrderDraft(BaseModel):
    """Данные для оформления заказа (до расчёта цены)."""

    customer_id: str = Field(..., min_length=1, description="ID клиента")
    pickup_address: str = Field(..., min_length=1, description="Адрес забора")
    pickup_latitude: Optional[float] = Field(None, ge=-90, le=90)
    pickup_longitude: Optional[float] = Field(None, ge=-180, le=180)
    dropoff_address: str = Field(..., min_length=1, description="Адрес магазина")
    dropoff_latitude: Optional[float] = Field(None, ge=-90, le=90)
    dropoff_longitude: Optional[float] = Field(None, ge=-180, le=180)
    retailer: Optional[str] = None
    item_description: Optional[str] = None
    boxes: list[BoxLine] = Field(..., min_length=1, description="Коробки")
    service_tier: ServiceTier = Field(ServiceTier.STANDARD, description="Уровень обслуживания")
    promo_code: Optional[str] = Field(None, description="Промокод")
    scheduled_pickup_time: Optional[datetime] = None

    @field_validator("promo_code", mode="before")
    @classmethod
    def blank_promo_is_none(cls, v: Optional[str]) -> Optional[str]:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def is_rush(self) -> bool:
        return self.service_tier == ServiceTier.RUSH
