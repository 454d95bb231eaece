# returnly/shared/events/order_events.py
"""
События жизненного цикла заказа.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from returnly.shared.events.base import DomainEvent


class OrderCreated(DomainEvent):
    """Событие: заказ оформлен, цена зафиксирована."""

    event_type: Literal["order.created"] = "order.created"

    order_id: str
    tracking_number: str
    customer_id: str
    total_price: Decimal
    is_rush: bool = False


class OrderStatusChanged(DomainEvent):
    """Событие: статус заказа изменён. Его потребляет диспетчер уведомлений."""

    event_type: Literal["order.status_changed"] = "order.status_changed"

    order_id: str
    from_status: str
    to_status: str
    at: datetime
    actor: str | None = None
    driver_id: str | None = None


class OrderAssigned(DomainEvent):
    """Событие: водитель принял заказ."""

    event_type: Literal["order.assigned"] = "order.assigned"

    order_id: str
    driver_id: str


class OrderUnassigned(DomainEvent):
    """Событие: водитель снят с заказа, заказ вернулся в пул."""

    event_type: Literal["order.unassigned"] = "order.unassigned"

    order_id: str
    driver_id: str
    actor: str | None = None
