"""
Доменные события, публикуемые в шину событий.
"""

from returnly.shared.events.base import DomainEvent, EventMetadata
from returnly.shared.events.order_events import (
    OrderAssigned,
    OrderCreated,
    OrderStatusChanged,
    OrderUnassigned,
)
from returnly.shared.events.payment_events import (
    PaymentCaptured,
    RefundRequested,
    RefundResolved,
)

__all__ = [
    "DomainEvent",
    "EventMetadata",
    "OrderAssigned",
    "OrderCreated",
    "OrderStatusChanged",
    "OrderUnassigned",
    "PaymentCaptured",
    "RefundRequested",
    "RefundResolved",
]
