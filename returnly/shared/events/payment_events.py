# returnly/shared/events/payment_events.py
"""
События оплаты и возвратов.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Literal

from returnly.shared.events.base import DomainEvent


class PaymentCaptured(DomainEvent):
    """Событие: результат списания средств с клиента."""

    event_type: Literal["payment.captured"] = "payment.captured"

    order_id: str
    amount: Decimal
    succeeded: bool
    payment_intent_id: str | None = None


class RefundRequested(DomainEvent):
    """Событие: возврат зарезервирован и отправлен в процессор."""

    event_type: Literal["refund.requested"] = "refund.requested"

    order_id: str
    refund_id: str
    amount: Decimal
    reason: str


class RefundResolved(DomainEvent):
    """Событие: возврат получил окончательный статус."""

    event_type: Literal["refund.resolved"] = "refund.resolved"

    order_id: str
    refund_id: str
    amount: Decimal
    status: str
    needs_manual_reconciliation: bool = False
