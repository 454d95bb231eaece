# returnly/core/billing/models.py
"""
Модели расчётов: возвраты и выплаты водителям.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from returnly.common.constants import RefundStatus
from returnly.common.timeutils import utcnow


class Refund(BaseModel):
    """Возврат средств клиенту."""

    id: str = Field(default_factory=lambda: str(uuid4()), description="UUID возврата")
    order_id: str = Field(..., description="ID заказа")
    amount: Decimal = Field(..., gt=0, description="Сумма возврата")
    reason: str = Field(..., description="Причина")
    idempotency_key: str = Field(..., description="Ключ идемпотентности")
    status: RefundStatus = Field(RefundStatus.PROCESSING, description="Статус возврата")
    processor_refund_id: Optional[str] = Field(None, description="ID возврата в процессоре")
    attempts: int = Field(0, ge=0, description="Сколько раз отправляли в процессор")
    last_error: Optional[str] = None
    needs_reconciliation: bool = Field(False, description="Ответ процессора не получен")
    requested_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @property
    def is_final(self) -> bool:
        return self.status != RefundStatus.PROCESSING


@dataclass
class PayoutBreakdown:
    """Результат расчёта выплаты водителю."""
    driver_earning: Decimal
    platform_fee: Decimal
    base_pay: Decimal
    distance_pay: Decimal
    size_bonus: Decimal
    time_pay: Decimal
    estimated_minutes: int
    billable_minutes: int


@dataclass
class ChargeResult:
    """Ответ процессора на списание."""
    payment_intent_id: str
    status: str  # succeeded | processing | failed


@dataclass
class RefundStatusResult:
    """Ответ процессора о статусе возврата."""
    processor_refund_id: str
    status: str  # pending | succeeded | failed
    error: Optional[str] = None
