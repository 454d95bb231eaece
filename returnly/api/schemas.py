# returnly/api/schemas.py
"""
Модели запросов и ответов HTTP API.
Поля в JSON в camelCase, в Python в snake_case.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from returnly.common.constants import OrderStatus
from returnly.core.admin.service import BulkResult
from returnly.core.billing.models import Refund
from returnly.core.orders.models import Order


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# === REQUESTS ===

class StatusUpdateRequest(ApiModel):
    """Смена статуса заказа."""
    status: OrderStatus


class AcceptRequest(ApiModel):
    """Водитель принимает заказ."""
    driver_id: str = Field(..., alias="driverId", min_length=1)


class BulkUpdateRequest(ApiModel):
    """Массовая смена статуса."""
    order_ids: list[str] = Field(..., alias="orderIds", min_length=1)
    status: OrderStatus


class RefundRequest(ApiModel):
    """Запрос возврата."""
    amount: Decimal
    reason: str
    idempotency_key: Optional[str] = Field(None, alias="idempotencyKey")


class BulkRefundItem(RefundRequest):
    order_id: str = Field(..., alias="orderId")


class BulkRefundRequest(ApiModel):
    items: list[BulkRefundItem] = Field(..., min_length=1)


class TipRequest(ApiModel):
    amount: Decimal


class DriverOnlineRequest(ApiModel):
    online: bool


class DriverLocationRequest(ApiModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class PaymentWebhook(ApiModel):
    """Уведомление процессора о платеже или возврате."""
    type: Literal["charge.succeeded", "charge.failed", "refund.succeeded", "refund.failed"]
    order_id: Optional[str] = Field(None, alias="orderId")
    payment_intent_id: Optional[str] = Field(None, alias="paymentIntentId")
    refund_id: Optional[str] = Field(None, alias="refundId")
    processor_refund_id: Optional[str] = Field(None, alias="processorRefundId")
    error: Optional[str] = None


# === RESPONSES ===

class RefundResponse(ApiModel):
    refund_id: str = Field(..., alias="refundId")
    order_id: str = Field(..., alias="orderId")
    amount: Decimal
    status: str
    needs_reconciliation: bool = Field(False, alias="needsReconciliation")

    @classmethod
    def from_refund(cls, refund: Refund) -> "RefundResponse":
        return cls(
            refund_id=refund.id,
            order_id=refund.order_id,
            amount=refund.amount,
            status=refund.status.value,
            needs_reconciliation=refund.needs_reconciliation,
        )


class BulkFailureResponse(ApiModel):
    order_id: str = Field(..., alias="orderId")
    reason: str
    message: str


class BulkResponse(ApiModel):
    succeeded: list[str] = Field(default_factory=list)
    failed: list[BulkFailureResponse] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: BulkResult) -> "BulkResponse":
        return cls(
            succeeded=result.succeeded,
            failed=[
                BulkFailureResponse(order_id=f.order_id, reason=f.reason, message=f.message)
                for f in result.failed
            ],
        )


class AvailableOrderResponse(ApiModel):
    order: Order
    distance_miles: float = Field(..., alias="distanceMiles")


class WebhookAck(ApiModel):
    received: bool = True
