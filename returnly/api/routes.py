# returnly/api/routes.py
"""
HTTP endpoints.

Endpoints:
- POST /orders/quote - расчёт цены
- POST /orders - оформить заказ
- GET /orders/available - пул заказов для водителя
- POST /orders/bulk-update - массовая смена статуса (admin)
- POST /orders/bulk-refund - массовый возврат (admin)
- GET /orders/{id} - заказ
- GET /orders/{id}/history - история статусов
- POST /orders/{id}/status - смена статуса
- POST /orders/{id}/charge - списать оплату
- POST /orders/{id}/accept - водитель принимает заказ
- POST /orders/{id}/unassign - снять водителя
- POST /orders/{id}/tip - чаевые водителю
- POST /orders/{id}/refund - возврат (admin)
- GET /orders/{id}/refunds - возвраты по заказу
- POST /orders/{id}/payout - отметить выплату водителю (admin)
- POST /drivers/{id}/online - водитель онлайн/офлайн
- POST /drivers/{id}/location - координаты водителя
- POST /webhooks/payments - уведомления процессора
"""

from __future__ import annotations

import hmac
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Query

from returnly.api.schemas import (
    AcceptRequest,
    AvailableOrderResponse,
    BulkRefundRequest,
    BulkResponse,
    BulkUpdateRequest,
    DriverLocationRequest,
    DriverOnlineRequest,
    PaymentWebhook,
    RefundRequest,
    RefundResponse,
    StatusUpdateRequest,
    TipRequest,
    WebhookAck,
)
from returnly.common.constants import OrderStatus, TypeMsg
from returnly.common.logger import log_info
from returnly.core.admin.authorization import AuthorizationService
from returnly.core.admin.service import AdminService, RefundItem
from returnly.core.billing.service import SettlementService
from returnly.core.errors import Forbidden, ValidationError
from returnly.core.matching.drivers import Driver
from returnly.core.matching.service import AssignmentService
from returnly.core.orders.models import Order, OrderDraft, StatusChange
from returnly.core.orders.service import OrderService
from returnly.core.pricing.models import PriceBreakdown
from returnly.dependencies import (
    Services,
    get_admin_service,
    get_assignment_service,
    get_authorization_service,
    get_order_service,
    get_services,
    get_settlement_service,
)

router = APIRouter()

ActorHeader = Annotated[Optional[str], Header(alias="X-Actor-Id")]
Auth = Annotated[AuthorizationService, Depends(get_authorization_service)]
Orders = Annotated[OrderService, Depends(get_order_service)]
Assignment = Annotated[AssignmentService, Depends(get_assignment_service)]
Settlement = Annotated[SettlementService, Depends(get_settlement_service)]
Admin = Annotated[AdminService, Depends(get_admin_service)]


async def require_admin(
    x_actor_id: ActorHeader = None,
    auth: AuthorizationService = Depends(get_authorization_service),
) -> str:
    """Пропускает только пользователей с ролью admin."""
    await auth.require_admin(x_actor_id)
    return x_actor_id


AdminActor = Annotated[str, Depends(require_admin)]


# === ORDERS ===

@router.post("/orders/quote", response_model=PriceBreakdown, tags=["Orders"], summary="Расчёт цены")
async def quote_order(draft: OrderDraft, service: Orders) -> PriceBreakdown:
    return await service.quote(draft)


@router.post("/orders", response_model=Order, status_code=201, tags=["Orders"], summary="Оформить заказ")
async def create_order(draft: OrderDraft, service: Orders) -> Order:
    """
    Оформить заказ.

    Цена считается один раз и сохраняется в заказе.
    Публикует событие `order.created`.
    """
    return await service.create_order(draft)


@router.get(
    "/orders/available",
    response_model=list[AvailableOrderResponse],
    tags=["Assignment"],
    summary="Доступные заказы",
)
async def list_available_orders(
    service: Assignment,
    driver_id: Annotated[Optional[str], Query()] = None,
    lat: Annotated[Optional[float], Query(ge=-90, le=90)] = None,
    lon: Annotated[Optional[float], Query(ge=-180, le=180)] = None,
    radius: Annotated[Optional[float], Query(gt=0)] = None,
) -> list[AvailableOrderResponse]:
    """Заказы confirmed без водителя, ближайшие первыми."""
    if driver_id:
        items = await service.list_available_for_driver(driver_id, radius)
    elif lat is not None and lon is not None:
        items = await service.list_available(lat, lon, radius)
    else:
        raise ValidationError("Укажите driver_id или координаты lat/lon")

    return [AvailableOrderResponse(order=item.order, distance_miles=item.distance_miles) for item in items]


@router.post("/orders/bulk-update", response_model=BulkResponse, tags=["Admin"], summary="Массовая смена статуса")
async def bulk_update(request: BulkUpdateRequest, service: Admin, actor: AdminActor) -> BulkResponse:
    result = await service.bulk_transition(request.order_ids, request.status, actor=actor)
    return BulkResponse.from_result(result)


@router.post("/orders/bulk-refund", response_model=BulkResponse, tags=["Admin"], summary="Массовый возврат")
async def bulk_refund(request: BulkRefundRequest, service: Admin, actor: AdminActor) -> BulkResponse:
    items = [
        RefundItem(
            order_id=item.order_id,
            amount=item.amount,
            reason=item.reason,
            idempotency_key=item.idempotency_key,
        )
        for item in request.items
    ]
    result = await service.bulk_refund(items, actor=actor)
    return BulkResponse.from_result(result)


@router.get("/orders/{order_id}", response_model=Order, tags=["Orders"], summary="Получить заказ")
async def get_order(order_id: str, service: Orders) -> Order:
    return await service.get_order(order_id)


@router.get(
    "/orders/{order_id}/history",
    response_model=list[StatusChange],
    tags=["Orders"],
    summary="История статусов",
)
async def get_order_history(order_id: str, service: Orders) -> list[StatusChange]:
    return await service.get_history(order_id)


@router.post("/orders/{order_id}/status", response_model=Order, tags=["Orders"], summary="Сменить статус")
async def update_status(
    order_id: str,
    request: StatusUpdateRequest,
    service: Orders,
    auth: Auth,
    x_actor_id: ActorHeader = None,
) -> Order:
    """
    Сменить статус.

    Водитель заказа отмечает шаги забора и доставки,
    отмену и закрытие выполняет администратор.
    Статусы assigned и refunded здесь не выставляются.
    """
    order = await service.get_order(order_id)
    await auth.authorize_transition(x_actor_id, order, request.status)
    return await service.transition(order_id, request.status, actor=x_actor_id)


@router.post("/orders/{order_id}/charge", response_model=Order, tags=["Payments"], summary="Списать оплату")
async def charge_order(order_id: str, service: Orders) -> Order:
    return await service.charge_order(order_id)


@router.post("/orders/{order_id}/tip", response_model=Order, tags=["Payments"], summary="Чаевые водителю")
async def tip_driver(order_id: str, request: TipRequest, service: Orders) -> Order:
    return await service.record_tip(order_id, request.amount)


# === ASSIGNMENT ===

@router.post("/orders/{order_id}/accept", response_model=Order, tags=["Assignment"], summary="Принять заказ")
async def accept_order(order_id: str, request: AcceptRequest, service: Assignment) -> Order:
    """
    Водитель принимает заказ.

    Из нескольких одновременных запросов успешен ровно один,
    остальные получают 409 ORDER_ALREADY_ASSIGNED.
    """
    return await service.accept(order_id, request.driver_id)


@router.post("/orders/{order_id}/unassign", response_model=Order, tags=["Assignment"], summary="Снять водителя")
async def unassign_order(
    order_id: str,
    service: Assignment,
    orders: Orders,
    auth: Auth,
    x_actor_id: ActorHeader = None,
) -> Order:
    """Снять водителя: администратор или сам водитель заказа."""
    order = await orders.get_order(order_id)
    await auth.authorize_transition(x_actor_id, order, OrderStatus.CONFIRMED)
    return await service.unassign(order_id, actor=x_actor_id)


@router.post("/drivers/{driver_id}/online", response_model=Driver, tags=["Assignment"])
async def set_driver_online(driver_id: str, request: DriverOnlineRequest, service: Assignment) -> Driver:
    return await service.set_online(driver_id, request.online)


@router.post("/drivers/{driver_id}/location", response_model=Driver, tags=["Assignment"])
async def update_driver_location(
    driver_id: str,
    request: DriverLocationRequest,
    service: Assignment,
) -> Driver:
    return await service.update_location(driver_id, request.latitude, request.longitude)


# === REFUNDS & PAYOUTS ===

@router.post(
    "/orders/{order_id}/refund",
    response_model=RefundResponse,
    tags=["Payments"],
    summary="Запросить возврат",
)
async def refund_order(
    order_id: str,
    request: RefundRequest,
    service: Settlement,
    actor: AdminActor,
) -> RefundResponse:
    """
    Запросить возврат.

    Повтор с тем же idempotencyKey возвращает уже созданный возврат.
    """
    refund = await service.request_refund(
        order_id,
        request.amount,
        request.reason,
        idempotency_key=request.idempotency_key,
        actor=actor,
    )
    return RefundResponse.from_refund(refund)


@router.get("/orders/{order_id}/refunds", response_model=list[RefundResponse], tags=["Payments"])
async def list_order_refunds(order_id: str, service: Settlement) -> list[RefundResponse]:
    return [RefundResponse.from_refund(refund) for refund in await service.list_refunds(order_id)]


@router.post("/orders/{order_id}/payout", response_model=Order, tags=["Payments"], summary="Выплата водителю")
async def record_payout(order_id: str, service: Settlement, actor: AdminActor) -> Order:
    return await service.record_driver_payout(order_id)


# === WEBHOOKS ===

def _check_webhook_secret(provided: Optional[str], backend: str) -> None:
    from returnly.config import settings

    expected = settings.payments.PAYMENT_WEBHOOK_SECRET
    if not expected:
        # В памяти процесса секрет необязателен, с PostgreSQL обязателен
        if backend == "postgres":
            raise Forbidden("Секрет webhook не настроен")
        return
    if not hmac.compare_digest(provided or "", expected):
        raise Forbidden("Неверная подпись webhook")


@router.post("/webhooks/payments", response_model=WebhookAck, tags=["Webhooks"])
async def payments_webhook(
    event: PaymentWebhook,
    orders: Orders,
    settlement: Settlement,
    services: Annotated[Services, Depends(get_services)],
    x_webhook_secret: Annotated[Optional[str], Header(alias="X-Webhook-Secret")] = None,
) -> WebhookAck:
    """Окончательный статус списания или возврата от процессора."""
    _check_webhook_secret(x_webhook_secret, services.backend)
    await log_info(f"Webhook процессора: {event.type}", type_msg=TypeMsg.DEBUG)

    match event.type:
        case "charge.succeeded" | "charge.failed":
            if not event.order_id:
                raise ValidationError("В уведомлении о списании нет orderId")
            await orders.apply_charge_result(
                event.order_id,
                succeeded=event.type == "charge.succeeded",
                payment_intent_id=event.payment_intent_id,
            )
        case "refund.succeeded" | "refund.failed":
            await settlement.apply_refund_result(
                refund_id=event.refund_id,
                processor_refund_id=event.processor_refund_id,
                succeeded=event.type == "refund.succeeded",
                error=event.error,
            )

    return WebhookAck()
