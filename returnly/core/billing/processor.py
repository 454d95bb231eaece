# returnly/core/billing/processor.py
"""
Клиент платёжного процессора.

Процессор внешний: списание с клиента, возвраты и запрос статуса
возврата. Таймауты и 5xx считаются повторяемыми (ProcessorTimeout),
4xx считаются окончательным отказом (ProcessorRejected).
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any
from uuid import uuid4

import httpx

from returnly.common.constants import TypeMsg
from returnly.common.logger import log_error, log_info
from returnly.core.billing.models import ChargeResult, RefundStatusResult
from returnly.core.errors import ProcessorRejected, ProcessorTimeout


class PaymentProcessor(ABC):
    """Интерфейс платёжного процессора."""

    @abstractmethod
    async def charge(self, order_id: str, amount: Decimal) -> ChargeResult:
        """Списывает сумму заказа с клиента."""

    @abstractmethod
    async def refund(
        self,
        payment_intent_id: str,
        amount: Decimal,
        reason: str,
        idempotency_key: str,
    ) -> str:
        """
        Отправляет возврат.

        Returns:
            ID возврата в процессоре

        Raises:
            ProcessorTimeout: ответ не получен (можно повторить с тем же ключом)
            ProcessorRejected: процессор отказал
        """

    @abstractmethod
    async def get_refund_status(self, processor_refund_id: str) -> RefundStatusResult:
        ...

    async def close(self) -> None:
        return None


class HttpPaymentProcessor(PaymentProcessor):
    """Процессор, доступный по HTTP API."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Args:
            base_url: Адрес API процессора (из конфига если None)
            api_key: Ключ API (из конфига если None)
            timeout: Таймаут запроса в секундах
            client: Готовый HTTP клиент (для тестов)
        """
        from returnly.config import settings

        base_url = base_url or settings.payments.PAYMENT_PROCESSOR_URL
        api_key = api_key if api_key is not None else settings.payments.PAYMENT_PROCESSOR_API_KEY
        timeout = timeout or settings.payments.PROCESSOR_TIMEOUT_SECONDS

        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            response = await self._client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise ProcessorTimeout(f"Таймаут запроса к процессору: {method} {path}") from e
        except httpx.TransportError as e:
            raise ProcessorTimeout(f"Процессор недоступен: {e}") from e

        if response.status_code >= 500:
            raise ProcessorTimeout(
                f"Процессор вернул {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            await log_error(f"Процессор отклонил {method} {path}: {response.status_code} {response.text}")
            raise ProcessorRejected(
                f"Процессор отклонил запрос ({response.status_code})",
                status_code=response.status_code,
                body=response.text,
            )
        return response.json()

    async def charge(self, order_id: str, amount: Decimal) -> ChargeResult:
        data = await self._request(
            "POST",
            "/charges",
            json={"order_id": order_id, "amount": str(amount)},
            idempotency_key=f"charge:{order_id}",
        )
        return ChargeResult(payment_intent_id=data["id"], status=data.get("status", "processing"))

    async def refund(
        self,
        payment_intent_id: str,
        amount: Decimal,
        reason: str,
        idempotency_key: str,
    ) -> str:
        data = await self._request(
            "POST",
            "/refunds",
            json={"payment_intent": payment_intent_id, "amount": str(amount), "reason": reason},
            idempotency_key=idempotency_key,
        )
        return data["id"]

    async def get_refund_status(self, processor_refund_id: str) -> RefundStatusResult:
        data = await self._request("GET", f"/refunds/{processor_refund_id}")
        return RefundStatusResult(
            processor_refund_id=processor_refund_id,
            status=data.get("status", "pending"),
            error=data.get("failure_reason"),
        )


class InMemoryPaymentProcessor(PaymentProcessor):
    """
    Процессор-заглушка для режима разработки (STORAGE_BACKEND=memory).

    Списания проходят сразу, возвраты остаются pending до вызова
    settle_refund или подтверждаются сразу при auto_settle=True.
    """

    def __init__(self, auto_settle: bool = True) -> None:
        self._auto_settle = auto_settle
        self._refunds: dict[str, RefundStatusResult] = {}
        self._by_key: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def charge(self, order_id: str, amount: Decimal) -> ChargeResult:
        await log_info(f"[processor] списание {amount} по заказу {order_id}", type_msg=TypeMsg.DEBUG)
        return ChargeResult(payment_intent_id=f"pi_{uuid4().hex[:16]}", status="succeeded")

    async def refund(
        self,
        payment_intent_id: str,
        amount: Decimal,
        reason: str,
        idempotency_key: str,
    ) -> str:
        async with self._lock:
            existing = self._by_key.get(idempotency_key)
            if existing:
                return existing
            refund_id = f"re_{uuid4().hex[:16]}"
            status = "succeeded" if self._auto_settle else "pending"
            self._refunds[refund_id] = RefundStatusResult(processor_refund_id=refund_id, status=status)
            self._by_key[idempotency_key] = refund_id
        await log_info(f"[processor] возврат {amount} по {payment_intent_id}: {refund_id}", type_msg=TypeMsg.DEBUG)
        return refund_id

    async def get_refund_status(self, processor_refund_id: str) -> RefundStatusResult:
        result = self._refunds.get(processor_refund_id)
        if result is None:
            raise ProcessorRejected(f"Возврат {processor_refund_id} не найден")
        return result

    def settle_refund(self, processor_refund_id: str, succeeded: bool = True, error: str | None = None) -> None:
        self._refunds[processor_refund_id] = RefundStatusResult(
            processor_refund_id=processor_refund_id,
            status="succeeded" if succeeded else "failed",
            error=error,
        )
