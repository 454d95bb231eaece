# returnly/worker/reconciliation.py
"""
Сверка возвратов, застрявших в статусе processing.

Webhook процессора может не дойти, а ответ на отправку возврата
может потеряться по таймауту. Воркер опрашивает процессор и фиксирует
окончательный статус.
"""

from __future__ import annotations

from datetime import timedelta

from returnly.common.constants import TypeMsg
from returnly.common.logger import log_info
from returnly.core.billing.service import SettlementService
from returnly.worker.base import BaseWorker


class RefundReconciliationWorker(BaseWorker):
    def __init__(
        self,
        settlement: SettlementService,
        interval: float | None = None,
        min_age_seconds: int | None = None,
    ) -> None:
        from returnly.config import settings

        if interval is None:
            interval = settings.payments.RECONCILIATION_INTERVAL
        if min_age_seconds is None:
            min_age_seconds = settings.payments.RECONCILIATION_MIN_AGE

        super().__init__(interval)
        self._settlement = settlement
        self._min_age = timedelta(seconds=min_age_seconds)
        self.last_resolved = 0

    @property
    def name(self) -> str:
        return "refund_reconciliation"

    async def run_once(self) -> None:
        self.last_resolved = await self._settlement.reconcile_pending_refunds(older_than=self._min_age)
        if self.last_resolved:
            await log_info(
                f"Сверка: закрыто возвратов {self.last_resolved}",
                type_msg=TypeMsg.DEBUG,
            )
