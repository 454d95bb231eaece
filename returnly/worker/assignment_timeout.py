# returnly/worker/assignment_timeout.py
"""
Возврат в пул заказов, брошенных водителями.

Водитель принял заказ и пропал: статус не меняется дольше
ASSIGNMENT_TIMEOUT_MINUTES. Воркер снимает водителя, и заказ снова
виден в пуле.
"""

from __future__ import annotations

from datetime import timedelta

from returnly.common.constants import TypeMsg
from returnly.common.logger import log_info
from returnly.core.matching.service import AssignmentService
from returnly.worker.base import BaseWorker


class StaleAssignmentWorker(BaseWorker):
    def __init__(
        self,
        assignment: AssignmentService,
        interval: float | None = None,
        timeout_minutes: int | None = None,
    ) -> None:
        from returnly.config import settings

        if interval is None:
            interval = settings.assignment.ASSIGNMENT_SWEEP_INTERVAL
        if timeout_minutes is None:
            timeout_minutes = settings.assignment.ASSIGNMENT_TIMEOUT_MINUTES

        super().__init__(interval)
        self._assignment = assignment
        self._timeout = timedelta(minutes=timeout_minutes)
        self.last_released = 0

    @property
    def name(self) -> str:
        return "stale_assignments"

    async def run_once(self) -> None:
        self.last_released = await self._assignment.release_stale_assignments(older_than=self._timeout)
        if self.last_released:
            await log_info(
                f"Возвращено в пул заказов: {self.last_released}",
                type_msg=TypeMsg.DEBUG,
            )
