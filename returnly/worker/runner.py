# returnly/worker/runner.py
"""
Запускалка воркеров.
"""

from __future__ import annotations

import asyncio
from typing import List

from returnly.common.constants import TypeMsg
from returnly.common.logger import log_error, log_info
from returnly.dependencies import Services, build_services, close_services
from returnly.worker.assignment_timeout import StaleAssignmentWorker
from returnly.worker.base import BaseWorker
from returnly.worker.reconciliation import RefundReconciliationWorker


async def run_workers(services: Services | None = None) -> None:
    """
    Запускает сверку возвратов и возврат брошенных заказов в пул.

    Args:
        services: Уже собранные сервисы. Если None, воркеры сами собирают
            их и закрывают при остановке
    """
    await log_info("Запуск воркеров...", type_msg=TypeMsg.INFO)

    owns_services = services is None
    if services is None:
        services = await build_services()

    workers: List[BaseWorker] = [
        RefundReconciliationWorker(services.settlement),
        StaleAssignmentWorker(services.assignment),
    ]

    try:
        for worker in workers:
            await worker.start()

        await log_info(f"Запущено {len(workers)} воркеров", type_msg=TypeMsg.INFO)

        # Ждём завершения (Ctrl+C)
        while True:
            await asyncio.sleep(1)

    except asyncio.CancelledError:
        await log_info("Получен сигнал остановки", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}")
        raise
    finally:
        for worker in workers:
            await worker.stop()

        if owns_services:
            await close_services(services)

        await log_info("Воркеры остановлены", type_msg=TypeMsg.INFO)


def main() -> None:
    """Точка входа."""
    try:
        asyncio.run(run_workers())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
