#!/usr/bin/env python3
# main.py
"""
Главная точка входа Returnly.
Запускает HTTP API, фоновые воркеры или оба компонента.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from returnly.config import settings
from returnly.common.logger import setup_logging, log_info, log_error
from returnly.common.constants import TypeMsg
from returnly.dependencies import Services, build_services, close_services


VALID_MODES = ("api", "worker", "all")

# Глобальный флаг для graceful shutdown
_shutdown_event: asyncio.Event | None = None
_running_tasks: list[asyncio.Task] = []


def setup_signal_handlers() -> None:
    """Настраивает обработчики сигналов для graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()
            for task in _running_tasks:
                if not task.done():
                    task.cancel()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))


async def run_api(services: Services | None = None) -> None:
    """Запускает HTTP API через uvicorn."""
    import uvicorn

    from returnly.api.app import create_app

    await log_info(
        f"Запуск API на {settings.system.API_HOST}:{settings.system.API_PORT}...",
        type_msg=TypeMsg.INFO,
    )

    config = uvicorn.Config(
        create_app(services),
        host=settings.system.API_HOST,
        port=settings.system.API_PORT,
        log_level="debug" if settings.system.DEBUG else "info",
    )

    server = uvicorn.Server(config)
    # Сигналы обрабатывает main
    server.install_signal_handlers = lambda: None
    try:
        await server.serve()
    except asyncio.CancelledError:
        await log_info("API: graceful shutdown", type_msg=TypeMsg.DEBUG)
        await server.shutdown()


async def run_worker(services: Services | None = None) -> None:
    """Запускает фоновые воркеры."""
    from returnly.worker.runner import run_workers

    await run_workers(services)


async def main(mode: str | None = None) -> None:
    """
    Главная функция запуска.

    Args:
        mode: Режим запуска (api, worker, all).
              Если None, берётся COMPONENT_MODE из настроек.
    """
    global _running_tasks

    setup_logging()
    setup_signal_handlers()

    mode = mode or settings.system.COMPONENT_MODE
    if mode not in VALID_MODES:
        await log_error(f"Неизвестный режим: {mode}")
        return

    await log_info(
        f"Returnly v{settings.system.VERSION} — запуск в режиме '{mode}' "
        f"(хранилище: {settings.system.STORAGE_BACKEND})",
        type_msg=TypeMsg.INFO,
    )

    services: Services | None = None
    try:
        # API и воркер в одном процессе работают с одними сервисами
        services = await build_services()

        if mode == "api":
            _running_tasks = [asyncio.create_task(run_api(services))]
        elif mode == "worker":
            _running_tasks = [asyncio.create_task(run_worker(services))]
        else:
            _running_tasks = [
                asyncio.create_task(run_api(services)),
                asyncio.create_task(run_worker(services)),
            ]

        await asyncio.gather(*_running_tasks, return_exceptions=True)

    except KeyboardInterrupt:
        await log_info("Получен сигнал остановки (Ctrl+C)", type_msg=TypeMsg.INFO)
    except asyncio.CancelledError:
        await log_info("Задача отменена, выполняется graceful shutdown", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}")
        raise
    finally:
        if _running_tasks:
            for task in _running_tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*_running_tasks, return_exceptions=True)
            _running_tasks.clear()

        await log_info("Завершение работы, закрытие подключений...", type_msg=TypeMsg.INFO)
        if services is not None:
            try:
                await close_services(services)
            except Exception as e:
                await log_error(f"Ошибка при закрытии подключений: {e}")
        await log_info("Приложение остановлено", type_msg=TypeMsg.INFO)


def print_usage() -> None:
    """Выводит справку по использованию."""
    print("""
Returnly — оформление, назначение и расчёты по заказам на возврат

Использование:
    python main.py [mode]

Режимы:
    api       — HTTP API
    worker    — сверка возвратов и возврат брошенных заказов в пул
    all       — API и воркер в одном процессе

Без аргумента режим берётся из COMPONENT_MODE.
STORAGE_BACKEND=memory запускает всё без PostgreSQL/Redis/RabbitMQ.
    """)


if __name__ == "__main__":
    mode = None

    if len(sys.argv) > 1:
        arg = sys.argv[1].lower()
        if arg in ("--help", "-h"):
            print_usage()
            sys.exit(0)
        elif arg in VALID_MODES:
            mode = arg
        else:
            print(f"Неизвестный режим: {arg}")
            print_usage()
            sys.exit(1)

    try:
        asyncio.run(main(mode))
    except KeyboardInterrupt:
        pass
