# returnly/api/app.py
"""
FastAPI приложение Returnly.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from returnly.api.errors import register_exception_handlers
from returnly.api.routes import router
from returnly.common.constants import TypeMsg
from returnly.common.logger import log_info
from returnly.dependencies import (
    Services,
    build_services,
    cleanup_dependencies,
    close_services,
    get_services,
    init_dependencies,
)
from returnly.shared.models.common import HealthStatus


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Жизненный цикл приложения."""
    # Startup
    owns_services = app.state.services is None
    services = app.state.services or await build_services()
    init_dependencies(services)
    await log_info("API запущен", type_msg=TypeMsg.INFO)

    yield

    # Shutdown
    cleanup_dependencies()
    if owns_services:
        await close_services(services)
    await log_info("API остановлен", type_msg=TypeMsg.INFO)


def create_app(services: Services | None = None) -> FastAPI:
    """
    Создаёт приложение.

    Args:
        services: Готовые сервисы (тесты); если None, собираются при старте
    """
    from returnly.config import settings

    app = FastAPI(
        title="Returnly",
        description="Оформление, назначение и расчёты по заказам на возврат товаров.",
        version=settings.system.VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.services = services

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/health", response_model=HealthStatus, tags=["Health"])
    async def health_check() -> HealthStatus:
        """Проверка здоровья сервиса."""
        current = get_services()
        dependencies: dict[str, str] = {}

        if current.backend == "postgres":
            from returnly.infra.database import get_db
            from returnly.infra.redis_client import get_redis

            checks = {
                "postgres": await get_db().health_check(),
                "redis": await get_redis().health_check(),
                "rabbitmq": await current.event_bus.health_check(),
            }
            dependencies = {name: "up" if ok else "down" for name, ok in checks.items()}
        else:
            dependencies = {"storage": "memory"}

        status = "healthy" if all(v != "down" for v in dependencies.values()) else "degraded"
        return HealthStatus(
            service="returnly",
            status=status,
            version=settings.system.VERSION,
            dependencies=dependencies,
        )

    return app
