# returnly/api/errors.py
"""
Преобразование доменных ошибок в HTTP ответы.
"""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from returnly.common.constants import TypeMsg
from returnly.common.logger import log_error, log_info
from returnly.core.errors import ReturnlyError
from returnly.shared.models.common import ErrorResponse


async def returnly_error_handler(request: Request, exc: ReturnlyError) -> JSONResponse:
    if exc.http_status >= 500:
        await log_error(f"{request.method} {request.url.path}: {exc.error_code} {exc.message}")
    else:
        await log_info(
            f"{request.method} {request.url.path}: {exc.error_code} {exc.message}",
            type_msg=TypeMsg.DEBUG,
        )

    body = ErrorResponse(
        error_code=exc.error_code,
        message=exc.message,
        details=exc.details or None,
    )
    return JSONResponse(status_code=exc.http_status, content=body.model_dump(mode="json"))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    await log_error(f"Необработанная ошибка {request.method} {request.url.path}: {exc}", exc_info=True)
    body = ErrorResponse(error_code="INTERNAL_ERROR", message="Внутренняя ошибка сервера")
    return JSONResponse(status_code=500, content=body.model_dump(mode="json"))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ReturnlyError, returnly_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
