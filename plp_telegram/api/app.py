# plp_telegram/api/app.py

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException
from telegram.ext import Application

from plp_telegram.api import admin, analytics, webhook
from plp_telegram.api.dependencies import ApiError
from plp_telegram.config import Settings
from plp_telegram.core.storage import ObjectStorage

logger = logging.getLogger(__name__)


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return exc.to_response()


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
    )
    return JSONResponse({"error": "Invalid request parameters", "details": details}, status_code=400)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code)


def create_app(settings: Settings, session_factory: sessionmaker,
               application: Optional[Application] = None,
               storage: Optional[ObjectStorage] = None,
               lifespan=None) -> FastAPI:
    """
    组装 Web 应用：Telegram Webhook、管理后台接口与统计分析接口。

    `application` 为 None 表示机器人未配置，相关接口返回 503。
    """
    app = FastAPI(title="PLP Telegram Manager", lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.application = application
    app.state.storage = storage

    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)

    app.include_router(webhook.router, prefix="/api/telegram")
    app.include_router(admin.router, prefix="/api")
    app.include_router(analytics.router, prefix="/api/analytics")
    app.include_router(admin.health_router, prefix="/api")

    if application is None:
        logger.warning("未配置 TELEGRAM_BOT_TOKEN，Webhook 和依赖机器人的接口将返回 503。")
    return app
