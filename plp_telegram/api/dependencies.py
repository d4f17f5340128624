# plp_telegram/api/dependencies.py

import hmac
import logging
from typing import Iterator, Optional

from fastapi import Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from telegram import Bot

from plp_telegram.core.storage import ObjectStorage

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """以 `{error, details}` JSON 形式返回给调用方的错误。"""

    def __init__(self, status_code: int, error: str, details: Optional[str] = None):
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.details = details

    def to_response(self) -> JSONResponse:
        content = {"error": self.error}
        if self.details is not None:
            content["details"] = self.details
        return JSONResponse(content, status_code=self.status_code)


def secrets_match(provided: Optional[str], expected: str) -> bool:
    if provided is None:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def get_db(request: Request) -> Iterator[Session]:
    """FastAPI 依赖：为每个请求提供一个数据库会话，写操作由路由自行提交。"""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_bot(request: Request) -> Optional[Bot]:
    application = request.app.state.application
    return application.bot if application is not None else None


def get_storage(request: Request) -> Optional[ObjectStorage]:
    return request.app.state.storage


def require_admin(request: Request, authorization: Optional[str] = Header(default=None)) -> None:
    """
    配置了 ADMIN_API_TOKEN 时校验 Bearer token。
    会话管理由前置的认证服务负责，这里只做最基本的访问控制。
    """
    token = request.app.state.settings.admin_api_token
    if not token:
        return
    if not secrets_match(authorization, f"Bearer {token}"):
        logger.warning(f"拒绝了一个未授权的管理接口请求: {request.url.path}")
        raise ApiError(401, "Unauthorized")
