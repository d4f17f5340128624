# plp_telegram/api/webhook.py (Telegram Webhook 入口)

import logging
from typing import Optional

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse
from telegram import Update

from plp_telegram.api.dependencies import secrets_match
from plp_telegram.core.updates import validate_update

logger = logging.getLogger(__name__)

router = APIRouter(tags=["telegram"])


@router.post("/webhook")
async def telegram_webhook(
    request: Request,
    secret_token: Optional[str] = Header(default=None, alias="X-Telegram-Bot-Api-Secret-Token"),
):
    """
    接收 Telegram 推送的更新并同步处理。

    处理过程中的错误只记录日志，仍然返回 `{ok: true}`，避免 Telegram 重试风暴。
    只有密钥不匹配 (401)、机器人未配置 (503) 和无法处理的请求 (500) 会如实返回。
    """
    settings = request.app.state.settings
    if settings.webhook_secret and not secrets_match(secret_token, settings.webhook_secret):
        logger.warning("收到密钥不匹配的 Webhook 请求，已拒绝。")
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    application = request.app.state.application
    if application is None:
        return JSONResponse({"error": "Bot not configured"}, status_code=503)

    try:
        payload = await request.json()

        validation = validate_update(payload)
        if not validation.ok:
            logger.warning(f"Webhook 更新未通过结构校验，将继续尽力处理: {'; '.join(validation.errors)}")

        update = Update.de_json(payload, application.bot)
        if update is not None:
            logger.debug(f"收到 Webhook 更新: {update.update_id}")
            await application.process_update(update)
        return {"ok": True}
    except Exception as e:
        logger.error(f"处理 Webhook 请求时出错: {e}", exc_info=True)
        return JSONResponse({"error": "Internal server error"}, status_code=500)


@router.get("/webhook")
async def webhook_status(request: Request):
    """轻量级的状态探针，返回机器人身份。"""
    application = request.app.state.application
    if application is None:
        return JSONResponse({"status": "unconfigured", "bot": None}, status_code=503)

    bot = application.bot
    try:
        bot_info = {"id": bot.id, "username": bot.username}
    except RuntimeError:
        # Bot 尚未 initialize()，身份信息不可用
        bot_info = {"id": "unknown", "username": "unknown"}
    return {"status": "ok", "bot": bot_info}
