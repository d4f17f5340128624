# main.py
# =======================================
# 应用程序主入口 (Application Entry Point)
# =======================================

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import time, timezone
from typing import Optional

import uvicorn
from sqlalchemy.orm import sessionmaker
from telegram import Update
from telegram.error import TelegramError
from telegram.ext import Application, CommandHandler, TypeHandler

# --- 内部模块导入 ---
from plp_telegram.api.app import create_app
from plp_telegram.config import Settings, load_settings
from plp_telegram.core.storage import ObjectStorage
from plp_telegram.database import init_database, get_session_factory
from plp_telegram.bot.handlers import (
    error_handler,
    help_handler,
    info_handler,
    route_update,
    start_handler,
    status_handler,
)
from plp_telegram.bot.tasks import cleanup_old_events_job, sync_groups_job

# ==================== 日志配置 ====================
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=logging.INFO
)
# APScheduler 和 httpx 的日志非常冗长，将其级别调整为 WARNING，以保持日志清爽
logging.getLogger('apscheduler').setLevel(logging.WARNING)
logging.getLogger('httpx').setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


# ==================== 核心函数 ====================

def register_jobs(application: Application, settings: Settings):
    """注册群组同步和分析事件清理两个计划任务。间隔或保留期为 0 时不注册。"""
    job_queue = application.job_queue
    if job_queue is None:
        logger.warning("JobQueue 不可用 (未安装 python-telegram-bot[job-queue])，计划任务不会运行。")
        return

    if settings.group_sync_interval > 0:
        job_queue.run_repeating(
            sync_groups_job,
            interval=settings.group_sync_interval,
            first=settings.group_sync_interval,
            name='sync_groups',
            job_kwargs={'misfire_grace_time': 600}
        )
        logger.info(f"已添加每 {settings.group_sync_interval} 秒运行一次的 'sync_groups' 计划任务。")

    if settings.analytics_retention_days > 0:
        job_queue.run_daily(
            cleanup_old_events_job,
            time=time(hour=4, minute=0, tzinfo=timezone.utc),
            name='cleanup_old_events',
            job_kwargs={'misfire_grace_time': 3600}
        )
        logger.info("已添加每日运行的 'cleanup_old_events' 计划任务。")


def build_application(settings: Settings, session_factory: sessionmaker,
                      storage: Optional[ObjectStorage] = None) -> Application:
    """
    构建 Webhook 模式的 Telegram Application（不使用 Updater 轮询）。
    更新由 Web 服务的 Webhook 接口推入 `application.process_update`。
    """
    application = Application.builder().token(settings.bot_token).updater(None).build()

    # --- 全局应用上下文 (Bot Data) ---
    # 处理器和计划任务通过 context.bot_data 获取共享依赖
    application.bot_data['session_factory'] = session_factory
    application.bot_data['storage'] = storage
    application.bot_data['email_domain'] = settings.email_domain
    application.bot_data['analytics_retention_days'] = settings.analytics_retention_days

    # --- 注册事件处理器 ---
    # 命令优先匹配，因此命令消息不会被当作普通消息收录
    application.add_handler(CommandHandler("start", start_handler))
    application.add_handler(CommandHandler("help", help_handler))
    application.add_handler(CommandHandler("status", status_handler))
    application.add_handler(CommandHandler("info", info_handler))
    application.add_handler(TypeHandler(Update, route_update))
    application.add_error_handler(error_handler)

    register_jobs(application, settings)
    return application


async def register_webhook(application: Application, settings: Settings) -> bool:
    """向 Telegram 注册 Webhook 地址和密钥。失败只记录日志，服务照常启动。"""
    try:
        await application.bot.set_webhook(
            url=settings.webhook_url,
            secret_token=settings.webhook_secret,
            allowed_updates=Update.ALL_TYPES,
        )
    except TelegramError as e:
        logger.error(f"注册 Webhook {settings.webhook_url} 失败: {e}", exc_info=True)
        return False
    logger.info(f"已向 Telegram 注册 Webhook: {settings.webhook_url}")
    return True


def make_lifespan(application: Optional[Application], settings: Optional[Settings] = None):
    """
    Web 服务启动时初始化并启动机器人（含 JobQueue），关闭时按相反顺序停止。
    配置了 WEBHOOK_URL 时，启动后向 Telegram 注册 Webhook。
    """
    @asynccontextmanager
    async def lifespan(app):
        if application is None:
            yield
            return
        # `async with application` 负责 initialize() 和 shutdown()
        async with application:
            await application.start()
            if settings is not None and settings.webhook_url:
                await register_webhook(application, settings)
            logger.info(f"机器人 @{application.bot.username} 已启动，等待 Webhook 推送更新...")
            try:
                yield
            finally:
                logger.info("正在停止机器人应用...")
                await application.stop()
    return lifespan


async def main():
    """
    应用程序的主入口函数。
    负责初始化所有组件（配置、数据库、存储、机器人应用、Web 服务）并开始运行。
    """
    # --- 1. 加载配置 ---
    settings = load_settings()
    logging.getLogger().setLevel(getattr(logging, settings.log_level, logging.INFO))

    if not settings.database_url:
        logger.critical("关键错误: 未在环境变量中找到 DATABASE_URL，服务无法启动。")
        return

    # --- 2. 初始化数据库 ---
    engine = init_database(settings.database_url)
    session_factory = get_session_factory(engine)

    # --- 3. 持久化存储 (可选) ---
    storage = ObjectStorage.from_settings(settings)
    if storage is None:
        logger.info("未配置对象存储，附件只保存 Telegram 文件 ID。")

    # --- 4. 初始化 Telegram Bot Application (可选) ---
    application = None
    if settings.bot_configured:
        logger.info("正在构建机器人应用...")
        application = build_application(settings, session_factory, storage)

    # --- 5. 启动 Web 服务 ---
    app = create_app(settings, session_factory, application=application, storage=storage,
                     lifespan=make_lifespan(application, settings))
    config = uvicorn.Config(app, host=settings.host, port=settings.port,
                            log_level=settings.log_level.lower())
    server = uvicorn.Server(config)
    logger.info(f"Web 服务正在监听 {settings.host}:{settings.port} ...")
    try:
        await server.serve()
    except (KeyboardInterrupt, SystemExit):
        logger.info("接收到关闭信号 (如 Ctrl+C)，程序正在优雅地关闭...")
    finally:
        logger.info("清理完成，程序即将退出。")


if __name__ == '__main__':
    asyncio.run(main())
