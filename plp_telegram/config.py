# plp_telegram/config.py

import logging
import os
import re
from dataclasses import dataclass
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# BotFather 颁发的 token 格式: "<数字 bot id>:<密钥>"
BOT_TOKEN_PATTERN = re.compile(r"^\d+:[\w-]+$")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"环境变量 {name} 的值 '{raw}' 不是整数，将使用默认值 {default}。")
        return default


@dataclass
class Settings:
    """应用程序的运行配置，全部来自环境变量。"""
    database_url: str | None = None
    bot_token: str | None = None
    webhook_secret: str | None = None
    # 设置后，启动时向 Telegram 注册该 Webhook 地址
    webhook_url: str | None = None
    admin_api_token: str | None = None
    email_domain: str = "plp.local"

    # S3 / MinIO 持久化存储
    storage_endpoint_url: str | None = None
    storage_access_key: str | None = None
    storage_secret_key: str | None = None
    storage_bucket: str = "plp-telegram"
    storage_region: str = "us-east-1"
    storage_public_url: str | None = None

    # 计划任务
    group_sync_interval: int = 3600
    analytics_retention_days: int = 90

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @property
    def bot_configured(self) -> bool:
        return bool(self.bot_token) and bool(BOT_TOKEN_PATTERN.match(self.bot_token))

    @property
    def storage_configured(self) -> bool:
        """只有同时提供了访问密钥和私密密钥时，才会启用文件转存。"""
        return bool(self.storage_access_key) and bool(self.storage_secret_key)


def load_settings() -> Settings:
    """
    从 .env 文件和进程环境变量中加载配置。
    """
    # 从 .env 文件加载环境变量，便于本地开发
    load_dotenv()

    settings = Settings(
        database_url=os.getenv("DATABASE_URL"),
        bot_token=os.getenv("TELEGRAM_BOT_TOKEN"),
        webhook_secret=os.getenv("TELEGRAM_WEBHOOK_SECRET") or None,
        webhook_url=os.getenv("WEBHOOK_URL") or None,
        admin_api_token=os.getenv("ADMIN_API_TOKEN") or None,
        email_domain=os.getenv("PLACEHOLDER_EMAIL_DOMAIN", "plp.local"),
        storage_endpoint_url=os.getenv("STORAGE_ENDPOINT_URL") or None,
        storage_access_key=os.getenv("STORAGE_ACCESS_KEY") or None,
        storage_secret_key=os.getenv("STORAGE_SECRET_KEY") or None,
        storage_bucket=os.getenv("STORAGE_BUCKET", "plp-telegram"),
        storage_region=os.getenv("STORAGE_REGION", "us-east-1"),
        storage_public_url=os.getenv("STORAGE_PUBLIC_URL") or None,
        group_sync_interval=_int_env("GROUP_SYNC_INTERVAL", 3600),
        analytics_retention_days=_int_env("ANALYTICS_RETENTION_DAYS", 90),
        host=os.getenv("HOST", "0.0.0.0"),
        port=_int_env("PORT", 8000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )

    if settings.bot_token and not settings.bot_configured:
        logger.error("TELEGRAM_BOT_TOKEN 格式无效，机器人将被视为未配置。")
    if settings.webhook_secret and len(settings.webhook_secret) < 32:
        logger.warning("TELEGRAM_WEBHOOK_SECRET 少于 32 个字符，建议使用更长的密钥。")
    return settings
