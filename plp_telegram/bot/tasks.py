# plp_telegram/bot/tasks.py

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker
from telegram import Bot
from telegram.ext import ContextTypes
from telegram.error import Forbidden, TelegramError

from plp_telegram.database import AnalyticsEvent, Group, Message
from plp_telegram.utils import session_scope

logger = logging.getLogger(__name__)

# Telegram 在这些情况下返回错误，说明机器人已无法访问该群组
INACCESSIBLE_MARKERS = ("chat not found", "bot was kicked", "bot is not a member")

# 返回给调用方的错误条数上限
MAX_REPORTED_ERRORS = 5


def _is_inaccessible(error: TelegramError) -> bool:
    if isinstance(error, Forbidden):
        return True
    message = str(error).lower()
    return any(marker in message for marker in INACCESSIBLE_MARKERS)


async def sync_groups(bot: Bot, session_factory: sessionmaker) -> dict:
    """
    从 Telegram 重新获取所有已知群组的标题、用户名和成员数。
    机器人已无法访问的群组会被标记为不活跃。

    Returns:
        dict: 包含 synced_count、deactivated_count、error_count 和前几条错误信息。
    """
    logger.info("正在执行群组同步任务...")
    synced_count = 0
    deactivated_count = 0
    errors = []

    with session_scope(session_factory) as db:
        all_groups = db.query(Group).all()
        logger.debug(f"将同步 {len(all_groups)} 个群组。")
        for group in all_groups:
            try:
                chat = await bot.get_chat(chat_id=group.telegram_id)
                if chat.type not in ("group", "supergroup"):
                    continue
                member_count = await bot.get_chat_member_count(chat_id=group.telegram_id)

                group.title = chat.title or group.title
                group.username = chat.username
                group.member_count = member_count
                group.is_active = True
                synced_count += 1
            except TelegramError as e:
                if _is_inaccessible(e):
                    logger.warning(f"机器人已无法访问群组 {group.telegram_id}，将其标记为不活跃: {e}")
                    group.is_active = False
                    deactivated_count += 1
                else:
                    logger.warning(f"同步群组 {group.telegram_id} 时失败: {e}")
                    errors.append(f"Failed to sync {group.title}: {e}")

        logger.info(f"群组同步任务完成。成功同步了 {synced_count}/{len(all_groups)} 个群组，"
                    f"停用 {deactivated_count} 个，失败 {len(errors)} 个。")

    return {
        "synced_count": synced_count,
        "deactivated_count": deactivated_count,
        "error_count": len(errors),
        "errors": errors[:MAX_REPORTED_ERRORS],
    }


def cleanup_inactive_groups(session_factory: sessionmaker) -> list[dict]:
    """
    删除所有不活跃的群组。
    ORM 级联会一并删除它们的消息、附件、成员关系和分析事件。

    Returns:
        list[dict]: 每个被删除群组的标题和消息数。
    """
    with session_scope(session_factory) as db:
        message_counts = dict(
            db.query(Message.group_id, func.count(Message.id))
            .join(Group, Group.id == Message.group_id)
            .filter(Group.is_active.is_(False))
            .group_by(Message.group_id)
            .all()
        )
        inactive_groups = db.query(Group).filter(Group.is_active.is_(False)).all()
        deleted = [
            {"title": group.title, "message_count": message_counts.get(group.id, 0)}
            for group in inactive_groups
        ]
        for group in inactive_groups:
            db.delete(group)

    logger.info(f"已删除 {len(deleted)} 个不活跃群组及其全部数据。")
    return deleted


def cleanup_old_events(session_factory: sessionmaker, retention_days: int) -> int:
    """删除早于保留期限的分析事件，返回删除的行数。"""
    cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
    with session_scope(session_factory) as db:
        deleted_count = db.query(AnalyticsEvent).filter(
            AnalyticsEvent.created_at < cutoff
        ).delete(synchronize_session=False)
    logger.info(f"成功删除了 {deleted_count} 条超过{retention_days}天的旧分析事件。")
    return deleted_count


# =================== 计划任务回调 ===================
# 由 JobQueue 调用，依赖从 context.bot_data 中获取。

async def sync_groups_job(context: ContextTypes.DEFAULT_TYPE):
    """每小时运行的群组同步任务。"""
    try:
        await sync_groups(context.bot, context.bot_data['session_factory'])
    except Exception as e:
        logger.error(f"执行群组同步任务时发生严重错误: {e}", exc_info=True)


async def cleanup_old_events_job(context: ContextTypes.DEFAULT_TYPE):
    """每日运行的分析事件清理任务。"""
    retention_days = context.bot_data.get('analytics_retention_days', 90)
    try:
        cleanup_old_events(context.bot_data['session_factory'], retention_days)
    except Exception as e:
        logger.error(f"执行旧分析事件清理任务时出错: {e}", exc_info=True)
