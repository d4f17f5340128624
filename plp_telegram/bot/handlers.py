# plp_telegram/bot/handlers.py (事件处理器模块)

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import sessionmaker
from telegram import Bot, ChatMemberUpdated, Message as TelegramMessage, Update
from telegram.ext import ContextTypes

from plp_telegram.core import analytics
from plp_telegram.core.attachments import extract_attachment
from plp_telegram.core.registry import (
    activate_membership,
    deactivate_group,
    deactivate_membership,
    ensure_group,
    ensure_user,
    fetch_member_count,
    find_group,
    find_user,
    refresh_member_count,
    register_bot_added,
)
from plp_telegram.core.storage import ObjectStorage
from plp_telegram.core.updates import (
    BotMembershipChange,
    UpdateKind,
    bot_membership_change,
    classify_message,
    classify_update,
)
from plp_telegram.database import Message
from plp_telegram.utils import session_scope

logger = logging.getLogger(__name__)

DEFAULT_EMAIL_DOMAIN = "plp.local"


# =================== 辅助函数 ===================

def _is_ingestible(message: Optional[TelegramMessage]) -> bool:
    """只收录来自普通群组和超级群组的消息。"""
    return message is not None and message.chat is not None and message.chat.type != "private"


def _session_factory(context: ContextTypes.DEFAULT_TYPE) -> sessionmaker:
    return context.bot_data['session_factory']


def _storage(context: ContextTypes.DEFAULT_TYPE) -> Optional[ObjectStorage]:
    return context.bot_data.get('storage')


def _email_domain(context: ContextTypes.DEFAULT_TYPE) -> str:
    return context.bot_data.get('email_domain', DEFAULT_EMAIL_DOMAIN)


# =================== 核心事件处理 ===================
# 这些函数显式接收 bot 和 session 工厂，不依赖任何全局状态。
# 每个函数在顶层捕获所有异常：Webhook 调用方必须始终收到成功确认，
# 否则 Telegram 会反复重试同一个更新。

async def handle_message(message: TelegramMessage, bot: Bot, session_factory: sessionmaker,
                         storage: Optional[ObjectStorage] = None,
                         email_domain: str = DEFAULT_EMAIL_DOMAIN) -> None:
    """
    收录一条群组消息：登记群组和用户、保存消息、提取附件、
    更新成员关系并记录分析事件。
    """
    if not _is_ingestible(message):
        return

    chat_id = message.chat.id
    try:
        with session_scope(session_factory) as db:
            group = await ensure_group(db, bot, message.chat)
            sender = message.from_user
            user = ensure_user(db, sender, email_domain) if sender else None

            classified = classify_message(message)
            stored_message = Message(
                telegram_message_id=message.message_id,
                group_id=group.id,
                user_id=user.id if user else None,
                telegram_user_id=sender.id if sender else None,
                telegram_username=sender.username if sender else None,
                text=classified.text,
                message_type=classified.message_type.value,
                telegram_date=message.date or datetime.now(timezone.utc),
            )
            db.add(stored_message)
            # 先提交消息，附件失败不能回滚它
            db.commit()

            if classified.has_media:
                try:
                    await extract_attachment(db, bot, storage, stored_message.id,
                                             classified.media, classified.message_type)
                except Exception as e:
                    db.rollback()
                    logger.error(f"为消息 {message.message_id} (群组 {chat_id}) 提取附件失败: {e}", exc_info=True)

            # 收到消息意味着用户仍在群组中
            if user is not None:
                activate_membership(db, group, user)

            analytics.record_event(db, group.id, analytics.MESSAGE_RECEIVED, {
                "message_type": classified.message_type.value,
                "user_id": user.id if user else None,
                "has_attachment": classified.has_media,
            })
            logger.debug(f"[{chat_id}] 已收录 {classified.message_type.value} 消息 {message.message_id}。")
    except Exception as e:
        logger.critical(f"处理群组 {chat_id} 的消息 {message.message_id} 时发生严重错误: {e}", exc_info=True)


async def handle_edited_message(message: TelegramMessage, session_factory: sessionmaker) -> None:
    """更新已收录消息的文本并打上编辑标记；未知的群组或消息直接忽略。"""
    if not _is_ingestible(message):
        return

    chat_id = message.chat.id
    try:
        with session_scope(session_factory) as db:
            group = find_group(db, chat_id)
            if group is None:
                return
            stored_message = db.query(Message).filter_by(
                group_id=group.id, telegram_message_id=message.message_id
            ).first()
            if stored_message is None:
                logger.debug(f"[{chat_id}] 被编辑的消息 {message.message_id} 未被收录，已忽略。")
                return

            stored_message.text = classify_message(message).text
            stored_message.is_edited = True
            stored_message.edited_at = message.edit_date or datetime.now(timezone.utc)
    except Exception as e:
        logger.critical(f"处理群组 {chat_id} 的消息编辑 {message.message_id} 时发生严重错误: {e}", exc_info=True)


async def handle_members_joined(message: TelegramMessage, bot: Bot, session_factory: sessionmaker,
                                email_domain: str = DEFAULT_EMAIL_DOMAIN) -> None:
    """为每个新成员登记用户、激活成员关系并记录事件，最后刷新群组成员数。"""
    if not _is_ingestible(message) or not message.new_chat_members:
        return

    chat_id = message.chat.id
    try:
        with session_scope(session_factory) as db:
            group = await ensure_group(db, bot, message.chat)
            for member in message.new_chat_members:
                # 机器人自身的加入由 my_chat_member 更新处理
                if member.id == bot.id:
                    continue
                user = ensure_user(db, member, email_domain)
                activate_membership(db, group, user)
                analytics.record_event(db, group.id, analytics.MEMBER_JOINED, {"user_id": user.id})
                logger.info(f"用户 {member.id} 加入了群组 {chat_id}。")

            await refresh_member_count(db, bot, group)
    except Exception as e:
        logger.critical(f"处理群组 {chat_id} 的成员加入事件时发生严重错误: {e}", exc_info=True)


async def handle_member_left(message: TelegramMessage, bot: Bot, session_factory: sessionmaker) -> None:
    """将离开者的成员关系标记为不活跃。群组或用户未知时静默忽略。"""
    if not _is_ingestible(message) or message.left_chat_member is None:
        return

    chat_id = message.chat.id
    departing = message.left_chat_member
    if departing.id == bot.id:
        return

    try:
        with session_scope(session_factory) as db:
            group = find_group(db, chat_id)
            if group is None:
                return
            user = find_user(db, departing.id)
            if user is None:
                logger.debug(f"[{chat_id}] 离开的用户 {departing.id} 从未被记录，已忽略。")
                return

            deactivate_membership(db, group, user)
            analytics.record_event(db, group.id, analytics.MEMBER_LEFT, {"user_id": user.id})
            await refresh_member_count(db, bot, group)
            logger.info(f"用户 {departing.id} 离开了群组 {chat_id}。")
    except Exception as e:
        logger.critical(f"处理群组 {chat_id} 的成员离开事件时发生严重错误: {e}", exc_info=True)


async def handle_bot_membership(member_update: ChatMemberUpdated, bot: Bot, session_factory: sessionmaker) -> None:
    """处理机器人自身被加入或移出群组的状态变化。"""
    change = bot_membership_change(member_update, bot.id)
    if change is None:
        return

    chat = member_update.chat
    try:
        with session_scope(session_factory) as db:
            if change == BotMembershipChange.ADDED:
                register_bot_added(db, chat)
            elif deactivate_group(db, chat.id) is None:
                logger.debug(f"机器人被移出的群组 {chat.id} 从未被记录，已忽略。")
    except Exception as e:
        logger.critical(f"处理群组 {chat.id} 的机器人成员变化 ({change.value}) 时发生严重错误: {e}", exc_info=True)


# =================== 事件处理器包装器 ===================
# 这些包装器从 context 中取出依赖，再调用上面的核心函数。

async def message_handler(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """处理普通消息（文本、媒体及其他）。"""
    await handle_message(update.message, context.bot, _session_factory(context),
                         _storage(context), _email_domain(context))


async def edited_message_handler(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """处理消息编辑事件。"""
    await handle_edited_message(update.edited_message, _session_factory(context))


async def user_join_handler(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """处理用户加入事件。"""
    await handle_members_joined(update.message, context.bot, _session_factory(context), _email_domain(context))


async def user_leave_handler(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """处理用户离开事件。"""
    await handle_member_left(update.message, context.bot, _session_factory(context))


async def my_chat_member_handler(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """处理机器人被加入/移出群组的事件。"""
    await handle_bot_membership(update.my_chat_member, context.bot, _session_factory(context))


_UPDATE_HANDLERS = {
    UpdateKind.MESSAGE: message_handler,
    UpdateKind.EDITED_MESSAGE: edited_message_handler,
    UpdateKind.MEMBERS_JOINED: user_join_handler,
    UpdateKind.MEMBER_LEFT: user_leave_handler,
    UpdateKind.BOT_MEMBERSHIP: my_chat_member_handler,
}


async def route_update(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """所有非命令更新的统一入口：根据更新种类分发到具体的处理器。"""
    kind = classify_update(update)
    handler = _UPDATE_HANDLERS.get(kind)
    if handler is None:
        logger.debug(f"更新 {update.update_id} 的种类为 {kind.value}，无需处理。")
        return
    await handler(update, context)


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE):
    """记录处理器中未被捕获的异常。"""
    update_id = getattr(update, "update_id", None)
    logger.error(f"处理更新 {update_id} 时发生未捕获的异常: {context.error}", exc_info=context.error)


# =================== 命令处理器 ===================

START_TEXT = (
    "Welcome to PLP Telegram Manager Bot!\n\n"
    "Add me to your group to start collecting messages.\n\n"
    "Commands:\n"
    "/help - Show help message\n"
    "/status - Check bot status\n"
    "/info - Show group information"
)

HELP_TEXT = (
    "Available commands:\n\n"
    "/start - Start the bot\n"
    "/help - Show this help message\n"
    "/status - Check if bot is active in this group\n"
    "/info - Show group information and statistics"
)

GROUP_ONLY_TEXT = "This command only works in groups."
STATUS_TEXT = "✅ Bot is active and collecting messages in this group."


async def start_handler(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """处理 /start 命令。"""
    await update.effective_message.reply_text(START_TEXT)


async def help_handler(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """处理 /help 命令。"""
    await update.effective_message.reply_text(HELP_TEXT)


async def status_handler(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """处理 /status 命令，仅在群组中可用。"""
    if update.effective_chat.type == "private":
        await update.effective_message.reply_text(GROUP_ONLY_TEXT)
        return
    await update.effective_message.reply_text(STATUS_TEXT)


async def info_handler(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """处理 /info 命令，显示群组的基本信息和实时成员数。"""
    chat = update.effective_chat
    if chat.type == "private":
        await update.effective_message.reply_text(GROUP_ONLY_TEXT)
        return

    member_count = await fetch_member_count(context.bot, chat.id)
    await update.effective_message.reply_text(
        "📊 Group Information:\n\n"
        f"Name: {chat.title or 'N/A'}\n"
        f"ID: {chat.id}\n"
        f"Type: {chat.type}\n"
        f"Members: {member_count}\n"
    )
