# plp_telegram/core/registry.py (群组/用户注册表)

import logging
from datetime import datetime, timezone
from typing import Callable, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from telegram import Bot, Chat, User as TelegramUser
from telegram.error import TelegramError

from plp_telegram.database import Group, User, GroupMembership

logger = logging.getLogger(__name__)

T = TypeVar("T")

UNKNOWN_GROUP_TITLE = "Unknown Group"


# =================== 辅助函数 ===================

def _insert_or_fetch(db_session: Session, instance: T, refetch: Callable[[], T | None]) -> T:
    """
    插入一个新实体并立即提交。
    如果并发请求已经创建了同一个实体（唯一约束冲突），则回滚并重新查询已存在的那一行。
    """
    db_session.add(instance)
    try:
        db_session.commit()
    except IntegrityError:
        db_session.rollback()
        existing = refetch()
        if existing is None:
            # 冲突并非来自并发创建，交给上层处理
            raise
        logger.info(f"并发创建冲突，已改用已存在的记录: {existing!r}")
        return existing
    return instance


def _find_group(db_session: Session, telegram_chat_id: int) -> Group | None:
    return db_session.query(Group).filter_by(telegram_id=telegram_chat_id).first()


def _find_user(db_session: Session, telegram_user_id: int) -> User | None:
    return db_session.query(User).filter_by(telegram_id=telegram_user_id).first()


def _find_membership(db_session: Session, group_id: int, user_id: int) -> GroupMembership | None:
    return db_session.query(GroupMembership).filter_by(group_id=group_id, user_id=user_id).first()


def placeholder_email(telegram_user_id: int, domain: str) -> str:
    """由 Telegram 用户 ID 推导出的占位邮箱；ID 唯一，因此地址也唯一。"""
    return f"telegram_{telegram_user_id}@{domain}"


def display_name(tg_user: TelegramUser) -> str:
    return f"{tg_user.first_name or ''} {tg_user.last_name or ''}".strip()


# =================== 群组 ===================

async def fetch_member_count(bot: Bot, chat_id: int, default: int = 0) -> int:
    """获取群组的实时成员数，失败时返回 `default`。"""
    try:
        return await bot.get_chat_member_count(chat_id=chat_id)
    except TelegramError as e:
        logger.warning(f"获取群组 {chat_id} 的成员数失败，将使用 {default}: {e}")
        return default


def find_group(db_session: Session, telegram_chat_id: int) -> Group | None:
    return _find_group(db_session, telegram_chat_id)


async def ensure_group(db_session: Session, bot: Bot, chat: Chat) -> Group:
    """
    按 Telegram chat ID 获取群组，不存在时创建。

    已存在的群组原样返回，标题和用户名只在同步和机器人加入事件中刷新。
    新建群组时会调用一次成员数接口。
    """
    group = _find_group(db_session, chat.id)
    if group:
        return group

    member_count = await fetch_member_count(bot, chat.id)
    group = Group(
        telegram_id=chat.id,
        title=chat.title or UNKNOWN_GROUP_TITLE,
        username=chat.username,
        chat_type=str(chat.type),
        member_count=member_count,
        is_active=True,
    )
    group = _insert_or_fetch(db_session, group, lambda: _find_group(db_session, chat.id))
    logger.info(f"已登记群组 {chat.id} ('{group.title}')。")
    return group


async def refresh_member_count(db_session: Session, bot: Bot, group: Group) -> int:
    """重新获取群组成员数；接口失败时保留原值。"""
    group.member_count = await fetch_member_count(bot, group.telegram_id, default=group.member_count)
    db_session.commit()
    return group.member_count


def register_bot_added(db_session: Session, chat: Chat) -> Group:
    """
    机器人被加入群组：不存在时以成员数 0 创建活跃群组，
    已存在时刷新标题/用户名并重新激活。重复收到同一事件时结果一致。
    """
    now = datetime.now(timezone.utc)
    group = _find_group(db_session, chat.id)
    if group is None:
        group = Group(
            telegram_id=chat.id,
            title=chat.title or UNKNOWN_GROUP_TITLE,
            username=chat.username,
            chat_type=str(chat.type),
            member_count=0,
            is_active=True,
            bot_added_at=now,
        )
        group = _insert_or_fetch(db_session, group, lambda: _find_group(db_session, chat.id))

    group.title = chat.title or UNKNOWN_GROUP_TITLE
    group.username = chat.username
    group.is_active = True
    group.bot_added_at = now
    db_session.commit()
    logger.info(f"机器人已加入群组: {group.title} ({chat.id})")
    return group


def deactivate_group(db_session: Session, telegram_chat_id: int) -> Group | None:
    """将已知群组标记为不活跃；未知群组返回 None。"""
    group = _find_group(db_session, telegram_chat_id)
    if group is None:
        return None
    group.is_active = False
    db_session.commit()
    logger.info(f"群组 {telegram_chat_id} ('{group.title}') 已被标记为不活跃。")
    return group


# =================== 用户 ===================

def find_user(db_session: Session, telegram_user_id: int) -> User | None:
    return _find_user(db_session, telegram_user_id)


def ensure_user(db_session: Session, tg_user: TelegramUser, email_domain: str) -> User:
    """按 Telegram 用户 ID 获取用户，不存在时创建。"""
    user = _find_user(db_session, tg_user.id)
    if user:
        return user

    user = User(
        telegram_id=tg_user.id,
        telegram_username=tg_user.username,
        name=display_name(tg_user),
        email=placeholder_email(tg_user.id, email_domain),
    )
    user = _insert_or_fetch(db_session, user, lambda: _find_user(db_session, tg_user.id))
    logger.info(f"数据库中未找到用户 {tg_user.id}，已自动创建。")
    return user


# =================== 成员关系 ===================

def activate_membership(db_session: Session, group: Group, user: User) -> GroupMembership:
    """将 (group, user) 的成员关系置为活跃，重新加入时清除 left_at。"""
    membership = _find_membership(db_session, group.id, user.id)
    if membership is None:
        membership = GroupMembership(
            group_id=group.id,
            user_id=user.id,
            telegram_user_id=user.telegram_id,
            is_active=True,
        )
        membership = _insert_or_fetch(
            db_session, membership, lambda: _find_membership(db_session, group.id, user.id)
        )
        if membership.is_active and membership.left_at is None:
            return membership

    membership.is_active = True
    membership.left_at = None
    db_session.commit()
    return membership


def deactivate_membership(db_session: Session, group: Group, user: User) -> GroupMembership:
    """将成员关系标记为已离开。没有记录时创建一条不活跃的记录。"""
    left_at = datetime.now(timezone.utc)
    membership = _find_membership(db_session, group.id, user.id)
    if membership is None:
        membership = GroupMembership(
            group_id=group.id,
            user_id=user.id,
            telegram_user_id=user.telegram_id,
            is_active=False,
            left_at=left_at,
        )
        membership = _insert_or_fetch(
            db_session, membership, lambda: _find_membership(db_session, group.id, user.id)
        )

    membership.is_active = False
    membership.left_at = left_at
    db_session.commit()
    return membership
