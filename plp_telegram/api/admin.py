# plp_telegram/api/admin.py (管理后台 REST 接口)

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy import func, or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, selectinload
from telegram.error import TelegramError

from plp_telegram.api.dependencies import ApiError, get_bot, get_db, get_storage, require_admin
from plp_telegram.api.serializers import (
    attachment_to_dict,
    group_to_dict,
    message_to_dict,
    pagination,
)
from plp_telegram.bot.tasks import cleanup_inactive_groups, sync_groups
from plp_telegram.core.storage import relocate_file
from plp_telegram.database import Attachment, Group, GroupMembership, Message

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin"], dependencies=[Depends(require_admin)])
health_router = APIRouter(tags=["health"])


def _parse_group_filter(group_id: Optional[str]) -> Optional[int]:
    """群组过滤参数: 省略或 "all" 表示不过滤，否则必须是内部群组 ID。"""
    if group_id is None or group_id == "" or group_id == "all":
        return None
    try:
        return int(group_id)
    except ValueError:
        raise ApiError(400, "Invalid group_id", f"'{group_id}' is not a valid group id") from None


# =================== 群组 ===================

@router.get("/groups")
def list_groups(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    include_inactive: bool = False,
    db: Session = Depends(get_db),
):
    """列出群组及其消息数和活跃成员数，最新登记的排在前面。"""
    message_count = (
        select(func.count(Message.id))
        .where(Message.group_id == Group.id, Message.is_deleted.is_(False))
        .scalar_subquery()
    )
    active_member_count = (
        select(func.count(GroupMembership.id))
        .where(GroupMembership.group_id == Group.id, GroupMembership.is_active.is_(True))
        .scalar_subquery()
    )

    query = db.query(Group)
    if not include_inactive:
        query = query.filter(Group.is_active.is_(True))
    total = query.count()

    rows = (
        query.add_columns(message_count, active_member_count)
        .order_by(Group.created_at.desc(), Group.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "groups": [group_to_dict(group, messages, members) for group, messages, members in rows],
        "pagination": pagination(page, limit, total),
    }


@router.post("/groups/sync")
async def sync_all_groups(request: Request):
    """从 Telegram 重新同步所有已知群组。"""
    bot = get_bot(request)
    if bot is None:
        raise ApiError(503, "Telegram bot not configured")

    try:
        result = await sync_groups(bot, request.app.state.session_factory)
    except SQLAlchemyError as e:
        logger.error(f"同步群组时数据库出错: {e}", exc_info=True)
        raise ApiError(500, "Failed to sync groups", str(e))

    message = f"Synced {result['synced_count']} groups successfully"
    if result["error_count"]:
        message += f", {result['error_count']} errors"
    return {
        "success": True,
        "synced_count": result["synced_count"],
        "deactivated_count": result["deactivated_count"],
        "error_count": result["error_count"],
        "errors": result["errors"],
        "message": message,
    }


@router.delete("/groups/cleanup")
def cleanup_groups(request: Request):
    """删除所有不活跃群组及其全部数据。"""
    try:
        deleted = cleanup_inactive_groups(request.app.state.session_factory)
    except SQLAlchemyError as e:
        logger.error(f"清理不活跃群组时数据库出错: {e}", exc_info=True)
        raise ApiError(500, "Failed to cleanup inactive groups", str(e))

    if not deleted:
        return {
            "success": True,
            "deleted_count": 0,
            "deleted_groups": [],
            "message": "No inactive groups found",
        }

    count = len(deleted)
    return {
        "success": True,
        "deleted_count": count,
        "deleted_groups": deleted,
        "message": f"Successfully deleted {count} inactive group{'s' if count != 1 else ''}",
    }


# =================== 消息与媒体 ===================

@router.get("/messages")
def list_messages(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = None,
    group_id: Optional[str] = None,
    message_type: Optional[str] = Query(None, alias="type"),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    """分页列出未删除的消息，按 Telegram 消息时间倒序。"""
    query = db.query(Message).filter(Message.is_deleted.is_(False))

    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(Message.text.ilike(pattern), Message.telegram_username.ilike(pattern)))
    group_filter = _parse_group_filter(group_id)
    if group_filter is not None:
        query = query.filter(Message.group_id == group_filter)
    if message_type and message_type != "all":
        query = query.filter(Message.message_type == message_type)
    if start_date is not None:
        query = query.filter(Message.telegram_date >= start_date)
    if end_date is not None:
        query = query.filter(Message.telegram_date <= end_date)

    total = query.count()
    messages = (
        query.options(
            joinedload(Message.group),
            joinedload(Message.user),
            selectinload(Message.attachments),
        )
        .order_by(Message.telegram_date.desc(), Message.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "messages": [message_to_dict(m) for m in messages],
        "pagination": pagination(page, limit, total),
    }


@router.get("/media")
def list_media(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    search: Optional[str] = None,
    group_id: Optional[str] = None,
    file_type: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """分页列出附件及其所属消息和群组，最新的排在前面。"""
    query = (
        db.query(Attachment)
        .join(Message, Attachment.message_id == Message.id)
        .filter(Message.is_deleted.is_(False))
    )

    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(Attachment.file_name.ilike(pattern), Message.text.ilike(pattern)))
    group_filter = _parse_group_filter(group_id)
    if group_filter is not None:
        query = query.filter(Message.group_id == group_filter)
    if file_type and file_type != "all":
        query = query.filter(Attachment.file_type == file_type)

    total = query.count()
    attachments = (
        query.options(
            joinedload(Attachment.message).joinedload(Message.group),
            joinedload(Attachment.message).joinedload(Message.user),
        )
        .order_by(Attachment.created_at.desc(), Attachment.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    items = []
    for attachment in attachments:
        item = attachment_to_dict(attachment)
        item["message"] = message_to_dict(attachment.message, include_attachments=False)
        items.append(item)
    return {
        "attachments": items,
        "pagination": pagination(page, limit, total),
    }


# =================== 文件 ===================

@router.get("/files/{attachment_id}")
async def get_file(attachment_id: int, request: Request, db: Session = Depends(get_db)):
    """
    重定向到附件的可下载地址。

    优先使用已转存的 storage_url；否则向 Telegram 获取临时下载地址。
    Telegram 获取失败且配置了对象存储时，会现场转存并回填 storage_url。
    """
    attachment = db.get(Attachment, attachment_id)
    if attachment is None:
        raise ApiError(404, "File not found")

    if attachment.storage_url:
        return RedirectResponse(attachment.storage_url)

    bot = get_bot(request)
    if bot is None:
        raise ApiError(503, "Telegram bot not configured")

    try:
        tg_file = await bot.get_file(attachment.telegram_file_id)
        return RedirectResponse(tg_file.file_path)
    except TelegramError as e:
        logger.warning(f"从 Telegram 获取附件 {attachment_id} 的下载地址失败: {e}")

    storage = get_storage(request)
    if storage is None:
        raise ApiError(500, "Failed to retrieve file", "File is not available from Telegram")

    try:
        stored = await relocate_file(bot, storage, attachment.telegram_file_id, attachment.file_type,
                                     attachment.file_name, attachment.mime_type)
    except Exception as e:
        logger.error(f"转存附件 {attachment_id} 失败: {e}", exc_info=True)
        raise ApiError(500, "Failed to retrieve file", str(e))

    attachment.storage_url = stored.url
    if attachment.file_size is None:
        attachment.file_size = stored.size
    db.commit()
    logger.info(f"附件 {attachment_id} 已转存并回填 storage_url。")
    return RedirectResponse(stored.url)


# =================== 健康检查 ===================

@health_router.get("/health")
def health_check(db: Session = Depends(get_db)):
    """检查数据库连通性并返回基本计数。"""
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        db.execute(text("SELECT 1"))
        groups = db.query(func.count(Group.id)).scalar()
        messages = db.query(func.count(Message.id)).scalar()
    except SQLAlchemyError as e:
        logger.error(f"健康检查失败，数据库不可用: {e}", exc_info=True)
        return JSONResponse(
            {"status": "unhealthy", "database": "disconnected", "error": str(e), "timestamp": timestamp},
            status_code=500,
        )

    return {
        "status": "healthy",
        "database": "connected",
        "counts": {"groups": groups, "messages": messages},
        "timestamp": timestamp,
    }
