# plp_telegram/api/serializers.py

from datetime import datetime
from typing import Optional

from plp_telegram.database import Attachment, Group, Message, User


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def group_to_dict(group: Group, message_count: int = None, active_member_count: int = None) -> dict:
    data = {
        "id": group.id,
        "telegram_id": group.telegram_id,
        "title": group.title,
        "username": group.username,
        "chat_type": group.chat_type,
        "member_count": group.member_count,
        "is_active": group.is_active,
        "bot_added_at": _isoformat(group.bot_added_at),
        "created_at": _isoformat(group.created_at),
        "updated_at": _isoformat(group.updated_at),
    }
    if message_count is not None:
        data["message_count"] = message_count
    if active_member_count is not None:
        data["active_member_count"] = active_member_count
    return data


def user_to_dict(user: Optional[User]) -> Optional[dict]:
    if user is None:
        return None
    return {
        "id": user.id,
        "telegram_id": user.telegram_id,
        "telegram_username": user.telegram_username,
        "name": user.name,
    }


def attachment_to_dict(attachment: Attachment) -> dict:
    return {
        "id": attachment.id,
        "message_id": attachment.message_id,
        "file_type": attachment.file_type,
        "file_name": attachment.file_name,
        "width": attachment.width,
        "height": attachment.height,
        "duration": attachment.duration,
        "file_size": attachment.file_size,
        "mime_type": attachment.mime_type,
        "storage_url": attachment.storage_url,
        "thumbnail_url": attachment.thumbnail_url,
        # 未转存的文件通过文件接口惰性获取
        "download_url": attachment.storage_url or f"/api/files/{attachment.id}",
        "created_at": _isoformat(attachment.created_at),
    }


def message_to_dict(message: Message, include_attachments: bool = True) -> dict:
    data = {
        "id": message.id,
        "telegram_message_id": message.telegram_message_id,
        "text": message.text,
        "message_type": message.message_type,
        "telegram_date": _isoformat(message.telegram_date),
        "is_edited": message.is_edited,
        "edited_at": _isoformat(message.edited_at),
        "telegram_user_id": message.telegram_user_id,
        "telegram_username": message.telegram_username,
        "group": {
            "id": message.group.id,
            "title": message.group.title,
            "telegram_id": message.group.telegram_id,
        },
        "user": user_to_dict(message.user),
    }
    if include_attachments:
        data["attachments"] = [attachment_to_dict(a) for a in message.attachments]
    return data


def pagination(page: int, limit: int, total: int) -> dict:
    total_pages = (total + limit - 1) // limit
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": total_pages,
        "has_more": page < total_pages,
    }
