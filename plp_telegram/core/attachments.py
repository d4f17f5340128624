# plp_telegram/core/attachments.py (附件提取)

import logging
from typing import Any, Optional, Sequence

from sqlalchemy.orm import Session
from telegram import Bot, PhotoSize

from plp_telegram.core.storage import ObjectStorage, StoredFile, build_object_key, relocate_file
from plp_telegram.core.updates import MessageType
from plp_telegram.database import Attachment
from plp_telegram.utils import make_thumbnail

logger = logging.getLogger(__name__)


def select_largest_photo(sizes: Sequence[PhotoSize]) -> PhotoSize:
    """Telegram 按从小到大的顺序给出照片的各个尺寸，最后一个即最大的。"""
    return sizes[-1]


async def _store_thumbnail(storage: ObjectStorage, stored: StoredFile) -> Optional[str]:
    try:
        thumbnail = make_thumbnail(stored.content)
        key = build_object_key("thumbnails", "image/jpeg", "thumb.jpg")
        return await storage.upload(key, thumbnail.getvalue(), "image/jpeg")
    except Exception as e:
        logger.warning(f"生成或上传缩略图失败，将不设置缩略图: {e}")
        return None


async def extract_attachment(db_session: Session, bot: Bot, storage: Optional[ObjectStorage],
                             message_id: int, media: Any, kind: MessageType | str) -> Attachment:
    """
    为一条已持久化的消息创建附件记录。

    Args:
        db_session: 当前的 SQLAlchemy 会话。
        bot: 用于下载文件的 Bot 客户端。
        storage: 对象存储；为 None 时不转存文件。
        message_id: 已持久化消息的内部 ID。
        media: 消息中的媒体对象；照片为尺寸序列。
        kind: 媒体类型。

    Returns:
        Attachment: 新建的附件记录。转存失败时 storage_url 为 None。
    """
    kind = MessageType(kind)
    if kind == MessageType.PHOTO:
        media = select_largest_photo(media)

    file_name = getattr(media, "file_name", None)
    mime_type = getattr(media, "mime_type", None)
    storage_url = None
    thumbnail_url = None

    if storage is not None:
        try:
            stored = await relocate_file(bot, storage, media.file_id, kind.value, file_name, mime_type)
        except Exception as e:
            # 文件仍可以之后通过 Telegram 文件 API 惰性获取
            logger.error(f"转存 {kind.value} 文件 {media.file_id} 失败，附件将不带存储地址: {e}", exc_info=True)
        else:
            storage_url = stored.url
            if kind == MessageType.PHOTO:
                thumbnail_url = await _store_thumbnail(storage, stored)

    file_size = getattr(media, "file_size", None)
    attachment = Attachment(
        message_id=message_id,
        telegram_file_id=media.file_id,
        file_type=kind.value,
        file_name=file_name,
        width=getattr(media, "width", None),
        height=getattr(media, "height", None),
        duration=_seconds(getattr(media, "duration", None)),
        file_size=int(file_size) if file_size is not None else None,
        mime_type=mime_type,
        storage_url=storage_url,
        thumbnail_url=thumbnail_url,
    )
    db_session.add(attachment)
    db_session.commit()
    logger.debug(f"已为消息 {message_id} 保存 {kind.value} 附件。")
    return attachment


def _seconds(duration: Any) -> Optional[int]:
    # 新版 python-telegram-bot 可能将时长表示为 timedelta
    if duration is None:
        return None
    if hasattr(duration, "total_seconds"):
        return int(duration.total_seconds())
    return int(duration)
