# plp_telegram/core/updates.py (更新校验与分类)

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from telegram import ChatMemberUpdated, Message, Update

logger = logging.getLogger(__name__)

# 只收录普通群组和超级群组中的消息
GROUP_CHAT_TYPES = ("group", "supergroup")


# =================== 结构校验模型 ===================
# 这些模型只用于“可见性”校验：校验失败会被记录，但不会阻止后续处理，
# 因为 python-telegram-bot 的 `Update.de_json` 会进行宽容的解析。

class _TelegramObject(BaseModel):
    # Telegram 会不断增加新字段，未知字段一律放行
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class TelegramUserModel(_TelegramObject):
    id: int
    is_bot: bool
    first_name: str
    last_name: Optional[str] = None
    username: Optional[str] = None
    language_code: Optional[str] = None


class TelegramChatModel(_TelegramObject):
    id: int
    type: Literal["private", "group", "supergroup", "channel"]
    title: Optional[str] = None
    username: Optional[str] = None


class PhotoSizeModel(_TelegramObject):
    file_id: str
    file_unique_id: str
    width: int
    height: int
    file_size: Optional[int] = None


class DocumentModel(_TelegramObject):
    file_id: str
    file_unique_id: str
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None


class VideoModel(_TelegramObject):
    file_id: str
    file_unique_id: str
    width: int
    height: int
    duration: int
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None


class AudioModel(_TelegramObject):
    file_id: str
    file_unique_id: str
    duration: int
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None


class VoiceModel(_TelegramObject):
    file_id: str
    file_unique_id: str
    duration: int
    mime_type: Optional[str] = None
    file_size: Optional[int] = None


class TelegramMessageModel(_TelegramObject):
    message_id: int
    from_user: Optional[TelegramUserModel] = Field(default=None, alias="from")
    chat: TelegramChatModel
    date: int
    edit_date: Optional[int] = None
    text: Optional[str] = None
    caption: Optional[str] = None
    photo: Optional[List[PhotoSizeModel]] = None
    document: Optional[DocumentModel] = None
    video: Optional[VideoModel] = None
    audio: Optional[AudioModel] = None
    voice: Optional[VoiceModel] = None
    new_chat_members: Optional[List[TelegramUserModel]] = None
    left_chat_member: Optional[TelegramUserModel] = None


class ChatMemberModel(_TelegramObject):
    user: TelegramUserModel
    status: str


class ChatMemberUpdatedModel(_TelegramObject):
    chat: TelegramChatModel
    from_user: TelegramUserModel = Field(alias="from")
    date: int
    old_chat_member: ChatMemberModel
    new_chat_member: ChatMemberModel


class TelegramUpdateModel(_TelegramObject):
    update_id: int
    message: Optional[TelegramMessageModel] = None
    edited_message: Optional[TelegramMessageModel] = None
    channel_post: Optional[TelegramMessageModel] = None
    edited_channel_post: Optional[TelegramMessageModel] = None
    my_chat_member: Optional[ChatMemberUpdatedModel] = None


@dataclass
class UpdateValidation:
    """一次校验的结果。校验失败时 `update` 为 None，`errors` 中是可读的错误摘要。"""
    update: Optional[TelegramUpdateModel] = None
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.update is not None and not self.errors


def validate_update(payload: Any) -> UpdateValidation:
    """
    根据结构模型校验一个原始的 Telegram 更新。

    Args:
        payload: 从 Webhook 请求体解析出的 JSON 对象。

    Returns:
        UpdateValidation: 校验成功时包含类型化的更新，失败时包含错误列表。
    """
    try:
        return UpdateValidation(update=TelegramUpdateModel.model_validate(payload))
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        ]
        return UpdateValidation(errors=errors)


# =================== 更新与消息分类 ===================

class UpdateKind(str, Enum):
    """更新的种类标签，处理器根据这个标签进行分发。"""
    MESSAGE = "message"
    EDITED_MESSAGE = "edited_message"
    MEMBERS_JOINED = "members_joined"
    MEMBER_LEFT = "member_left"
    BOT_MEMBERSHIP = "bot_membership"
    IGNORED = "ignored"


class MessageType(str, Enum):
    TEXT = "text"
    PHOTO = "photo"
    VIDEO = "video"
    DOCUMENT = "document"
    AUDIO = "audio"
    VOICE = "voice"
    OTHER = "other"


# 按检查顺序排列的媒体类型
MEDIA_TYPES = (
    MessageType.PHOTO,
    MessageType.VIDEO,
    MessageType.DOCUMENT,
    MessageType.AUDIO,
    MessageType.VOICE,
)


class BotMembershipChange(str, Enum):
    ADDED = "bot_added"
    REMOVED = "bot_removed"


@dataclass
class ClassifiedMessage:
    message_type: MessageType
    text: str
    # photo 为尺寸元组，其余媒体为单个对象；没有媒体时为 None
    media: Any = None

    @property
    def has_media(self) -> bool:
        return self.media is not None


def classify_update(update: Update) -> UpdateKind:
    """确定一个更新属于哪一种处理流程。"""
    if update.my_chat_member is not None:
        return UpdateKind.BOT_MEMBERSHIP
    if update.edited_message is not None:
        return UpdateKind.EDITED_MESSAGE

    message = update.message
    if message is None:
        # 频道消息、回调查询等都不在收录范围内
        return UpdateKind.IGNORED
    if message.new_chat_members:
        return UpdateKind.MEMBERS_JOINED
    if message.left_chat_member is not None:
        return UpdateKind.MEMBER_LEFT
    return UpdateKind.MESSAGE


def classify_message(message: Message) -> ClassifiedMessage:
    """
    判断消息类型并提取文本和媒体。

    - 有 `text` 的消息为 text 类型。
    - 带有媒体字段的消息为对应的媒体类型，文本取 `caption`（没有时为空字符串）。
    - 两者都没有时为 other 类型，文本为空。
    """
    if message.text is not None:
        return ClassifiedMessage(MessageType.TEXT, message.text)

    for media_type in MEDIA_TYPES:
        media = getattr(message, media_type.value, None)
        if media:
            return ClassifiedMessage(media_type, message.caption or '', media)

    return ClassifiedMessage(MessageType.OTHER, '')


def bot_membership_change(member_update: ChatMemberUpdated, bot_id: int) -> Optional[BotMembershipChange]:
    """
    判断一个 `my_chat_member` 更新是否表示机器人被加入或移出了群组。
    与机器人自身无关、或发生在非群组聊天中的更新返回 None。
    """
    if member_update is None or member_update.chat.type not in GROUP_CHAT_TYPES:
        return None

    new_member = member_update.new_chat_member
    if new_member.user.id != bot_id:
        return None

    if new_member.status in ("member", "administrator"):
        return BotMembershipChange.ADDED
    if new_member.status in ("left", "kicked"):
        return BotMembershipChange.REMOVED
    return None
