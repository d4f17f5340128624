# tests/helpers.py

from datetime import datetime, timezone

from telegram import (
    Chat,
    ChatMemberBanned,
    ChatMemberLeft,
    ChatMemberMember,
    ChatMemberUpdated,
    Message,
    PhotoSize,
    Update,
    User,
)

BOT_ID = 999000
GROUP_CHAT_ID = -1001234567890
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


# =================== 真实 Telegram 对象构造器 ===================
# 处理器的输入使用真实的 python-telegram-bot 对象，而不是 MagicMock。

def make_user(user_id=123, first_name="Test", last_name="User", username="testuser", is_bot=False):
    return User(id=user_id, first_name=first_name, is_bot=is_bot, last_name=last_name, username=username)


def make_chat(chat_id=GROUP_CHAT_ID, chat_type="supergroup", title="Test Group", username=None):
    if chat_type == "private":
        return Chat(id=chat_id, type=chat_type, first_name="Test")
    return Chat(id=chat_id, type=chat_type, title=title, username=username)


def make_message(message_id=1, chat=None, from_user=None, **kwargs):
    return Message(
        message_id=message_id,
        date=kwargs.pop("date", NOW),
        chat=chat or make_chat(),
        from_user=from_user,
        **kwargs,
    )


def make_photo_sizes(prefix="photo"):
    """Telegram 按从小到大的顺序给出照片尺寸。"""
    return (
        PhotoSize(file_id=f"{prefix}_small", file_unique_id=f"{prefix}_u1", width=90, height=60, file_size=1000),
        PhotoSize(file_id=f"{prefix}_medium", file_unique_id=f"{prefix}_u2", width=320, height=240, file_size=8000),
        PhotoSize(file_id=f"{prefix}_large", file_unique_id=f"{prefix}_u3", width=1280, height=960, file_size=90000),
    )


def make_update(update_id=1, **kwargs):
    return Update(update_id=update_id, **kwargs)


def make_bot_member_update(status, chat=None, user_id=BOT_ID):
    """构造一个 my_chat_member 更新的 ChatMemberUpdated，status 为 member/left/kicked。"""
    bot_user = make_user(user_id=user_id, first_name="PLP Bot", last_name=None, username="plp_test_bot", is_bot=True)
    new_member = {
        "member": lambda: ChatMemberMember(user=bot_user),
        "left": lambda: ChatMemberLeft(user=bot_user),
        "kicked": lambda: ChatMemberBanned(user=bot_user, until_date=NOW),
    }[status]()
    old_member = ChatMemberLeft(user=bot_user) if status == "member" else ChatMemberMember(user=bot_user)
    return ChatMemberUpdated(
        chat=chat or make_chat(),
        from_user=make_user(user_id=1, username="admin"),
        date=NOW,
        old_chat_member=old_member,
        new_chat_member=new_member,
    )
