# plp_telegram/database.py

import logging
from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    String,
    Text,
    BigInteger,
    ForeignKey,
    UniqueConstraint,
    DateTime,
    Boolean,
    JSON,
)
from sqlalchemy.sql import func, true, false
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

# ==================== SQLAlchemy 基类 ====================
# 所有数据库模型共享的声明式基类。
Base = declarative_base()


# ==================== 数据模型定义 ====================

class Group(Base):
    """
    模型类：表示一个被机器人观察到的 Telegram 群组。
    群组只会被停用 (is_active=False)，只有“清理停用群组”操作才会真正删除它。
    """
    __tablename__ = 'groups'

    id = Column(Integer, primary_key=True)

    # Telegram 的 chat ID 全局唯一且不可变，使用 BigInteger 以支持巨大的 ID 范围。
    telegram_id = Column(BigInteger, unique=True, nullable=False, index=True,
                         comment="Telegram 群组的唯一 Chat ID")
    title = Column(String(255), nullable=False, server_default="Unknown Group", comment="群组标题")
    username = Column(String(255), nullable=True, comment="群组的公开用户名 (可选)")
    chat_type = Column(String(20), nullable=True, comment="group / supergroup")
    member_count = Column(Integer, nullable=False, default=0, server_default='0')
    is_active = Column(Boolean, nullable=False, default=True, server_default=true(),
                       comment="机器人是否仍是该群组的成员")

    bot_added_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # 删除群组时，其下所有消息、成员关系和分析事件都会被级联删除。
    messages = relationship("Message", back_populates="group", cascade="all, delete-orphan")
    memberships = relationship("GroupMembership", back_populates="group", cascade="all, delete-orphan")
    analytics_events = relationship("AnalyticsEvent", back_populates="group", cascade="all, delete-orphan")

    def __repr__(self):
        display_name = self.title if self.title is not None else 'N/A'
        return f"<Group(id={self.id}, telegram_id={self.telegram_id}, title='{display_name}')>"


class User(Base):
    """
    模型类：表示一个 Telegram 用户。
    在第一次收到其消息或成员事件时惰性创建。
    """
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True)
    telegram_id = Column(BigInteger, unique=True, nullable=False, index=True,
                         comment="Telegram 用户的唯一 User ID")
    telegram_username = Column(String(255), nullable=True)
    name = Column(String(255), nullable=False)

    # Telegram 不提供邮箱，这里存放由 telegram_id 推导出的占位地址。
    email = Column(String(255), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    memberships = relationship("GroupMembership", back_populates="user", cascade="all, delete-orphan")
    messages = relationship("Message", back_populates="user")

    def __repr__(self):
        return f"<User(id={self.id}, telegram_id={self.telegram_id}, name='{self.name}')>"


class GroupMembership(Base):
    """
    模型类：群组与用户之间的成员关系。
    每个 (group, user) 组合只有一行；重新加入时重新激活，而不是新建。
    """
    __tablename__ = 'group_members'

    __table_args__ = (
        UniqueConstraint('group_id', 'user_id', name='_group_user_membership_uc'),
    )

    id = Column(Integer, primary_key=True)
    group_id = Column(Integer, ForeignKey('groups.id', ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete="CASCADE"), nullable=False, index=True)
    telegram_user_id = Column(BigInteger, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    joined_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    left_at = Column(DateTime(timezone=True), nullable=True)

    group = relationship("Group", back_populates="memberships")
    user = relationship("User", back_populates="memberships")

    def __repr__(self):
        return (f"<GroupMembership(group_id={self.group_id}, user_id={self.user_id}, "
                f"active={self.is_active})>")


class Message(Base):
    """
    模型类：一条被收录的群组消息。
    创建后除编辑标记和软删除标记外不再修改。
    """
    __tablename__ = 'messages'

    id = Column(Integer, primary_key=True)
    telegram_message_id = Column(BigInteger, nullable=False, index=True)
    group_id = Column(Integer, ForeignKey('groups.id', ondelete="CASCADE"), nullable=False, index=True)
    # 用户解析失败（例如匿名发送者）时为 NULL
    user_id = Column(Integer, ForeignKey('users.id', ondelete="SET NULL"), nullable=True, index=True)
    telegram_user_id = Column(BigInteger, nullable=True)
    telegram_username = Column(String(255), nullable=True)

    text = Column(Text, nullable=False, default='', server_default='')
    message_type = Column(String(20), nullable=False, default='text', index=True,
                          comment="text / photo / video / document / audio / voice / other")
    telegram_date = Column(DateTime(timezone=True), nullable=False, index=True,
                           comment="Telegram 原始消息时间")

    is_edited = Column(Boolean, nullable=False, default=False, server_default=false())
    edited_at = Column(DateTime(timezone=True), nullable=True)
    is_deleted = Column(Boolean, nullable=False, default=False, server_default=false())
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    group = relationship("Group", back_populates="messages")
    user = relationship("User", back_populates="messages")
    attachments = relationship("Attachment", back_populates="message", cascade="all, delete-orphan")

    def __repr__(self):
        return (f"<Message(id={self.id}, telegram_message_id={self.telegram_message_id}, "
                f"type='{self.message_type}', group_id={self.group_id})>")


class Attachment(Base):
    """
    模型类：消息附带的媒体文件元数据。
    storage_url 是尽力而为的：转存失败时为 NULL，之后可通过 Telegram 文件 API 惰性获取。
    """
    __tablename__ = 'attachments'

    id = Column(Integer, primary_key=True)
    message_id = Column(Integer, ForeignKey('messages.id', ondelete="CASCADE"), nullable=False, index=True)
    telegram_file_id = Column(String(255), nullable=False)
    file_type = Column(String(20), nullable=False, index=True)
    file_name = Column(String(255), nullable=True)

    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    duration = Column(Integer, nullable=True)
    # 使用 BigInteger 以容纳大文件
    file_size = Column(BigInteger, nullable=True)
    mime_type = Column(String(100), nullable=True)

    storage_url = Column(Text, nullable=True)
    thumbnail_url = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    message = relationship("Message", back_populates="attachments")

    def __repr__(self):
        return f"<Attachment(id={self.id}, type='{self.file_type}', message_id={self.message_id})>"


class AnalyticsEvent(Base):
    """
    模型类：仅追加的分析事件，用于下游统计聚合。
    """
    __tablename__ = 'analytics_events'

    id = Column(Integer, primary_key=True)
    group_id = Column(Integer, ForeignKey('groups.id', ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False, index=True)
    event_data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    group = relationship("Group", back_populates="analytics_events")

    def __repr__(self):
        return f"<AnalyticsEvent(id={self.id}, type='{self.event_type}', group_id={self.group_id})>"


# ==================== 数据库初始化函数 ====================

def init_database(db_url: str) -> Engine:
    """
    初始化数据库连接并根据模型创建所有表。

    Args:
        db_url (str): 标准的 SQLAlchemy 数据库连接 URL。

    Returns:
        Engine: SQLAlchemy 的数据库引擎实例。
    """
    try:
        url_info = make_url(db_url)
        logger.info(f"正在初始化数据库连接 (类型: {url_info.drivername})...")
    except Exception:
        # URL 格式不标准时只记录一个通用消息，真正的错误由 create_engine 抛出
        logger.info("正在初始化数据库连接...")

    engine_kwargs = {"echo": False}
    if db_url.startswith("sqlite"):
        # Web 服务的请求可能在不同线程中处理
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in db_url:
            engine_kwargs["poolclass"] = StaticPool

    engine = create_engine(db_url, **engine_kwargs)
    # 只创建不存在的表，不做结构迁移
    Base.metadata.create_all(engine)
    logger.info("数据库表结构已验证/创建。")
    return engine


def get_session_factory(engine: Engine) -> sessionmaker:
    """
    基于给定的数据库引擎创建一个 session 工厂。

    Args:
        engine (Engine): SQLAlchemy 引擎实例。

    Returns:
        sessionmaker: 一个可用于创建新数据库会话的工厂函数。
    """
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)
