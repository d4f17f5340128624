# tests/conftest.py

import pytest
from unittest.mock import MagicMock, AsyncMock

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from plp_telegram.database import Base
from helpers import BOT_ID, GROUP_CHAT_ID


@pytest.fixture(scope="function")
def test_db_session_factory():
    """
    提供一个基于内存的、干净的 SQLite 数据库会话工厂。
    'function' 作用域确保每个测试函数都获得一个全新的数据库。
    """
    # StaticPool 让所有连接共享同一个内存数据库，
    # TestClient 会在另一个线程中处理请求，同样需要 check_same_thread=False。
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def file_db_session_factory(tmp_path):
    """
    基于临时文件的 SQLite 数据库。
    每个会话使用独立的连接，用于测试两个请求交错执行时的并发创建。
    """
    engine = create_engine(f"sqlite:///{tmp_path / 'plp.db'}")
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def mock_bot():
    """一个模拟的 Bot：所有 Bot API 调用都是 AsyncMock。"""
    bot = MagicMock()
    bot.id = BOT_ID
    bot.username = "plp_test_bot"
    # de_json 会读取 bot.defaults，MagicMock 的默认值会干扰日期解析
    bot.defaults = None
    bot.get_chat_member_count = AsyncMock(return_value=42)
    bot.get_chat = AsyncMock()
    bot.get_file = AsyncMock()
    bot.send_message = AsyncMock()
    return bot


@pytest.fixture
def mock_context(test_db_session_factory, mock_bot):
    """
    提供一个模拟的 Telegram Context 对象。
    这个 context 被预先填充了测试所需的关键对象，如数据库会话工厂和模拟的 bot 对象。
    """
    context = MagicMock()
    context.bot_data = {
        'session_factory': test_db_session_factory,
        'storage': None,
        'email_domain': 'plp.local',
        'analytics_retention_days': 90,
    }
    context.bot = mock_bot
    return context


@pytest.fixture
def mock_update():
    """提供一个用于命令处理器的模拟 Telegram Update 对象。"""
    update = MagicMock()

    mock_chat = MagicMock()
    mock_chat.id = GROUP_CHAT_ID
    mock_chat.type = "supergroup"
    mock_chat.title = "Test Group"

    mock_message = MagicMock()
    mock_message.message_id = 9999
    mock_message.reply_text = AsyncMock()
    mock_message.chat = mock_chat

    update.effective_chat = mock_chat
    update.effective_message = mock_message
    update.message = mock_message
    return update
