# tests/test_main.py
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
import importlib

from telegram.ext import CommandHandler, TypeHandler

# Import the module we want to test
main_module = importlib.import_module("main")

from plp_telegram.bot.handlers import error_handler, route_update
from plp_telegram.config import Settings


@pytest.mark.asyncio
@patch('main.load_settings')
@patch('main.logger.critical')  # 直接修补 logger 实例
async def test_main_exit_on_missing_database_url(mock_logger_critical, mock_load_settings):
    """测试：当 DATABASE_URL 缺失时，main() 应记录一个严重错误并直接返回。"""
    mock_load_settings.return_value = Settings(database_url=None, bot_token="123:ABC")

    with patch('main.init_database') as mock_init_database:
        await main_module.main()

    mock_logger_critical.assert_called_with("关键错误: 未在环境变量中找到 DATABASE_URL，服务无法启动。")
    mock_init_database.assert_not_called()


def test_build_application_registers_handlers_and_bot_data(test_db_session_factory):
    """测试：build_application 注册命令处理器、更新路由、错误处理器，并填充 bot_data。"""
    settings = Settings(bot_token="123:ABC", email_domain="example.org", analytics_retention_days=30)
    storage = MagicMock()

    application = main_module.build_application(settings, test_db_session_factory, storage)

    handlers = application.handlers[0]
    commands = set()
    for handler in handlers:
        if isinstance(handler, CommandHandler):
            commands |= set(handler.commands)
    assert commands == {"start", "help", "status", "info"}
    # 更新路由必须排在所有命令之后
    assert isinstance(handlers[-1], TypeHandler)
    assert handlers[-1].callback is route_update
    assert error_handler in application.error_handlers

    assert application.bot_data['session_factory'] is test_db_session_factory
    assert application.bot_data['storage'] is storage
    assert application.bot_data['email_domain'] == "example.org"
    assert application.bot_data['analytics_retention_days'] == 30
    assert application.updater is None


def test_build_application_registers_scheduled_jobs(test_db_session_factory):
    """测试：同步间隔和保留期大于 0 时注册两个计划任务。"""
    settings = Settings(bot_token="123:ABC", group_sync_interval=600, analytics_retention_days=90)

    application = main_module.build_application(settings, test_db_session_factory)

    assert len(application.job_queue.get_jobs_by_name('sync_groups')) == 1
    assert len(application.job_queue.get_jobs_by_name('cleanup_old_events')) == 1


def test_register_jobs_skips_disabled_jobs():
    """测试：间隔或保留期为 0 时不注册对应的计划任务。"""
    application = MagicMock()
    settings = Settings(group_sync_interval=0, analytics_retention_days=0)

    main_module.register_jobs(application, settings)

    application.job_queue.run_repeating.assert_not_called()
    application.job_queue.run_daily.assert_not_called()


@pytest.mark.asyncio
async def test_lifespan_starts_and_stops_application():
    """测试：Web 服务的 lifespan 依次初始化、启动、停止并关闭机器人应用。"""
    application = MagicMock()
    application.__aenter__ = AsyncMock(return_value=application)
    application.__aexit__ = AsyncMock(return_value=False)
    application.start = AsyncMock()
    application.stop = AsyncMock()

    lifespan = main_module.make_lifespan(application)
    async with lifespan(MagicMock()):
        application.start.assert_awaited_once()
        application.stop.assert_not_called()

    application.stop.assert_awaited_once()
    application.__aexit__.assert_awaited_once()


@pytest.mark.asyncio
async def test_lifespan_without_bot_is_noop():
    lifespan = main_module.make_lifespan(None)
    async with lifespan(MagicMock()):
        pass


def _mock_application():
    application = MagicMock()
    application.__aenter__ = AsyncMock(return_value=application)
    application.__aexit__ = AsyncMock(return_value=False)
    application.start = AsyncMock()
    application.stop = AsyncMock()
    application.bot.set_webhook = AsyncMock(return_value=True)
    return application


@pytest.mark.asyncio
async def test_lifespan_registers_webhook_when_url_configured():
    """测试：配置了 WEBHOOK_URL 时，启动机器人后携带密钥注册 Webhook，并订阅全部更新类型。"""
    from telegram import Update

    application = _mock_application()
    settings = Settings(bot_token="123:ABC", webhook_url="https://plp.example.com/api/telegram/webhook",
                        webhook_secret="s" * 32)

    async with main_module.make_lifespan(application, settings)(MagicMock()):
        application.start.assert_awaited_once()
        application.bot.set_webhook.assert_awaited_once_with(
            url="https://plp.example.com/api/telegram/webhook",
            secret_token="s" * 32,
            allowed_updates=Update.ALL_TYPES,
        )


@pytest.mark.asyncio
async def test_lifespan_skips_webhook_registration_without_url():
    application = _mock_application()

    async with main_module.make_lifespan(application, Settings(bot_token="123:ABC"))(MagicMock()):
        pass

    application.bot.set_webhook.assert_not_called()


@pytest.mark.asyncio
async def test_webhook_registration_failure_does_not_stop_startup(caplog):
    """测试：注册 Webhook 失败只记录错误，机器人仍然启动并在关闭时正常停止。"""
    from telegram.error import NetworkError

    application = _mock_application()
    application.bot.set_webhook = AsyncMock(side_effect=NetworkError("timeout"))
    settings = Settings(bot_token="123:ABC", webhook_url="https://plp.example.com/api/telegram/webhook")

    async with main_module.make_lifespan(application, settings)(MagicMock()):
        application.start.assert_awaited_once()

    application.stop.assert_awaited_once()
    assert "注册 Webhook" in caplog.text
