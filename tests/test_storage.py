# tests/test_storage.py

import pytest
from unittest.mock import AsyncMock, MagicMock

from plp_telegram.config import Settings
from plp_telegram.core.storage import ObjectStorage, relocate_file

pytestmark = pytest.mark.asyncio


def _mock_s3_session(storage):
    """用一个模拟的 aioboto3 会话替换真实会话，返回模拟的 S3 客户端。"""
    s3_client = MagicMock()
    s3_client.put_object = AsyncMock()
    client_cm = MagicMock()
    client_cm.__aenter__ = AsyncMock(return_value=s3_client)
    client_cm.__aexit__ = AsyncMock(return_value=False)
    storage.session = MagicMock()
    storage.session.client.return_value = client_cm
    return s3_client


async def test_from_settings_returns_none_without_credentials():
    """测试：未配置存储凭据时不创建存储实例。"""
    assert ObjectStorage.from_settings(Settings()) is None


async def test_public_url_variants():
    """测试：公开 URL 优先使用 STORAGE_PUBLIC_URL，其次是 endpoint 路径风格，最后是 AWS 虚拟主机风格。"""
    assert ObjectStorage("b", "k", "s", public_url="https://cdn.example.com/").public_url_for("x/y.jpg") \
        == "https://cdn.example.com/x/y.jpg"
    assert ObjectStorage("b", "k", "s", endpoint_url="http://minio:9000").public_url_for("x/y.jpg") \
        == "http://minio:9000/b/x/y.jpg"
    assert ObjectStorage("b", "k", "s", region="eu-west-1").public_url_for("x/y.jpg") \
        == "https://b.s3.eu-west-1.amazonaws.com/x/y.jpg"


async def test_upload_puts_object_and_returns_url():
    """测试：upload 通过 S3 客户端写入对象并返回公开 URL。"""
    storage = ObjectStorage("plp", "key", "secret", endpoint_url="http://minio:9000")
    s3_client = _mock_s3_session(storage)

    url = await storage.upload("photo/abc.jpg", b"data", "image/jpeg")

    assert url == "http://minio:9000/plp/photo/abc.jpg"
    s3_client.put_object.assert_awaited_once_with(
        Bucket="plp", Key="photo/abc.jpg", Body=b"data", ContentType="image/jpeg"
    )
    _, kwargs = storage.session.client.call_args
    assert kwargs["endpoint_url"] == "http://minio:9000"
    assert kwargs["aws_access_key_id"] == "key"


async def test_relocate_file_downloads_and_uploads(mock_bot):
    """测试：relocate_file 从 Telegram 下载文件，按文件路径推断类型并上传。"""
    tg_file = MagicMock()
    tg_file.file_path = "https://api.telegram.org/file/bot123:ABC/videos/file_9.mp4"
    tg_file.download_as_bytearray = AsyncMock(return_value=bytearray(b"video-bytes"))
    mock_bot.get_file = AsyncMock(return_value=tg_file)

    storage = ObjectStorage("plp", "key", "secret", public_url="https://cdn.example.com")
    s3_client = _mock_s3_session(storage)

    stored = await relocate_file(mock_bot, storage, "video-file", "video")

    assert stored.size == len(b"video-bytes")
    assert stored.content == b"video-bytes"
    assert stored.url.startswith("https://cdn.example.com/video/")
    assert stored.url.endswith(".mp4")
    kwargs = s3_client.put_object.await_args.kwargs
    assert kwargs["ContentType"] == "video/mp4"
    assert kwargs["Body"] == b"video-bytes"


async def test_relocate_file_propagates_download_errors(mock_bot):
    """测试：下载失败时异常向上抛出，由调用方决定如何降级。"""
    mock_bot.get_file = AsyncMock(side_effect=RuntimeError("network down"))
    storage = ObjectStorage("plp", "key", "secret")
    _mock_s3_session(storage)

    with pytest.raises(RuntimeError):
        await relocate_file(mock_bot, storage, "file", "document")
