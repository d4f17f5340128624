# plp_telegram/core/storage.py (持久化文件存储)

import logging
import mimetypes
import os
import uuid
from dataclasses import dataclass
from typing import Optional

import aioboto3
from botocore.config import Config as BotoConfig
from telegram import Bot

from plp_telegram.config import Settings

logger = logging.getLogger(__name__)

# 各媒体类型在无法推断 MIME 类型时使用的默认值
DEFAULT_CONTENT_TYPES = {
    "photo": "image/jpeg",
    "video": "video/mp4",
    "audio": "audio/mpeg",
    "voice": "audio/ogg",
}
FALLBACK_CONTENT_TYPE = "application/octet-stream"


@dataclass
class StoredFile:
    """一次转存的结果。`content` 保留了原始字节，供生成缩略图使用。"""
    url: str
    size: int
    content: bytes


class ObjectStorage:
    """
    S3 兼容的对象存储（MinIO 或 AWS S3），通过 aioboto3 异步访问。
    """

    def __init__(self, bucket: str, access_key: str, secret_key: str,
                 endpoint_url: Optional[str] = None, region: str = "us-east-1",
                 public_url: Optional[str] = None):
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.region = region
        self.public_url = public_url.rstrip("/") if public_url else None
        self._access_key = access_key
        self._secret_key = secret_key
        self.session = aioboto3.Session()
        # MinIO 需要 s3v4 签名
        self._boto_config = BotoConfig(signature_version="s3v4")

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["ObjectStorage"]:
        """只有配置了存储凭据时才返回实例，否则返回 None（不转存文件）。"""
        if not settings.storage_configured:
            return None
        return cls(
            bucket=settings.storage_bucket,
            access_key=settings.storage_access_key,
            secret_key=settings.storage_secret_key,
            endpoint_url=settings.storage_endpoint_url,
            region=settings.storage_region,
            public_url=settings.storage_public_url,
        )

    def public_url_for(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        """
        上传一个对象并返回其公开 URL。
        存储错误（如 botocore 的 ClientError）直接抛给调用方。
        """
        async with self.session.client(
            service_name="s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=self._access_key,
            aws_secret_access_key=self._secret_key,
            region_name=self.region,
            config=self._boto_config,
        ) as s3:
            await s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)

        url = self.public_url_for(key)
        logger.info(f"文件已上传: {key} -> {url}")
        return url


# =================== 辅助函数 ===================

def guess_content_type(kind: str, file_name: Optional[str] = None, mime_type: Optional[str] = None) -> str:
    if mime_type:
        return mime_type
    if file_name:
        guessed, _ = mimetypes.guess_type(file_name)
        if guessed:
            return guessed
    return DEFAULT_CONTENT_TYPES.get(kind, FALLBACK_CONTENT_TYPE)


def build_object_key(kind: str, content_type: str, file_name: Optional[str] = None) -> str:
    """生成唯一的对象键，形如 `photo/3f2a9c1b7d4e.jpg`。"""
    extension = os.path.splitext(file_name)[1] if file_name else ""
    if not extension:
        extension = mimetypes.guess_extension(content_type) or ""
    return f"{kind}/{uuid.uuid4().hex[:12]}{extension}"


async def download_telegram_file(bot: Bot, file_id: str) -> tuple[bytes, Optional[str]]:
    """通过 Bot API 下载文件，返回文件内容和 Telegram 端的文件路径。"""
    tg_file = await bot.get_file(file_id)
    content = await tg_file.download_as_bytearray()
    return bytes(content), tg_file.file_path


async def relocate_file(bot: Bot, storage: ObjectStorage, file_id: str, kind: str,
                        file_name: Optional[str] = None, mime_type: Optional[str] = None) -> StoredFile:
    """
    从 Telegram 下载文件并转存到对象存储。
    任何下载或上传错误都会抛出，由调用方决定如何降级。
    """
    content, file_path = await download_telegram_file(bot, file_id)
    name_hint = file_name or (os.path.basename(file_path) if file_path else None)
    content_type = guess_content_type(kind, name_hint, mime_type)
    key = build_object_key(kind, content_type, name_hint)
    url = await storage.upload(key, content, content_type)
    return StoredFile(url=url, size=len(content), content=content)
