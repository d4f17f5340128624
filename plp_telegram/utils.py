# plp_telegram/utils.py

import logging
import io
from contextlib import contextmanager
from sqlalchemy.orm import Session, sessionmaker
from PIL import Image

logger = logging.getLogger(__name__)

# 缩略图的最大边长（像素）
THUMBNAIL_SIZE = (320, 320)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Session:
    """
    提供一个事务性的数据库会话作用域。
    作用域结束时自动提交（如果成功）或回滚（如果发生异常）。
    作用域内部也允许提前 commit，例如注册表在创建实体后立即提交。

    用法:
    with session_scope(session_factory) as session:
        session.query(...)
    """
    session = session_factory()
    logger.debug("数据库会话已创建。")
    try:
        yield session
        session.commit()
        logger.debug("数据库事务已提交。")
    except Exception:
        logger.exception("数据库会话中发生错误，事务已回滚。")
        session.rollback()
        raise
    finally:
        session.close()
        logger.debug("数据库会话已关闭。")


def make_thumbnail(image_bytes: bytes, size: tuple[int, int] = THUMBNAIL_SIZE) -> io.BytesIO:
    """
    根据原始图片数据生成一张 JPEG 缩略图。

    Args:
        image_bytes: 原始图片的二进制内容。
        size: 缩略图的最大宽高，会保持原图比例。

    Returns:
        一个包含 JPEG 图片数据的 BytesIO 流。
    """
    with Image.open(io.BytesIO(image_bytes)) as img:
        # JPEG 不支持透明通道
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        img.thumbnail(size)

        thumb_byte_arr = io.BytesIO()
        img.save(thumb_byte_arr, format='JPEG', quality=85)
    thumb_byte_arr.seek(0)  # 重置流的指针到开头
    return thumb_byte_arr
