"""
app.db.__init__
~~~~~~~~~~~~~~~

MongoDB 异步连接管理。

使用 ``motor`` 提供的 ``AsyncIOMotorClient``，在应用生命周期内维护一个
全局连接池。启动时调用 ``connect_mongo()``，关闭时调用 ``close_mongo()``。

各仓库通过 ``store_errors()`` 把 ``PyMongoError`` 统一转换为 ``StoreFailure``，
业务层只需要处理自己的异常体系。
"""
from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from urllib.parse import urlparse, urlunparse

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from app.core.exceptions import StoreFailure
from app.core.logging import get_logger
from app.core.settings import settings

logger = get_logger(__name__)

_client: AsyncIOMotorClient | None = None


def _mask_uri(uri: str) -> str:
    """将 MongoDB URI 中的密码替换为 ``***``，防止日志泄漏凭证。"""
    parsed = urlparse(uri)
    if parsed.password:
        masked = parsed._replace(
            netloc=f"{parsed.username}:***@{parsed.hostname}"
            + (f":{parsed.port}" if parsed.port else ""),
        )
        return urlunparse(masked)
    return uri


def utc_now() -> datetime:
    """当前 UTC 时间。MongoDB 只保存到毫秒，这里提前截断，保证读写一致。"""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


@contextmanager
def store_errors(action: str) -> Iterator[None]:
    """把存储层异常转换为 ``StoreFailure``。

    Args:
        action: 正在执行的操作描述，写入日志和异常信息。
    """
    try:
        yield
    except PyMongoError as e:
        logger.error("存储操作失败 | action=%s | error=%s", action, e)
        raise StoreFailure(f"Failed to {action}") from e


async def connect_mongo() -> None:
    """初始化 MongoDB 连接池。应在 lifespan startup 中调用。"""
    global _client
    _client = AsyncIOMotorClient(settings.MONGO_URI, tz_aware=True)

    try:
        db = _client[settings.MONGO_DB_NAME]
        await db.command("ping")
        logger.info(
            "MongoDB 已连接 | uri=%s | db=%s",
            _mask_uri(settings.MONGO_URI),
            settings.MONGO_DB_NAME,
        )
    except Exception as e:
        logger.error("MongoDB 连接失败: %s", e, exc_info=True)
        raise


async def close_mongo() -> None:
    """关闭 MongoDB 连接池。应在 lifespan shutdown 中调用。"""
    global _client
    if _client is not None:
        _client.close()
        _client = None
        logger.info("MongoDB 连接已关闭")


def get_database() -> AsyncIOMotorDatabase:
    """获取默认数据库实例。

    Returns:
        ``AsyncIOMotorDatabase`` 实例。

    Raises:
        RuntimeError: 如果在 ``connect_mongo()`` 之前调用。
    """
    if _client is None:
        raise RuntimeError(
            "MongoDB 尚未初始化，请先调用 connect_mongo()",
        )
    return _client[settings.MONGO_DB_NAME]
