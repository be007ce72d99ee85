"""
app.db.reply_repository
~~~~~~~~~~~~~~~~~~~~~~~

独立回复记录仓库 —— 封装 MongoDB ``replies`` 集合。

与回答内嵌的 ``replies`` 数组不同，这里的记录可以被作者单独删除。
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import TypedDict

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.core.logging import get_logger
from app.db import store_errors, utc_now

logger = get_logger(__name__)

_COLLECTION_NAME = "replies"


class ReplyDocument(TypedDict):
    """代表 MongoDB 中 replies 集合的单条记录"""
    id: str
    answer_id: str
    player_id: str
    content: str
    created_at: datetime


class ReplyRepository:
    """回复记录仓库。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        with store_errors("create reply indexes"):
            await self._collection.create_index(
                [("answer_id", 1), ("created_at", 1)],
                name="idx_answer_time",
            )
        self._indexes_created = True

    async def insert_reply(self, answer_id: str, player_id: str, content: str) -> ReplyDocument:
        """写入一条回复记录。"""
        await self._ensure_indexes()
        doc: ReplyDocument = {
            "id": uuid.uuid4().hex,
            "answer_id": answer_id,
            "player_id": player_id,
            "content": content,
            "created_at": utc_now(),
        }
        with store_errors("create reply"):
            await self._collection.insert_one(dict(doc))
        return doc

    async def list_for_answer(self, answer_id: str) -> list[ReplyDocument]:
        """按时间正序列出某条回答下的回复。"""
        await self._ensure_indexes()
        with store_errors("get replies"):
            cursor = (
                self._collection
                .find({"answer_id": answer_id}, {"_id": 0})
                .sort("created_at", 1)
            )
            return await cursor.to_list(length=None)

    async def delete_reply(self, reply_id: str, player_id: str) -> bool:
        """删除作者本人的回复，未命中时返回 False。"""
        with store_errors("delete reply"):
            result = await self._collection.delete_one({"id": reply_id, "player_id": player_id})
        return result.deleted_count > 0

    async def delete_orphans(self, live_answer_ids: list[str]) -> int:
        """删除所属回答已不存在的回复记录。"""
        with store_errors("delete orphaned replies"):
            result = await self._collection.delete_many(
                {"answer_id": {"$nin": live_answer_ids}},
            )
        return result.deleted_count
