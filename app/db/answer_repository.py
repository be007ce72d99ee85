"""
app.db.answer_repository
~~~~~~~~~~~~~~~~~~~~~~~~

回答持久化仓库 —— 封装 MongoDB ``answers`` 集合。

每条回答一个文档，表情计数（``reactions``）和楼中楼回复（``replies``）
以内嵌数组保存。回答按 ``(lobby_id, question_index)`` 分区，
题目结束时整批删除。
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, TypedDict

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from app.core.logging import get_logger
from app.db import store_errors, utc_now

logger = get_logger(__name__)

_COLLECTION_NAME = "answers"


class AnswerDocument(TypedDict):
    """代表 MongoDB 中 answers 集合的单条记录"""
    id: str
    lobby_id: str
    question_index: int
    player_id: str
    content: str
    created_at: datetime
    reactions: list[dict[str, Any]]
    replies: list[dict[str, Any]]


class AnswerRepository:
    """回答持久化仓库。

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
        with store_errors("create answer indexes"):
            await self._collection.create_index("id", unique=True, name="uniq_answer_id")
            # 复合索引：按房间 + 题目分区
            await self._collection.create_index(
                [("lobby_id", 1), ("question_index", 1), ("created_at", -1)],
                name="idx_lobby_question_time",
            )
        self._indexes_created = True
        logger.debug("answers 索引已就绪")

    async def insert_answer(
        self,
        lobby_id: str,
        player_id: str,
        content: str,
        question_index: int,
    ) -> AnswerDocument:
        """写入一条新回答并返回完整记录。"""
        await self._ensure_indexes()
        doc: AnswerDocument = {
            "id": uuid.uuid4().hex,
            "lobby_id": lobby_id,
            "question_index": question_index,
            "player_id": player_id,
            "content": content,
            "created_at": utc_now(),
            "reactions": [],
            "replies": [],
        }
        with store_errors("create answer"):
            await self._collection.insert_one(dict(doc))
        return doc

    async def find_answer(self, answer_id: str) -> AnswerDocument | None:
        """按 ID 查询回答。"""
        with store_errors("get answer"):
            return await self._collection.find_one({"id": answer_id}, {"_id": 0})

    async def list_answers(self, lobby_id: str, question_index: int) -> list[AnswerDocument]:
        """列出某道题的全部回答（按时间倒序，排名由业务层计算）。"""
        with store_errors("list answers"):
            cursor = (
                self._collection
                .find({"lobby_id": lobby_id, "question_index": question_index}, {"_id": 0})
                .sort("created_at", -1)
            )
            return await cursor.to_list(length=None)

    async def set_reactions(
        self,
        answer_id: str,
        reactions: list[dict[str, Any]],
    ) -> AnswerDocument | None:
        """整体替换表情计数，返回更新后的回答；回答不存在时返回 None。"""
        with store_errors("update reactions"):
            return await self._collection.find_one_and_update(
                {"id": answer_id},
                {"$set": {"reactions": reactions}},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )

    async def push_reply(self, answer_id: str, reply: dict[str, Any]) -> AnswerDocument | None:
        """原子追加一条回复，返回更新后的回答；回答不存在时返回 None。"""
        with store_errors("add reply"):
            return await self._collection.find_one_and_update(
                {"id": answer_id},
                {"$push": {"replies": reply}},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )

    async def list_answer_ids(self) -> list[str]:
        """列出全部回答 ID。"""
        with store_errors("list answer ids"):
            docs = await self._collection.find({}, {"_id": 0, "id": 1}).to_list(length=None)
        return [doc["id"] for doc in docs]

    async def delete_for_question(self, lobby_id: str, question_index: int) -> int:
        """删除某道题的全部回答，返回删除条数。"""
        with store_errors("delete answers"):
            result = await self._collection.delete_many(
                {"lobby_id": lobby_id, "question_index": question_index},
            )
        return result.deleted_count

    async def delete_for_lobby(self, lobby_id: str) -> int:
        """删除某个房间的全部回答。"""
        with store_errors("delete lobby answers"):
            result = await self._collection.delete_many({"lobby_id": lobby_id})
        return result.deleted_count

    async def delete_orphans(self, live_lobby_ids: list[str]) -> int:
        """删除不属于任何现存房间的回答。"""
        with store_errors("delete orphaned answers"):
            result = await self._collection.delete_many(
                {"lobby_id": {"$nin": live_lobby_ids}},
            )
        return result.deleted_count
