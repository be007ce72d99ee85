"""
app.db.lobby_repository
~~~~~~~~~~~~~~~~~~~~~~~

房间与成员持久化仓库 —— 封装 MongoDB ``lobbies`` / ``players`` 两个集合。

成员集合是"玩家是否在房间内"的唯一可信来源，``(lobby_id, player_id)``
上有唯一索引，重复加入在存储层就会被拒绝。房间上的 ``current_players``
只是成员数量的快照，调用方每次变动成员后都应通过 ``count_members()`` 重新统计。
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, TypedDict

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.core.logging import get_logger
from app.db import store_errors, utc_now

logger = get_logger(__name__)

_LOBBY_COLLECTION = "lobbies"
_PLAYER_COLLECTION = "players"


class LobbyDocument(TypedDict):
    """代表 MongoDB 中 lobbies 集合的单条记录"""
    id: str
    name: str
    capacity: int
    current_players: int
    host_id: str
    status: str
    questions: list[dict[str, Any]]
    current_question_index: int
    created_at: datetime
    updated_at: datetime


class MemberDocument(TypedDict):
    """代表 MongoDB 中 players 集合的单条记录"""
    lobby_id: str
    player_id: str
    joined_at: datetime


class LobbyRepository:
    """房间与成员持久化仓库。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._lobbies = db[_LOBBY_COLLECTION]
        self._players = db[_PLAYER_COLLECTION]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        with store_errors("create lobby indexes"):
            await self._lobbies.create_index("id", unique=True, name="uniq_lobby_id")
            await self._lobbies.create_index("updated_at", name="idx_updated_at")
            await self._players.create_index(
                [("lobby_id", 1), ("player_id", 1)],
                unique=True,
                name="uniq_lobby_player",
            )
            await self._players.create_index(
                [("lobby_id", 1), ("joined_at", 1)],
                name="idx_lobby_joined",
            )
        self._indexes_created = True
        logger.debug("lobbies / players 索引已就绪")

    # ── 房间 ──────────────────────────────────────────────────────────

    async def insert_lobby(self, doc: LobbyDocument) -> LobbyDocument:
        """插入一条房间记录并原样返回。"""
        await self._ensure_indexes()
        with store_errors("create lobby"):
            # insert_one 会往入参里写 _id，这里传副本
            await self._lobbies.insert_one(dict(doc))
        return doc

    async def find_lobby(self, lobby_id: str) -> LobbyDocument | None:
        """按 ID 查询房间，不存在时返回 None。"""
        with store_errors("get lobby"):
            return await self._lobbies.find_one({"id": lobby_id}, {"_id": 0})

    async def list_lobbies(self) -> list[LobbyDocument]:
        """列出全部房间，按创建时间倒序。"""
        with store_errors("list lobbies"):
            cursor = self._lobbies.find({}, {"_id": 0}).sort("created_at", -1)
            return await cursor.to_list(length=None)

    async def list_lobby_ids(self) -> list[str]:
        """列出全部房间 ID。"""
        with store_errors("list lobby ids"):
            docs = await self._lobbies.find({}, {"_id": 0, "id": 1}).to_list(length=None)
        return [doc["id"] for doc in docs]

    async def update_lobby(
        self,
        lobby_id: str,
        fields: dict[str, Any],
        touch: bool = True,
    ) -> LobbyDocument | None:
        """更新房间字段并返回更新后的记录。

        Args:
            lobby_id: 房间 ID。
            fields: 需要 ``$set`` 的字段。
            touch: 是否同时刷新 ``updated_at``。计时器推进题目时传 False，
                避免让无人活动的房间逃过清理。

        Returns:
            更新后的房间记录；房间不存在时返回 None。
        """
        changes = dict(fields)
        if touch:
            changes["updated_at"] = utc_now()
        if not changes:
            return await self.find_lobby(lobby_id)
        with store_errors("update lobby"):
            return await self._lobbies.find_one_and_update(
                {"id": lobby_id},
                {"$set": changes},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )

    async def delete_lobby(self, lobby_id: str) -> bool:
        """删除房间及其全部成员记录。"""
        with store_errors("delete lobby"):
            await self._players.delete_many({"lobby_id": lobby_id})
            result = await self._lobbies.delete_one({"id": lobby_id})
        return result.deleted_count > 0

    async def find_lobby_ids_updated_before(
        self,
        cutoff: datetime,
        player_counts: list[int] | None = None,
    ) -> list[str]:
        """查询 ``updated_at`` 早于 cutoff 的房间 ID。

        Args:
            cutoff: 截止时间。
            player_counts: 可选，只匹配 ``current_players`` 在此列表中的房间。
        """
        query: dict[str, Any] = {"updated_at": {"$lt": cutoff}}
        if player_counts is not None:
            query["current_players"] = {"$in": player_counts}
        with store_errors("find stale lobbies"):
            docs = await self._lobbies.find(query, {"_id": 0, "id": 1}).to_list(length=None)
        return [doc["id"] for doc in docs]

    # ── 成员 ──────────────────────────────────────────────────────────

    async def insert_member(self, lobby_id: str, player_id: str) -> bool:
        """写入成员记录。

        Returns:
            True 表示新写入；False 表示该玩家已经在房间内（唯一索引冲突）。
        """
        await self._ensure_indexes()
        with store_errors("add player to lobby"):
            try:
                await self._players.insert_one({
                    "lobby_id": lobby_id,
                    "player_id": player_id,
                    "joined_at": utc_now(),
                })
            except DuplicateKeyError:
                return False
        return True

    async def find_member(self, lobby_id: str, player_id: str) -> MemberDocument | None:
        """查询单条成员记录。"""
        with store_errors("get player"):
            return await self._players.find_one(
                {"lobby_id": lobby_id, "player_id": player_id},
                {"_id": 0},
            )

    async def delete_member(self, lobby_id: str, player_id: str) -> bool:
        """删除成员记录，记录不存在时返回 False。"""
        with store_errors("remove player from lobby"):
            result = await self._players.delete_one(
                {"lobby_id": lobby_id, "player_id": player_id},
            )
        return result.deleted_count > 0

    async def list_members(self, lobby_id: str) -> list[MemberDocument]:
        """按加入顺序列出房间成员（``joined_at`` 相同时按写入顺序）。"""
        with store_errors("list players"):
            cursor = (
                self._players
                .find({"lobby_id": lobby_id}, {"_id": 0})
                .sort([("joined_at", 1), ("_id", 1)])
            )
            return await cursor.to_list(length=None)

    async def count_members(self, lobby_id: str) -> int:
        """统计房间当前成员数。"""
        with store_errors("count players"):
            return await self._players.count_documents({"lobby_id": lobby_id})
