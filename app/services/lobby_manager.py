"""
app.services.lobby_manager
~~~~~~~~~~~~~~~~~~~~~~~~~~

房间生命周期管理 —— 建房、加入、离开、房主移交与过期回收。

一致性约定:
  - 成员记录是"玩家是否在房间内"的唯一可信来源，``current_players``
    在每次成员变动后都从成员记录重新统计，绝不在内存计数上加减。
  - 同一房间的加入 / 离开在 ``KeyedLocks`` 上串行执行，关闭单进程内的容量竞争。
  - 跨多次存储调用的操作没有事务，部分失败留下的脏数据由清理任务兜底。
"""
from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from app.core.exceptions import LobbyFull, NotFound, StoreFailure, ValidationFailed
from app.core.locks import KeyedLocks
from app.core.logging import get_logger
from app.db import utc_now
from app.db.answer_repository import AnswerRepository
from app.db.lobby_repository import LobbyDocument, LobbyRepository
from app.db.question_repository import QuestionRepository
from app.schemas.game import Lobby, LobbyStatus

logger = get_logger(__name__)


def _validate_new_lobby(name: Any, capacity: Any) -> None:
    if not isinstance(name, str) or not name.strip():
        raise ValidationFailed("Lobby name is required")
    # bool 是 int 的子类，需要单独排除
    if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity <= 0:
        raise ValidationFailed("Capacity must be a positive integer")


class LobbyManager:
    """房间生命周期管理器。

    Attributes:
        lobbies: 房间与成员仓库。
        answers: 回答仓库（删除房间时一并清理回答）。
        questions: 题库，建房时抽题。
    """

    def __init__(
        self,
        lobbies: LobbyRepository,
        answers: AnswerRepository,
        questions: QuestionRepository,
        questions_per_lobby: int = 10,
        stale_after: timedelta = timedelta(minutes=5),
        idle_after: timedelta = timedelta(minutes=2),
    ) -> None:
        self.lobbies = lobbies
        self.answers = answers
        self.questions = questions
        self.questions_per_lobby = questions_per_lobby
        self.stale_after = stale_after
        self.idle_after = idle_after
        self._locks = KeyedLocks()

    # ── 建房 ──────────────────────────────────────────────────────────

    async def create_lobby(self, name: str, capacity: int, host_id: str) -> Lobby:
        """创建房间并把房主登记为第一个成员。

        房间记录写入成功但房主成员记录写入失败时，会立即补偿删除房间；
        补偿也失败时，房间以"无房主成员"的状态留给清理任务回收。

        Raises:
            ValidationFailed: 名称为空或容量不是正整数。
            StoreFailure: 存储调用失败。
        """
        _validate_new_lobby(name, capacity)
        questions = await self.questions.get_random_questions(self.questions_per_lobby)

        now = utc_now()
        doc: LobbyDocument = {
            "id": uuid.uuid4().hex,
            "name": name.strip(),
            "capacity": capacity,
            "current_players": 1,
            "host_id": host_id,
            "status": "waiting",
            "questions": questions,
            "current_question_index": 0,
            "created_at": now,
            "updated_at": now,
        }
        await self.lobbies.insert_lobby(doc)

        try:
            await self.lobbies.insert_member(doc["id"], host_id)
        except StoreFailure:
            logger.error("房主成员写入失败，撤销建房 | lobby=%s | host=%s", doc["id"], host_id)
            await self._discard_hostless(doc["id"])
            raise

        logger.info(
            "房间已创建 | lobby=%s | name=%s | capacity=%d | questions=%d",
            doc["id"], doc["name"], capacity, len(questions),
        )
        return Lobby.model_validate(doc)

    async def _discard_hostless(self, lobby_id: str) -> None:
        try:
            await self.lobbies.delete_lobby(lobby_id)
        except StoreFailure:
            logger.error("撤销建房失败，房间缺少房主成员记录，等待清理任务回收 | lobby=%s", lobby_id)

    # ── 查询 ──────────────────────────────────────────────────────────

    async def find_lobby(self, lobby_id: str) -> Lobby | None:
        doc = await self.lobbies.find_lobby(lobby_id)
        return Lobby.model_validate(doc) if doc is not None else None

    async def get_lobby(self, lobby_id: str) -> Lobby:
        """按 ID 获取房间。

        Raises:
            NotFound: 房间不存在。
        """
        lobby = await self.find_lobby(lobby_id)
        if lobby is None:
            raise NotFound("Lobby not found")
        return lobby

    async def get_lobbies(self) -> list[Lobby]:
        """列出全部房间（按创建时间倒序，含 created_at / updated_at）。"""
        return [Lobby.model_validate(doc) for doc in await self.lobbies.list_lobbies()]

    # ── 加入 / 离开 ────────────────────────────────────────────────────

    async def join_lobby(self, lobby_id: str, player_id: str) -> Lobby:
        """把玩家加入房间。已是成员时原样返回房间，不重复计数。

        Raises:
            NotFound: 房间不存在。
            LobbyFull: 房间已满。
        """
        async with self._locks.hold(lobby_id):
            lobby = await self.get_lobby(lobby_id)

            if await self.lobbies.find_member(lobby_id, player_id) is not None:
                logger.debug("玩家已在房间内 | lobby=%s | player=%s", lobby_id, player_id)
                return lobby

            count = await self.lobbies.count_members(lobby_id)
            if count >= lobby.capacity:
                logger.info("房间已满 | lobby=%s | current=%d | capacity=%d", lobby_id, count, lobby.capacity)
                raise LobbyFull("Lobby is full")

            if not await self.lobbies.insert_member(lobby_id, player_id):
                return lobby

            member_ids = [m["player_id"] for m in await self.lobbies.list_members(lobby_id)]
            changes: dict[str, Any] = {"current_players": len(member_ids)}
            # 房间曾被清空时，原房主已不是成员，由加入者接任
            if lobby.host_id not in member_ids:
                changes["host_id"] = player_id

            doc = await self.lobbies.update_lobby(lobby_id, changes)
            if doc is None:
                # 等待期间房间被清理任务删除
                await self.lobbies.delete_member(lobby_id, player_id)
                raise NotFound("Lobby not found")

            logger.info(
                "玩家加入房间 | lobby=%s | player=%s | players=%d | new_host=%s",
                lobby_id, player_id, len(member_ids), changes.get("host_id", "-"),
            )
            return Lobby.model_validate(doc)

    async def leave_lobby(self, lobby_id: str, player_id: str) -> Lobby | None:
        """把玩家移出房间，重新统计人数，必要时移交房主。

        玩家不在房间内时不报错。房主离开且仍有成员时，
        最早加入的成员成为新房主。

        Returns:
            更新后的房间；房间已不存在时返回 None。
        """
        async with self._locks.hold(lobby_id):
            lobby = await self.find_lobby(lobby_id)
            if lobby is None:
                return None

            removed = await self.lobbies.delete_member(lobby_id, player_id)
            member_ids = [m["player_id"] for m in await self.lobbies.list_members(lobby_id)]

            changes: dict[str, Any] = {"current_players": len(member_ids)}
            if member_ids and lobby.host_id not in member_ids:
                changes["host_id"] = member_ids[0]

            if not removed and len(member_ids) == lobby.current_players and "host_id" not in changes:
                return lobby

            doc = await self.lobbies.update_lobby(lobby_id, changes)
            if doc is None:
                return None

            logger.info(
                "玩家离开房间 | lobby=%s | player=%s | players=%d | new_host=%s",
                lobby_id, player_id, len(member_ids), changes.get("host_id", "-"),
            )
            return Lobby.model_validate(doc)

    # ── 状态同步 ──────────────────────────────────────────────────────

    async def touch(self, lobby_id: str) -> None:
        """刷新房间的 ``updated_at``（回答、表情、回复等活动）。"""
        await self.lobbies.update_lobby(lobby_id, {})

    async def set_question_index(
        self,
        lobby_id: str,
        index: int,
        status: LobbyStatus | None = None,
    ) -> Lobby | None:
        """同步计时器推进后的题目下标（不刷新 ``updated_at``）。"""
        fields: dict[str, Any] = {"current_question_index": index}
        if status is not None:
            fields["status"] = status
        doc = await self.lobbies.update_lobby(lobby_id, fields, touch=False)
        return Lobby.model_validate(doc) if doc is not None else None

    # ── 清理 ──────────────────────────────────────────────────────────

    async def cleanup_stale_lobbies(self) -> list[str]:
        """删除长时间没有任何更新的房间（不论人数），返回被删除的房间 ID。"""
        cutoff = utc_now() - self.stale_after
        ids = await self.lobbies.find_lobby_ids_updated_before(cutoff)
        return await self._delete_lobbies(
            ids,
            lambda lobby: lobby.updated_at is not None and lobby.updated_at < cutoff,
            reason="stale",
        )

    async def cleanup_idle_lobbies(self) -> list[str]:
        """删除空置或只剩一人超过宽限期的房间，返回被删除的房间 ID。"""
        cutoff = utc_now() - self.idle_after
        ids = await self.lobbies.find_lobby_ids_updated_before(cutoff, player_counts=[0, 1])
        return await self._delete_lobbies(
            ids,
            lambda lobby: (
                lobby.current_players <= 1
                and lobby.updated_at is not None
                and lobby.updated_at < cutoff
            ),
            reason="idle",
        )

    async def cleanup_orphaned_answers(self) -> int:
        """删除所属房间已不存在的回答，返回删除条数。"""
        live_ids = await self.lobbies.list_lobby_ids()
        removed = await self.answers.delete_orphans(live_ids)
        if removed:
            logger.info("清理孤立回答 | count=%d", removed)
        return removed

    async def _delete_lobbies(
        self,
        lobby_ids: list[str],
        still_eligible: Callable[[Lobby], bool],
        reason: str,
    ) -> list[str]:
        deleted: list[str] = []
        for lobby_id in lobby_ids:
            try:
                async with self._locks.hold(lobby_id):
                    # 查询到加锁之间房间可能有新的活动，重新确认一次
                    lobby = await self.find_lobby(lobby_id)
                    if lobby is None or not still_eligible(lobby):
                        continue
                    await self.answers.delete_for_lobby(lobby_id)
                    if await self.lobbies.delete_lobby(lobby_id):
                        deleted.append(lobby_id)
            except StoreFailure as e:
                logger.error("清理房间失败，继续下一个 | lobby=%s | reason=%s | error=%s", lobby_id, reason, e.message)
        if deleted:
            logger.info("清理房间 | reason=%s | count=%d", reason, len(deleted))
        return deleted
