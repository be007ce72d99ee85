"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用内存实现替换 MongoDB 仓库和 WebSocket 连接，
使服务层和网关测试无需任何外部依赖即可运行。

内存仓库与真实仓库方法签名一致，并支持通过 ``fail_on`` 指定某个方法抛出
``StoreFailure``，用于验证部分失败时的行为。
"""
from __future__ import annotations

import asyncio
import copy
import json
import os
import random
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置

from app.core.exceptions import StoreFailure  # noqa: E402
from app.db import utc_now  # noqa: E402
from app.services.answer_service import AnswerAggregator  # noqa: E402
from app.services.broadcaster import BroadcastRouter  # noqa: E402
from app.services.connection import ConnectionRegistry  # noqa: E402
from app.services.coordinator import LobbyCoordinator  # noqa: E402
from app.services.lobby_manager import LobbyManager  # noqa: E402
from app.services.profile import ProfileDirectory  # noqa: E402
from app.services.question_timer import QuestionTimer  # noqa: E402
from app.services.reply_service import ReplyService  # noqa: E402

# 测试中计时器后台循环永远不会自然触发，心跳一律手动调用 ``timer.tick()``
IDLE_TICK_SECONDS: float = 3600.0


def make_questions(count: int = 10) -> list[dict[str, Any]]:
    """生成 count 道确定性的假题目。"""
    return [
        {"id": f"q{i}", "content": f"Question {i}?", "type": "text", "theme": "general"}
        for i in range(count)
    ]


class _FailureSwitch:
    """``fail_on`` 中列出的方法名在调用时抛出 StoreFailure。

    ``yield_points = True`` 时每次调用先让出一次事件循环，
    模拟真实存储调用的挂起点，使 ``asyncio.gather`` 中的协程交错执行。
    """

    def __init__(self) -> None:
        self.fail_on: set[str] = set()
        self.yield_points = False

    async def _step(self, op: str) -> None:
        if op in self.fail_on:
            raise StoreFailure(f"Failed to {op}")
        if self.yield_points:
            await asyncio.sleep(0)


# ── 内存仓库 ──────────────────────────────────────────────────────────

class FakeLobbyRepository(_FailureSwitch):
    """``LobbyRepository`` 的内存实现。"""

    def __init__(self) -> None:
        super().__init__()
        self.lobbies: dict[str, dict[str, Any]] = {}
        self.members: list[dict[str, Any]] = []

    async def insert_lobby(self, doc: dict[str, Any]) -> dict[str, Any]:
        await self._step("insert_lobby")
        self.lobbies[doc["id"]] = copy.deepcopy(doc)
        return doc

    async def find_lobby(self, lobby_id: str) -> dict[str, Any] | None:
        await self._step("find_lobby")
        doc = self.lobbies.get(lobby_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def list_lobbies(self) -> list[dict[str, Any]]:
        await self._step("list_lobbies")
        docs = sorted(self.lobbies.values(), key=lambda d: d["created_at"], reverse=True)
        return copy.deepcopy(docs)

    async def list_lobby_ids(self) -> list[str]:
        await self._step("list_lobby_ids")
        return list(self.lobbies)

    async def update_lobby(
        self,
        lobby_id: str,
        fields: dict[str, Any],
        touch: bool = True,
    ) -> dict[str, Any] | None:
        await self._step("update_lobby")
        doc = self.lobbies.get(lobby_id)
        if doc is None:
            return None
        doc.update(fields)
        if touch:
            doc["updated_at"] = utc_now()
        return copy.deepcopy(doc)

    async def delete_lobby(self, lobby_id: str) -> bool:
        await self._step("delete_lobby")
        self.members = [m for m in self.members if m["lobby_id"] != lobby_id]
        return self.lobbies.pop(lobby_id, None) is not None

    async def find_lobby_ids_updated_before(
        self,
        cutoff: datetime,
        player_counts: list[int] | None = None,
    ) -> list[str]:
        await self._step("find_lobby_ids_updated_before")
        return [
            doc["id"] for doc in self.lobbies.values()
            if doc["updated_at"] < cutoff
            and (player_counts is None or doc["current_players"] in player_counts)
        ]

    async def insert_member(self, lobby_id: str, player_id: str) -> bool:
        await self._step("insert_member")
        if self._member(lobby_id, player_id) is not None:
            return False
        self.members.append({"lobby_id": lobby_id, "player_id": player_id, "joined_at": utc_now()})
        return True

    async def find_member(self, lobby_id: str, player_id: str) -> dict[str, Any] | None:
        await self._step("find_member")
        member = self._member(lobby_id, player_id)
        return dict(member) if member is not None else None

    async def delete_member(self, lobby_id: str, player_id: str) -> bool:
        await self._step("delete_member")
        member = self._member(lobby_id, player_id)
        if member is None:
            return False
        self.members.remove(member)
        return True

    async def list_members(self, lobby_id: str) -> list[dict[str, Any]]:
        await self._step("list_members")
        return [dict(m) for m in self.members if m["lobby_id"] == lobby_id]

    async def count_members(self, lobby_id: str) -> int:
        await self._step("count_members")
        return sum(1 for m in self.members if m["lobby_id"] == lobby_id)

    def _member(self, lobby_id: str, player_id: str) -> dict[str, Any] | None:
        for member in self.members:
            if member["lobby_id"] == lobby_id and member["player_id"] == player_id:
                return member
        return None


class FakeAnswerRepository(_FailureSwitch):
    """``AnswerRepository`` 的内存实现。"""

    def __init__(self) -> None:
        super().__init__()
        self.answers: dict[str, dict[str, Any]] = {}

    async def insert_answer(
        self,
        lobby_id: str,
        player_id: str,
        content: str,
        question_index: int,
    ) -> dict[str, Any]:
        await self._step("insert_answer")
        doc = {
            "id": uuid.uuid4().hex,
            "lobby_id": lobby_id,
            "question_index": question_index,
            "player_id": player_id,
            "content": content,
            "created_at": utc_now(),
            "reactions": [],
            "replies": [],
        }
        self.answers[doc["id"]] = copy.deepcopy(doc)
        return doc

    async def find_answer(self, answer_id: str) -> dict[str, Any] | None:
        await self._step("find_answer")
        doc = self.answers.get(answer_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def list_answers(self, lobby_id: str, question_index: int) -> list[dict[str, Any]]:
        await self._step("list_answers")
        docs = [
            d for d in self.answers.values()
            if d["lobby_id"] == lobby_id and d["question_index"] == question_index
        ]
        return copy.deepcopy(sorted(docs, key=lambda d: d["created_at"], reverse=True))

    async def set_reactions(self, answer_id: str, reactions: list[dict[str, Any]]) -> dict[str, Any] | None:
        await self._step("set_reactions")
        doc = self.answers.get(answer_id)
        if doc is None:
            return None
        doc["reactions"] = copy.deepcopy(reactions)
        return copy.deepcopy(doc)

    async def push_reply(self, answer_id: str, reply: dict[str, Any]) -> dict[str, Any] | None:
        await self._step("push_reply")
        doc = self.answers.get(answer_id)
        if doc is None:
            return None
        doc["replies"].append(dict(reply))
        return copy.deepcopy(doc)

    async def list_answer_ids(self) -> list[str]:
        await self._step("list_answer_ids")
        return list(self.answers)

    async def delete_for_question(self, lobby_id: str, question_index: int) -> int:
        await self._step("delete_for_question")
        return self._delete(lambda d: d["lobby_id"] == lobby_id and d["question_index"] == question_index)

    async def delete_for_lobby(self, lobby_id: str) -> int:
        await self._step("delete_for_lobby")
        return self._delete(lambda d: d["lobby_id"] == lobby_id)

    async def delete_orphans(self, live_lobby_ids: list[str]) -> int:
        await self._step("delete_orphans")
        return self._delete(lambda d: d["lobby_id"] not in live_lobby_ids)

    def _delete(self, predicate: Any) -> int:
        doomed = [key for key, doc in self.answers.items() if predicate(doc)]
        for key in doomed:
            del self.answers[key]
        return len(doomed)


class FakeReplyRepository(_FailureSwitch):
    """``ReplyRepository`` 的内存实现。"""

    def __init__(self) -> None:
        super().__init__()
        self.replies: list[dict[str, Any]] = []

    async def insert_reply(self, answer_id: str, player_id: str, content: str) -> dict[str, Any]:
        await self._step("insert_reply")
        doc = {
            "id": uuid.uuid4().hex,
            "answer_id": answer_id,
            "player_id": player_id,
            "content": content,
            "created_at": utc_now(),
        }
        self.replies.append(dict(doc))
        return doc

    async def list_for_answer(self, answer_id: str) -> list[dict[str, Any]]:
        await self._step("list_for_answer")
        return [dict(r) for r in self.replies if r["answer_id"] == answer_id]

    async def delete_reply(self, reply_id: str, player_id: str) -> bool:
        await self._step("delete_reply")
        for reply in self.replies:
            if reply["id"] == reply_id and reply["player_id"] == player_id:
                self.replies.remove(reply)
                return True
        return False

    async def delete_orphans(self, live_answer_ids: list[str]) -> int:
        await self._step("delete_orphans")
        doomed = [r for r in self.replies if r["answer_id"] not in live_answer_ids]
        for reply in doomed:
            self.replies.remove(reply)
        return len(doomed)


class FakeQuestionSource(_FailureSwitch):
    """``QuestionRepository`` 的内存实现：按顺序返回固定题目。"""

    def __init__(self, questions: list[dict[str, Any]] | None = None) -> None:
        super().__init__()
        self.questions = questions if questions is not None else make_questions(12)

    async def get_random_questions(self, count: int) -> list[dict[str, Any]]:
        await self._step("get_random_questions")
        return copy.deepcopy(self.questions[:count])


# ── 锁 ────────────────────────────────────────────────────────────────

class UnguardedLocks:
    """与 ``KeyedLocks`` 接口一致但不加锁，用来确认并发测试确实会交错执行。"""

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        yield


# ── WebSocket ─────────────────────────────────────────────────────────

class FakeWebSocket:
    """记录所有发出消息的假连接。``fail=True`` 时发送一律失败。"""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.accepted = False
        self.fail = fail

    async def accept(self) -> None:
        self.accepted = True

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(json.loads(text))

    def of_type(self, kind: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m["type"] == kind]

    def last(self, kind: str) -> dict[str, Any]:
        matches = self.of_type(kind)
        assert matches, f"no {kind!r} message in {[m['type'] for m in self.sent]}"
        return matches[-1]

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def clear(self) -> None:
        self.sent.clear()


# ── Fixtures ──────────────────────────────────────────────────────────

@pytest.fixture()
def lobby_repo() -> FakeLobbyRepository:
    return FakeLobbyRepository()


@pytest.fixture()
def answer_repo() -> FakeAnswerRepository:
    return FakeAnswerRepository()


@pytest.fixture()
def reply_repo() -> FakeReplyRepository:
    return FakeReplyRepository()


@pytest.fixture()
def question_source() -> FakeQuestionSource:
    return FakeQuestionSource()


@pytest.fixture()
def manager(
    lobby_repo: FakeLobbyRepository,
    answer_repo: FakeAnswerRepository,
    question_source: FakeQuestionSource,
) -> LobbyManager:
    return LobbyManager(lobby_repo, answer_repo, question_source)


@pytest.fixture()
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


@pytest.fixture()
def broadcaster(registry: ConnectionRegistry) -> BroadcastRouter:
    return BroadcastRouter(registry)


@pytest.fixture()
def timer(
    answer_repo: FakeAnswerRepository,
    manager: LobbyManager,
    broadcaster: BroadcastRouter,
) -> QuestionTimer:
    return QuestionTimer(answer_repo, manager, broadcaster, tick_seconds=IDLE_TICK_SECONDS)


@pytest.fixture()
def aggregator(answer_repo: FakeAnswerRepository) -> AnswerAggregator:
    return AnswerAggregator(answer_repo)


@pytest.fixture()
def coordinator(
    registry: ConnectionRegistry,
    broadcaster: BroadcastRouter,
    manager: LobbyManager,
    timer: QuestionTimer,
    aggregator: AnswerAggregator,
    answer_repo: FakeAnswerRepository,
    reply_repo: FakeReplyRepository,
) -> LobbyCoordinator:
    return LobbyCoordinator(
        registry=registry,
        profiles=ProfileDirectory(rng=random.Random(7)),
        broadcaster=broadcaster,
        manager=manager,
        timer=timer,
        aggregator=aggregator,
        replies=ReplyService(reply_repo, answer_repo),
        question_duration=60,
        random_lobby_capacity=10,
        rng=random.Random(0),
    )
