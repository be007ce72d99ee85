"""
tests.test_coordinator
~~~~~~~~~~~~~~~~~~~~~~

LobbyCoordinator 端到端场景测试（内存仓库 + 假 WebSocket）。

验证：
- 每种入站消息的回复与广播范围
- 断开连接与主动离开走相同的状态迁移
- 典型对局场景下人数、房主与表情计数的一致性
"""
from __future__ import annotations

from typing import Any

import pytest

from app.core.exceptions import LobbyFull, NotFound, ValidationFailed
from app.services.connection import Session
from app.services.coordinator import LobbyCoordinator, failure_message
from tests.conftest import FakeAnswerRepository, FakeLobbyRepository, FakeWebSocket


async def _connect(coordinator: LobbyCoordinator) -> tuple[Session, FakeWebSocket]:
    ws = FakeWebSocket()
    session = await coordinator.on_connect(ws)  # type: ignore[arg-type]
    return session, ws


async def _send(coordinator: LobbyCoordinator, session: Session, kind: str, **fields: Any) -> None:
    await coordinator.dispatch(session, {"type": kind, **fields})


async def _create(coordinator: LobbyCoordinator, session: Session, name: str = "Trivia", capacity: int = 4) -> str:
    await _send(coordinator, session, "create_lobby", name=name, capacity=capacity)
    assert session.lobby_id is not None
    return session.lobby_id


# ── 连接 ──────────────────────────────────────────────────────────────

class TestConnection:
    """测试连接建立与断开。"""

    @pytest.mark.asyncio
    async def test_connect_sends_user_info(self, coordinator: LobbyCoordinator) -> None:
        session, ws = await _connect(coordinator)

        info = ws.last("user_info")["data"]
        assert info["id"] == session.id
        assert info["username"]
        assert info["avatar"]
        assert info["color"]

    @pytest.mark.asyncio
    async def test_disconnect_acts_as_leave(
        self, coordinator: LobbyCoordinator, lobby_repo: FakeLobbyRepository,
    ) -> None:
        """房主断开：成员记录删除、房主移交、剩余成员收到更新，资料被回收。"""
        host, _ = await _connect(coordinator)
        guest, guest_ws = await _connect(coordinator)
        lobby_id = await _create(coordinator, host)
        await _send(coordinator, guest, "join_lobby", lobbyId=lobby_id)
        guest_ws.clear()

        await coordinator.on_disconnect(host)

        assert coordinator.registry.get(host.id) is None
        assert coordinator.profiles.get(host.id) is None
        assert lobby_repo.lobbies[lobby_id]["host_id"] == guest.id
        assert lobby_repo.lobbies[lobby_id]["current_players"] == 1
        assert guest_ws.last("lobby_players_updated")["data"] == {"lobbyId": lobby_id, "playerCount": 1}
        assert guest_ws.last("lobby_updated")["data"]["hostId"] == guest.id
        assert coordinator.timer.is_running(lobby_id)
        coordinator.timer.stop_all()

    @pytest.mark.asyncio
    async def test_last_disconnect_stops_timer(self, coordinator: LobbyCoordinator) -> None:
        host, _ = await _connect(coordinator)
        lobby_id = await _create(coordinator, host)

        await coordinator.on_disconnect(host)

        assert not coordinator.timer.is_running(lobby_id)

    @pytest.mark.asyncio
    async def test_disconnect_survives_store_failure(
        self, coordinator: LobbyCoordinator, lobby_repo: FakeLobbyRepository,
    ) -> None:
        """离开房间失败时仍然回收会话。"""
        host, _ = await _connect(coordinator)
        await _create(coordinator, host)
        lobby_repo.fail_on.add("delete_member")

        await coordinator.on_disconnect(host)

        assert coordinator.registry.online_count == 0
        coordinator.timer.stop_all()


# ── 房间 ──────────────────────────────────────────────────────────────

class TestLobbyFlow:
    """测试建房、加入、离开。"""

    @pytest.mark.asyncio
    async def test_create_lobby(self, coordinator: LobbyCoordinator) -> None:
        """建房：创建者收到 lobby_created，所有在线会话收到 lobby_updated，计时器启动。"""
        host, host_ws = await _connect(coordinator)
        _, outsider_ws = await _connect(coordinator)

        lobby_id = await _create(coordinator, host)

        created = host_ws.last("lobby_created")["data"]
        assert created["id"] == lobby_id
        assert created["currentPlayers"] == 1
        assert created["hostId"] == host.id
        assert len(created["questions"]) == 10
        assert outsider_ws.last("lobby_updated")["data"]["id"] == lobby_id
        assert coordinator.timer.remaining(lobby_id) == 60
        coordinator.timer.stop_all()

    @pytest.mark.asyncio
    async def test_create_lobby_validation(self, coordinator: LobbyCoordinator) -> None:
        host, _ = await _connect(coordinator)

        with pytest.raises(ValidationFailed):
            await _send(coordinator, host, "create_lobby", name="", capacity=4)
        with pytest.raises(ValidationFailed):
            await _send(coordinator, host, "create_lobby", name="X", capacity=True)

    @pytest.mark.asyncio
    async def test_join_lobby(self, coordinator: LobbyCoordinator) -> None:
        """加入：回复 lobby_joined（含已有回答），房间内广播 lobby_updated，并下发计时状态。"""
        host, host_ws = await _connect(coordinator)
        guest, guest_ws = await _connect(coordinator)
        lobby_id = await _create(coordinator, host)
        await _send(
            coordinator, host, "submit_answer",
            data={"lobbyId": lobby_id, "content": "first!", "questionIndex": 0},
        )

        await _send(coordinator, guest, "join_lobby", lobbyId=lobby_id)

        joined = guest_ws.last("lobby_joined")["data"]
        assert joined["currentPlayers"] == 2
        assert [a["content"] for a in joined["existingAnswers"]] == ["first!"]
        assert host_ws.last("lobby_updated")["data"]["currentPlayers"] == 2
        assert guest_ws.last("timer_update")["data"] == {"timeRemaining": 60}
        assert guest_ws.types().index("lobby_joined") < guest_ws.types().index("timer_update")
        coordinator.timer.stop_all()

    @pytest.mark.asyncio
    async def test_join_after_host_disconnect_takes_over_host(self, coordinator: LobbyCoordinator) -> None:
        """房主断开后房间清空，下一个加入者成为房主。"""
        host, _ = await _connect(coordinator)
        guest, guest_ws = await _connect(coordinator)
        lobby_id = await _create(coordinator, host)
        await coordinator.on_disconnect(host)

        await _send(coordinator, guest, "join_lobby", lobbyId=lobby_id)

        joined = guest_ws.last("lobby_joined")["data"]
        assert joined["currentPlayers"] == 1
        assert joined["hostId"] == guest.id
        coordinator.timer.stop_all()

    @pytest.mark.asyncio
    async def test_join_full_lobby(self, coordinator: LobbyCoordinator) -> None:
        host, _ = await _connect(coordinator)
        guest, _ = await _connect(coordinator)
        late, _ = await _connect(coordinator)
        lobby_id = await _create(coordinator, host, capacity=2)
        await _send(coordinator, guest, "join_lobby", lobbyId=lobby_id)

        with pytest.raises(LobbyFull):
            await _send(coordinator, late, "join_lobby", lobbyId=lobby_id)

        assert late.lobby_id is None
        coordinator.timer.stop_all()

    @pytest.mark.asyncio
    async def test_switching_lobbies_leaves_old(
        self, coordinator: LobbyCoordinator, lobby_repo: FakeLobbyRepository,
    ) -> None:
        a_host, _ = await _connect(coordinator)
        b_host, _ = await _connect(coordinator)
        guest, _ = await _connect(coordinator)
        lobby_a = await _create(coordinator, a_host, name="A")
        lobby_b = await _create(coordinator, b_host, name="B")
        await _send(coordinator, guest, "join_lobby", lobbyId=lobby_a)

        await _send(coordinator, guest, "join_lobby", lobbyId=lobby_b)

        assert guest.lobby_id == lobby_b
        assert lobby_repo.lobbies[lobby_a]["current_players"] == 1
        assert lobby_repo.lobbies[lobby_b]["current_players"] == 2
        coordinator.timer.stop_all()

    @pytest.mark.asyncio
    async def test_rejoin_restarts_timer_at_recorded_index(
        self, coordinator: LobbyCoordinator, lobby_repo: FakeLobbyRepository,
    ) -> None:
        """房间清空后计时器停止；再次有人加入时从记录的题目下标继续。"""
        host, _ = await _connect(coordinator)
        guest, _ = await _connect(coordinator)
        lobby_id = await _create(coordinator, host)
        await _send(coordinator, host, "leave_lobby", lobbyId=lobby_id)
        assert not coordinator.timer.is_running(lobby_id)
        lobby_repo.lobbies[lobby_id]["current_question_index"] = 3

        await _send(coordinator, guest, "join_lobby", lobbyId=lobby_id)

        assert coordinator.timer.current_index(lobby_id) == 3
        coordinator.timer.stop_all()

    @pytest.mark.asyncio
    async def test_leave_lobby(self, coordinator: LobbyCoordinator) -> None:
        """离开：房间内广播人数，离开者收到 lobby_updated，剩余成员也收到。"""
        host, host_ws = await _connect(coordinator)
        guest, guest_ws = await _connect(coordinator)
        lobby_id = await _create(coordinator, host)
        await _send(coordinator, guest, "join_lobby", lobbyId=lobby_id)
        host_ws.clear()
        guest_ws.clear()

        await _send(coordinator, guest, "leave_lobby", lobbyId=lobby_id)

        assert guest.lobby_id is None
        assert guest_ws.types() == ["lobby_updated"]
        assert guest_ws.last("lobby_updated")["data"]["currentPlayers"] == 1
        assert host_ws.types() == ["lobby_players_updated", "lobby_updated"]
        coordinator.timer.stop_all()

    @pytest.mark.asyncio
    async def test_leave_missing_lobby_replies_null(self, coordinator: LobbyCoordinator) -> None:
        session, ws = await _connect(coordinator)

        await _send(coordinator, session, "leave_lobby", lobbyId="gone")

        assert ws.last("lobby_updated")["data"] is None


class TestJoinRandomLobby:
    """测试随机匹配。"""

    @pytest.mark.asyncio
    async def test_creates_lobby_when_none_available(self, coordinator: LobbyCoordinator) -> None:
        """没有可加入的房间时新建 Random Lobby 并回复 lobby_joined。"""
        session, ws = await _connect(coordinator)

        await _send(coordinator, session, "join_random_lobby")

        joined = ws.last("lobby_joined")["data"]
        assert joined["name"] == "Random Lobby"
        assert joined["capacity"] == 10
        assert joined["hostId"] == session.id
        assert joined["existingAnswers"] == []
        assert session.lobby_id == joined["id"]
        assert coordinator.timer.is_running(joined["id"])
        coordinator.timer.stop_all()

    @pytest.mark.asyncio
    async def test_joins_waiting_lobby(self, coordinator: LobbyCoordinator) -> None:
        host, _ = await _connect(coordinator)
        guest, guest_ws = await _connect(coordinator)
        lobby_id = await _create(coordinator, host)

        await _send(coordinator, guest, "join_random_lobby")

        assert guest_ws.last("lobby_joined")["data"]["id"] == lobby_id
        assert guest.lobby_id == lobby_id
        coordinator.timer.stop_all()

    @pytest.mark.asyncio
    async def test_skips_full_and_finished_lobbies(
        self, coordinator: LobbyCoordinator, lobby_repo: FakeLobbyRepository,
    ) -> None:
        host, _ = await _connect(coordinator)
        other, _ = await _connect(coordinator)
        guest, guest_ws = await _connect(coordinator)
        full_id = await _create(coordinator, host, name="Full", capacity=1)
        done_id = await _create(coordinator, other, name="Done")
        lobby_repo.lobbies[done_id]["status"] = "finished"

        await _send(coordinator, guest, "join_random_lobby")

        joined = guest_ws.last("lobby_joined")["data"]
        assert joined["id"] not in (full_id, done_id)
        assert joined["name"] == "Random Lobby"
        coordinator.timer.stop_all()


# ── 回答与表情 ────────────────────────────────────────────────────────

class TestAnswers:
    """测试回答、表情与回复。"""

    @pytest.mark.asyncio
    async def test_trivia_scenario(
        self, coordinator: LobbyCoordinator, lobby_repo: FakeLobbyRepository,
    ) -> None:
        """容量 4，H + P2 + P3；P2 回答 "42"，H 点赞后离开。"""
        host, _ = await _connect(coordinator)
        p2, p2_ws = await _connect(coordinator)
        p3, p3_ws = await _connect(coordinator)
        lobby_id = await _create(coordinator, host, capacity=4)
        await _send(coordinator, p2, "join_lobby", lobbyId=lobby_id)
        await _send(coordinator, p3, "join_lobby", data={"lobbyId": lobby_id})

        await _send(
            coordinator, p2, "submit_answer",
            data={"lobbyId": lobby_id, "content": "42", "questionIndex": 0},
        )
        submitted = p3_ws.last("answer_submitted")["data"]
        assert submitted["content"] == "42"
        assert submitted["user"]["id"] == p2.id

        await _send(
            coordinator, host, "add_reaction",
            data={"answerId": submitted["id"], "reactionType": "upvote", "isRemove": False},
        )
        assert p2_ws.last("answer_updated")["data"]["reactions"] == [{"type": "upvote", "count": 1}]

        await _send(coordinator, host, "leave_lobby", lobbyId=lobby_id)

        lobby = lobby_repo.lobbies[lobby_id]
        assert lobby["host_id"] in (p2.id, p3.id)
        assert lobby["current_players"] == 2
        remaining = await coordinator.aggregator.list(lobby_id, 0)
        assert [a.content for a in remaining] == ["42"]
        assert remaining[0].reaction_count("upvote") == 1
        coordinator.timer.stop_all()

    @pytest.mark.asyncio
    async def test_submit_to_closed_question_rejected(self, coordinator: LobbyCoordinator) -> None:
        host, _ = await _connect(coordinator)
        lobby_id = await _create(coordinator, host)

        with pytest.raises(ValidationFailed, match="closed"):
            await _send(coordinator, host, "submit_answer", lobbyId=lobby_id, content="late", questionIndex=1)
        coordinator.timer.stop_all()

    @pytest.mark.asyncio
    async def test_submit_to_finished_lobby_rejected(
        self, coordinator: LobbyCoordinator, lobby_repo: FakeLobbyRepository,
    ) -> None:
        host, _ = await _connect(coordinator)
        lobby_id = await _create(coordinator, host)
        coordinator.timer.stop(lobby_id)
        lobby_repo.lobbies[lobby_id]["status"] = "finished"

        with pytest.raises(ValidationFailed):
            await _send(coordinator, host, "submit_answer", lobbyId=lobby_id, content="x", questionIndex=0)

    @pytest.mark.asyncio
    async def test_reaction_falls_back_to_answer_lobby(self, coordinator: LobbyCoordinator) -> None:
        """发送者不在任何房间时，广播给回答所属房间。"""
        host, host_ws = await _connect(coordinator)
        outsider, outsider_ws = await _connect(coordinator)
        lobby_id = await _create(coordinator, host)
        await _send(coordinator, host, "submit_answer", lobbyId=lobby_id, content="hi", questionIndex=0)
        answer_id = host_ws.last("answer_submitted")["data"]["id"]

        await _send(coordinator, outsider, "add_reaction", answerId=answer_id, reactionType="laugh")

        assert host_ws.last("answer_updated")["data"]["reactions"] == [{"type": "laugh", "count": 1}]
        assert outsider_ws.of_type("answer_updated") == []
        coordinator.timer.stop_all()

    @pytest.mark.asyncio
    async def test_add_reply_requires_lobby(self, coordinator: LobbyCoordinator) -> None:
        session, _ = await _connect(coordinator)

        with pytest.raises(ValidationFailed):
            await _send(coordinator, session, "add_reply", data={"answerId": "a", "content": "hi"})

    @pytest.mark.asyncio
    async def test_add_and_submit_reply(self, coordinator: LobbyCoordinator) -> None:
        host, host_ws = await _connect(coordinator)
        lobby_id = await _create(coordinator, host)
        await _send(coordinator, host, "submit_answer", lobbyId=lobby_id, content="hi", questionIndex=0)
        answer_id = host_ws.last("answer_submitted")["data"]["id"]

        await _send(coordinator, host, "add_reply", data={"answerId": answer_id, "content": "one"})
        await _send(coordinator, host, "submit_reply", lobbyId=lobby_id, answerId=answer_id, content="two")

        replies = host_ws.last("answer_updated")["data"]["replies"]
        assert [r["content"] for r in replies] == ["one", "two"]
        assert replies[0]["player_id"] == host.id
        coordinator.timer.stop_all()

    @pytest.mark.asyncio
    async def test_change_question(
        self, coordinator: LobbyCoordinator, answer_repo: FakeAnswerRepository,
    ) -> None:
        host, host_ws = await _connect(coordinator)
        lobby_id = await _create(coordinator, host)
        await _send(coordinator, host, "submit_answer", lobbyId=lobby_id, content="hi", questionIndex=0)

        await _send(coordinator, host, "change_question", lobbyId=lobby_id, questionIndex=0)

        assert answer_repo.answers == {}
        assert host_ws.last("question_changed")["data"] == {"questionIndex": 0, "answers": []}
        coordinator.timer.stop_all()


# ── 独立回复 / 用户 / 转发 ────────────────────────────────────────────

class TestRepliesAndUsers:
    """测试独立回复记录、用户查询与未知消息转发。"""

    @pytest.mark.asyncio
    async def test_reply_records(self, coordinator: LobbyCoordinator) -> None:
        author, author_ws = await _connect(coordinator)
        other, other_ws = await _connect(coordinator)

        await _send(coordinator, author, "create_reply", answerId="A", content="hello")
        created = author_ws.last("reply_created")["data"]
        assert created["answerId"] == "A"
        assert created["playerId"] == author.id
        assert other_ws.of_type("reply_created") == []

        await _send(coordinator, other, "get_replies", answerId="A")
        assert [r["content"] for r in other_ws.last("replies")["data"]] == ["hello"]

        with pytest.raises(NotFound):
            await _send(coordinator, other, "delete_reply", replyId=created["id"])

        await _send(coordinator, author, "delete_reply", replyId=created["id"])
        assert author_ws.last("reply_deleted")["data"] == {"replyId": created["id"]}

    @pytest.mark.asyncio
    async def test_reply_created_broadcast_to_lobby(self, coordinator: LobbyCoordinator) -> None:
        host, _ = await _connect(coordinator)
        guest, guest_ws = await _connect(coordinator)
        lobby_id = await _create(coordinator, host)
        await _send(coordinator, guest, "join_lobby", lobbyId=lobby_id)

        await _send(coordinator, host, "create_reply", answerId="A", content="hey")

        assert guest_ws.last("reply_created")["data"]["content"] == "hey"
        coordinator.timer.stop_all()

    @pytest.mark.asyncio
    async def test_get_user_info(self, coordinator: LobbyCoordinator) -> None:
        asker, asker_ws = await _connect(coordinator)
        target, _ = await _connect(coordinator)

        await _send(coordinator, asker, "get_user_info", data={"userId": target.id})

        assert asker_ws.last("user_info")["data"]["id"] == target.id
        with pytest.raises(NotFound, match="User not found: nobody"):
            await _send(coordinator, asker, "get_user_info", data={"userId": "nobody"})

    @pytest.mark.asyncio
    async def test_unknown_type_relayed(self, coordinator: LobbyCoordinator) -> None:
        sender, sender_ws = await _connect(coordinator)
        _, other_ws = await _connect(coordinator)
        sender_ws.clear()

        await _send(coordinator, sender, "chat", text="hi all")

        relayed = other_ws.last("message")
        assert relayed["sender"] == sender.id
        assert relayed["data"] == {"type": "chat", "text": "hi all"}
        assert sender_ws.sent == []

    def test_failure_messages(self) -> None:
        assert failure_message("create_lobby") == "Failed to create lobby"
        assert failure_message("add_reaction") == "Failed to manage reaction"
        assert failure_message("") == "Invalid message format"
