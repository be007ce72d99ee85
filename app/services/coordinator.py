"""
app.services.coordinator
~~~~~~~~~~~~~~~~~~~~~~~~

房间会话协调器 —— 把入站消息分派到各个服务，并把结果广播给相关会话。

协调器本身不持有任何业务状态，它只负责把下列组件串起来::

    Gateway ──► LobbyCoordinator.dispatch()
                  ├── LobbyManager      （房间 / 成员）
                  ├── QuestionTimer     （倒计时 / 换题）
                  ├── AnswerAggregator  （回答 / 表情 / 回复）
                  ├── ReplyService      （独立回复记录）
                  └── BroadcastRouter   （按房间广播）

同一次操作内：先直接回复发起者，再广播给其他人。
断开连接与主动离开走完全相同的状态迁移。
"""
from __future__ import annotations

import random
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from app.core.exceptions import LobbyError, LobbyFull, NotFound, StoreFailure, ValidationFailed
from app.core.logging import get_logger
from app.schemas.envelopes import (
    AddReactionRequest,
    AddReplyRequest,
    ChangeQuestionRequest,
    CreateLobbyRequest,
    CreateReplyRequest,
    DeleteReplyRequest,
    GetRepliesRequest,
    GetUserInfoRequest,
    JoinLobbyRequest,
    LeaveLobbyRequest,
    ServerEvent,
    SubmitAnswerRequest,
    SubmitReplyRequest,
    parse_request,
)
from app.schemas.game import Lobby
from app.services.answer_service import AnswerAggregator
from app.services.broadcaster import BroadcastRouter
from app.services.connection import ConnectionRegistry, Session
from app.services.lobby_manager import LobbyManager
from app.services.profile import ProfileDirectory
from app.services.question_timer import QuestionTimer
from app.services.reply_service import ReplyService

logger = get_logger(__name__)

Handler = Callable[[Session, dict[str, Any]], Awaitable[None]]

# 非业务异常时回给发起者的通用提示
FAILURE_MESSAGES: dict[str, str] = {
    "create_lobby": "Failed to create lobby",
    "join_random_lobby": "Failed to join random lobby",
    "join_lobby": "Failed to join lobby",
    "leave_lobby": "Failed to leave lobby",
    "submit_answer": "Failed to submit answer",
    "add_reaction": "Failed to manage reaction",
    "add_reply": "Failed to add reply",
    "submit_reply": "Failed to submit reply",
    "get_replies": "Failed to get replies",
    "create_reply": "Failed to create reply",
    "delete_reply": "Failed to delete reply",
    "get_user_info": "Failed to get user info",
    "change_question": "Failed to change question",
}


def failure_message(kind: str) -> str:
    return FAILURE_MESSAGES.get(kind, "Invalid message format")


class LobbyCoordinator:
    """房间会话协调器。

    Attributes:
        registry: 连接注册表。
        profiles: 玩家资料目录。
        broadcaster: 广播路由。
        manager: 房间生命周期管理器。
        timer: 题目计时器。
        aggregator: 回答聚合服务。
        replies: 独立回复服务。
        question_duration: 每道题的秒数。
        random_lobby_name: 随机匹配找不到房间时新建房间的名称。
        random_lobby_capacity: 随机匹配新建房间的容量。
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        profiles: ProfileDirectory,
        broadcaster: BroadcastRouter,
        manager: LobbyManager,
        timer: QuestionTimer,
        aggregator: AnswerAggregator,
        replies: ReplyService,
        question_duration: int = 60,
        random_lobby_name: str = "Random Lobby",
        random_lobby_capacity: int = 10,
        rng: random.Random | None = None,
    ) -> None:
        self.registry = registry
        self.profiles = profiles
        self.broadcaster = broadcaster
        self.manager = manager
        self.timer = timer
        self.aggregator = aggregator
        self.replies = replies
        self.question_duration = question_duration
        self.random_lobby_name = random_lobby_name
        self.random_lobby_capacity = random_lobby_capacity
        self._rng = rng or random.Random()
        self._handlers: dict[str, Handler] = {
            "create_lobby": self._create_lobby,
            "join_random_lobby": self._join_random_lobby,
            "join_lobby": self._join_lobby,
            "leave_lobby": self._leave_lobby,
            "submit_answer": self._submit_answer,
            "add_reaction": self._add_reaction,
            "add_reply": self._add_reply,
            "submit_reply": self._submit_reply,
            "get_replies": self._get_replies,
            "create_reply": self._create_reply,
            "delete_reply": self._delete_reply,
            "get_user_info": self._get_user_info,
            "change_question": self._change_question,
        }

    # ── 连接生命周期 ──────────────────────────────────────────────────

    async def on_connect(self, websocket: WebSocket) -> Session:
        """登记新连接，生成玩家资料并推送 ``user_info``。"""
        session = await self.registry.connect(websocket)
        profile = self.profiles.get_or_create(session.id)
        await self.broadcaster.send(session, ServerEvent(type="user_info", data=profile))
        return session

    async def on_disconnect(self, session: Session) -> None:
        """连接断开：按主动离开处理所在房间，然后回收会话与资料。"""
        try:
            if session.lobby_id is not None:
                await self._depart(session, session.lobby_id)
        except LobbyError as e:
            logger.error("断开连接时离开房间失败 | session=%s | error=%s", session.id, e.message)
        finally:
            self.registry.disconnect(session.id)
            self.profiles.remove(session.id)

    # ── 分派 ──────────────────────────────────────────────────────────

    async def dispatch(self, session: Session, envelope: dict[str, Any]) -> None:
        """按 ``type`` 分派一条入站消息；未知类型原样转发给其他会话。

        Raises:
            LobbyError: 业务异常，由网关转换为 ``error`` 事件回给发起者。
        """
        kind = envelope["type"]
        handler = self._handlers.get(kind)
        if handler is None:
            await self._relay(session, envelope)
            return
        logger.debug("处理消息 | session=%s | type=%s", session.id, kind)
        await handler(session, envelope)

    async def _relay(self, session: Session, envelope: dict[str, Any]) -> None:
        event = ServerEvent(type="message", data=envelope, sender=session.id)
        await self.broadcaster.broadcast_except(event, session.id)

    # ── 房间 ──────────────────────────────────────────────────────────

    async def _create_lobby(self, session: Session, envelope: dict[str, Any]) -> None:
        request = parse_request(CreateLobbyRequest, envelope)
        if session.lobby_id is not None:
            await self._depart(session, session.lobby_id)
        lobby = await self.manager.create_lobby(request.name, request.capacity, session.id)
        await self._host(session, lobby, "lobby_created", lobby)

    async def _join_random_lobby(self, session: Session, envelope: dict[str, Any]) -> None:
        lobbies = await self.manager.get_lobbies()
        candidates = [lobby for lobby in lobbies if lobby.status == "waiting" and not lobby.is_full]
        self._rng.shuffle(candidates)

        for candidate in candidates:
            try:
                await self._enter_lobby(session, candidate.id)
                return
            except (LobbyFull, NotFound) as e:
                # 列表读取之后房间被占满或被删除，换下一个
                logger.debug("随机房间不可用 | lobby=%s | reason=%s", candidate.id, e.message)

        if session.lobby_id is not None:
            await self._depart(session, session.lobby_id)
        lobby = await self.manager.create_lobby(
            self.random_lobby_name, self.random_lobby_capacity, session.id,
        )
        logger.info("没有可加入的房间，新建随机房间 | lobby=%s | session=%s", lobby.id, session.id)
        await self._host(session, lobby, "lobby_joined", {**jsonable_encoder(lobby), "existingAnswers": []})

    async def _join_lobby(self, session: Session, envelope: dict[str, Any]) -> None:
        request = parse_request(JoinLobbyRequest, envelope)
        await self._enter_lobby(session, request.lobby_id)

    async def _leave_lobby(self, session: Session, envelope: dict[str, Any]) -> None:
        request = parse_request(LeaveLobbyRequest, envelope)
        lobby = await self._depart(session, request.lobby_id, reply=True)
        if lobby is None:
            await self.broadcaster.send(session, ServerEvent(type="lobby_updated", data=None))

    async def _host(self, session: Session, lobby: Lobby, reply_type: str, reply_data: Any) -> None:
        """新建房间后的公共流程：归属会话、启动计时器、回复并向全体广播。"""
        self.registry.attach(session.id, lobby.id)
        self.timer.start(lobby.id, self.question_duration, len(lobby.questions))
        await self.broadcaster.send(session, ServerEvent(type=reply_type, data=reply_data))
        await self.broadcaster.broadcast(ServerEvent(type="lobby_updated", data=lobby))

    async def _enter_lobby(self, session: Session, lobby_id: str) -> None:
        """加入流程：离开旧房间、加入新房间、下发已有回答与计时状态。"""
        if session.lobby_id is not None and session.lobby_id != lobby_id:
            await self._depart(session, session.lobby_id)

        lobby = await self.manager.join_lobby(lobby_id, session.id)
        self.registry.attach(session.id, lobby.id)

        existing = await self.aggregator.list(lobby.id, lobby.current_question_index)
        await self.broadcaster.send(
            session,
            ServerEvent(type="lobby_joined", data={**jsonable_encoder(lobby), "existingAnswers": existing}),
        )
        await self.broadcaster.broadcast(ServerEvent(type="lobby_updated", data=lobby), lobby.id)

        if not self.timer.is_running(lobby.id) and lobby.status != "finished":
            self.timer.start(
                lobby.id,
                self.question_duration,
                len(lobby.questions),
                start_index=lobby.current_question_index,
            )
        remaining = self.timer.remaining(lobby.id)
        if remaining is not None:
            await self.broadcaster.send(
                session, ServerEvent(type="timer_update", data={"timeRemaining": remaining}),
            )

    async def _depart(self, session: Session, lobby_id: str, reply: bool = False) -> Lobby | None:
        """离开流程（主动离开、切换房间与断开连接共用）。

        Args:
            session: 离开的会话。
            lobby_id: 要离开的房间。
            reply: 是否向离开者回一条 ``lobby_updated``。

        Returns:
            离开后的房间；房间已不存在时为 None。
        """
        lobby = await self.manager.leave_lobby(lobby_id, session.id)
        if session.lobby_id == lobby_id:
            self.registry.attach(session.id, None)

        remaining = lobby.current_players if lobby is not None else 0
        if remaining == 0:
            self.timer.stop(lobby_id)

        await self.broadcaster.broadcast(
            ServerEvent(type="lobby_players_updated", data={"lobbyId": lobby_id, "playerCount": remaining}),
            lobby_id,
        )
        if lobby is not None:
            if reply:
                await self.broadcaster.send(session, ServerEvent(type="lobby_updated", data=lobby))
            await self.broadcaster.broadcast(ServerEvent(type="lobby_updated", data=lobby), lobby_id)
        return lobby

    # ── 回答 ──────────────────────────────────────────────────────────

    async def _submit_answer(self, session: Session, envelope: dict[str, Any]) -> None:
        request = parse_request(SubmitAnswerRequest, envelope)
        open_index = await self._open_question_index(request.lobby_id)
        if open_index != request.question_index:
            raise ValidationFailed("Question is closed")

        answer = await self.aggregator.submit(
            request.lobby_id, session.id, request.content, request.question_index,
        )
        await self._touch(request.lobby_id)
        profile = self.profiles.get_or_create(session.id)
        await self.broadcaster.broadcast(
            ServerEvent(type="answer_submitted", data={**jsonable_encoder(answer), "user": profile}),
            request.lobby_id,
        )

    async def _open_question_index(self, lobby_id: str) -> int | None:
        """当前可以作答的题目下标；房间已结束时为 None。"""
        index = self.timer.current_index(lobby_id)
        if index is not None:
            return index
        lobby = await self.manager.get_lobby(lobby_id)
        if lobby.status == "finished" or lobby.current_question is None:
            return None
        return lobby.current_question_index

    async def _add_reaction(self, session: Session, envelope: dict[str, Any]) -> None:
        request = parse_request(AddReactionRequest, envelope)
        answer = await self.aggregator.add_reaction(
            request.answer_id, request.reaction_type, request.is_remove,
        )
        await self._touch(answer.lobby_id)
        await self.broadcaster.broadcast(
            ServerEvent(type="answer_updated", data=answer),
            session.lobby_id or answer.lobby_id,
        )

    async def _add_reply(self, session: Session, envelope: dict[str, Any]) -> None:
        request = parse_request(AddReplyRequest, envelope)
        if session.lobby_id is None:
            raise ValidationFailed("Not in a lobby")
        await self._reply_to_answer(session, session.lobby_id, request.answer_id, request.content)

    async def _submit_reply(self, session: Session, envelope: dict[str, Any]) -> None:
        request = parse_request(SubmitReplyRequest, envelope)
        await self._reply_to_answer(session, request.lobby_id, request.answer_id, request.content)

    async def _reply_to_answer(self, session: Session, lobby_id: str, answer_id: str, content: str) -> None:
        answer = await self.aggregator.add_reply(lobby_id, answer_id, session.id, content)
        await self._touch(lobby_id)
        await self.broadcaster.broadcast(ServerEvent(type="answer_updated", data=answer), lobby_id)

    async def _change_question(self, session: Session, envelope: dict[str, Any]) -> None:
        request = parse_request(ChangeQuestionRequest, envelope)
        await self.aggregator.close_question(request.lobby_id, request.question_index)
        await self.broadcaster.broadcast(
            ServerEvent(
                type="question_changed",
                data={"questionIndex": request.question_index, "answers": []},
            ),
            request.lobby_id,
        )

    # ── 独立回复记录 ──────────────────────────────────────────────────

    async def _get_replies(self, session: Session, envelope: dict[str, Any]) -> None:
        request = parse_request(GetRepliesRequest, envelope)
        replies = await self.replies.get_replies(request.answer_id)
        await self.broadcaster.send(session, ServerEvent(type="replies", data=replies))

    async def _create_reply(self, session: Session, envelope: dict[str, Any]) -> None:
        request = parse_request(CreateReplyRequest, envelope)
        reply = await self.replies.create_reply(request.answer_id, session.id, request.content)
        await self._notify_lobby_or_self(session, ServerEvent(type="reply_created", data=reply))

    async def _delete_reply(self, session: Session, envelope: dict[str, Any]) -> None:
        request = parse_request(DeleteReplyRequest, envelope)
        if not await self.replies.delete_reply(request.reply_id, session.id):
            raise NotFound("Reply not found")
        await self._notify_lobby_or_self(
            session, ServerEvent(type="reply_deleted", data={"replyId": request.reply_id}),
        )

    # ── 用户 ──────────────────────────────────────────────────────────

    async def _get_user_info(self, session: Session, envelope: dict[str, Any]) -> None:
        request = parse_request(GetUserInfoRequest, envelope)
        profile = self.profiles.get(request.user_id)
        if profile is None:
            raise NotFound(f"User not found: {request.user_id}")
        await self.broadcaster.send(session, ServerEvent(type="user_info", data=profile))

    # ── 工具 ──────────────────────────────────────────────────────────

    async def _notify_lobby_or_self(self, session: Session, event: ServerEvent) -> None:
        if session.lobby_id is not None:
            await self.broadcaster.broadcast(event, session.lobby_id)
        else:
            await self.broadcaster.send(session, event)

    async def _touch(self, lobby_id: str) -> None:
        # 活跃度刷新失败不影响本次操作
        try:
            await self.manager.touch(lobby_id)
        except StoreFailure as e:
            logger.warning("刷新房间活跃时间失败 | lobby=%s | error=%s", lobby_id, e.message)
