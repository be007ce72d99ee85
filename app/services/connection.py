"""
app.services.connection
~~~~~~~~~~~~~~~~~~~~~~~

连接注册表 —— 维护会话 ID 到 WebSocket 连接的映射，以及每个会话当前所在的房间。

注册表在进程启动时创建、挂载到 ``app.state``，连接断开时移除对应条目。
会话只在内存中存在，进程重启后不会恢复。
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass

from fastapi import WebSocket

from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Session:
    """一条在线连接。

    Attributes:
        id: 会话 ID，同时作为玩家 ID 使用。
        websocket: 底层 WebSocket 连接。
        lobby_id: 当前所在房间，未进入任何房间时为 None。
    """

    id: str
    websocket: WebSocket
    lobby_id: str | None = None


class ConnectionRegistry:
    """连接注册表。

    Attributes:
        sessions: 会话 ID → ``Session``。
    """

    def __init__(self) -> None:
        self.sessions: dict[str, Session] = {}

    async def connect(self, websocket: WebSocket) -> Session:
        """接受新连接并分配会话 ID。"""
        await websocket.accept()
        session = Session(id=uuid.uuid4().hex, websocket=websocket)
        self.sessions[session.id] = session
        logger.info("新连接 | session=%s | 在线: %d", session.id, self.online_count)
        return session

    def disconnect(self, session_id: str) -> Session | None:
        """移除会话，返回被移除的会话（不存在时为 None）。"""
        session = self.sessions.pop(session_id, None)
        if session is not None:
            logger.info("连接断开 | session=%s | 在线: %d", session_id, self.online_count)
        return session

    def get(self, session_id: str) -> Session | None:
        return self.sessions.get(session_id)

    def attach(self, session_id: str, lobby_id: str | None) -> None:
        """把会话归属到指定房间（None 表示离开房间）。"""
        session = self.sessions.get(session_id)
        if session is not None:
            session.lobby_id = lobby_id

    def detach_lobby(self, lobby_id: str) -> list[Session]:
        """把所有归属于该房间的会话置为无房间，返回受影响的会话。"""
        affected = self.sessions_in(lobby_id)
        for session in affected:
            session.lobby_id = None
        return affected

    def sessions_in(self, lobby_id: str | None) -> list[Session]:
        """返回归属于指定房间的会话；lobby_id 为 None 时返回全部会话。"""
        if lobby_id is None:
            return list(self.sessions.values())
        return [s for s in self.sessions.values() if s.lobby_id == lobby_id]

    @property
    def online_count(self) -> int:
        """当前在线连接数。"""
        return len(self.sessions)
