"""
app.services.broadcaster
~~~~~~~~~~~~~~~~~~~~~~~~

广播路由 —— 把事件投递给某个房间内的全部会话，或全部在线会话。

投递是"发出即忘"的：单个连接发送失败只记日志，不影响其他连接，
也不会向调用方抛出。失败的连接由它自己的断开流程清理。
"""
from __future__ import annotations

import asyncio

from app.core.logging import get_logger
from app.schemas.envelopes import ServerEvent
from app.services.connection import ConnectionRegistry, Session

logger = get_logger(__name__)


class BroadcastRouter:
    """按房间归属投递事件。

    Attributes:
        registry: 连接注册表，决定每个会话当前归属的房间。
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    async def send(self, session: Session, event: ServerEvent) -> bool:
        """向单个会话发送事件（直接回复），返回是否发送成功。"""
        try:
            await session.websocket.send_text(event.to_json())
        except Exception as e:
            logger.warning("发送失败 | session=%s | type=%s | error=%s", session.id, event.type, e)
            return False
        return True

    async def broadcast(self, event: ServerEvent, lobby_id: str | None = None) -> int:
        """向房间内全部会话广播；lobby_id 为 None 时广播给所有在线会话。

        Returns:
            成功送达的会话数。
        """
        return await self.deliver(event, self.registry.sessions_in(lobby_id))

    async def broadcast_except(self, event: ServerEvent, session_id: str) -> int:
        """向除 session_id 以外的全部在线会话广播。"""
        targets = [s for s in self.registry.sessions_in(None) if s.id != session_id]
        return await self.deliver(event, targets)

    async def deliver(self, event: ServerEvent, targets: list[Session]) -> int:
        """并发发送给指定会话列表，返回成功送达数。"""
        if not targets:
            return 0
        message = event.to_json()
        results = await asyncio.gather(
            *(s.websocket.send_text(message) for s in targets),
            return_exceptions=True,
        )
        delivered = 0
        for session, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(
                    "广播失败 | session=%s | type=%s | error=%s",
                    session.id, event.type, result,
                )
            else:
                delivered += 1
        return delivered
