"""
app.services.cleanup
~~~~~~~~~~~~~~~~~~~~

后台清理任务 —— 定期回收过期 / 空置房间、孤立回答与孤立回复。

清理只在后台循环里运行，绝不出现在请求路径上。每个被删除的房间：
停止计时器、把仍挂在该房间的会话置为无房间，并向它们推送 ``lobby_updated``（data 为 null）。
"""
from __future__ import annotations

import asyncio
import contextlib

from app.core.exceptions import StoreFailure
from app.core.logging import get_logger
from app.schemas.envelopes import ServerEvent
from app.services.broadcaster import BroadcastRouter
from app.services.connection import ConnectionRegistry
from app.services.lobby_manager import LobbyManager
from app.services.question_timer import QuestionTimer
from app.services.reply_service import ReplyService

logger = get_logger(__name__)


class LobbySweeper:
    """定期清理房间的后台任务。

    Attributes:
        manager: 房间管理器，负责实际的查询与删除。
        timer: 题目计时器，被删除房间的计时器需要停止。
        registry: 连接注册表。
        broadcaster: 广播路由。
        replies: 可选，独立回复服务，用于回收孤立回复。
        interval_seconds: 两次清理之间的间隔。
    """

    def __init__(
        self,
        manager: LobbyManager,
        timer: QuestionTimer,
        registry: ConnectionRegistry,
        broadcaster: BroadcastRouter,
        replies: ReplyService | None = None,
        interval_seconds: float = 120.0,
    ) -> None:
        self.manager = manager
        self.timer = timer
        self.registry = registry
        self.broadcaster = broadcaster
        self.replies = replies
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None

    async def run_once(self) -> list[str]:
        """执行一轮清理，返回本轮删除的房间 ID。"""
        deleted: list[str] = []
        for sweep in (self.manager.cleanup_stale_lobbies, self.manager.cleanup_idle_lobbies):
            try:
                deleted.extend(await sweep())
            except StoreFailure as e:
                logger.error("房间清理失败 | sweep=%s | error=%s", sweep.__name__, e.message)

        for lobby_id in deleted:
            await self._release(lobby_id)

        try:
            await self.manager.cleanup_orphaned_answers()
        except StoreFailure as e:
            logger.error("孤立回答清理失败 | error=%s", e.message)

        if self.replies is not None:
            try:
                await self.replies.cleanup_orphaned_replies()
            except StoreFailure as e:
                logger.error("孤立回复清理失败 | error=%s", e.message)

        return deleted

    async def _release(self, lobby_id: str) -> None:
        self.timer.stop(lobby_id)
        sessions = self.registry.detach_lobby(lobby_id)
        if sessions:
            await self.broadcaster.deliver(ServerEvent(type="lobby_updated", data=None), sessions)
        logger.info("房间已回收 | lobby=%s | detached=%d", lobby_id, len(sessions))

    # ── 后台循环 ──────────────────────────────────────────────────────

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="lobby-sweeper")
            logger.info("清理任务已启动 | interval=%.0fs", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("清理任务已停止")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception as e:
                logger.error("清理任务异常 | error=%s", e, exc_info=True)
