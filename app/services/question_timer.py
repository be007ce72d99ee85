"""
app.services.question_timer
~~~~~~~~~~~~~~~~~~~~~~~~~~~

每个房间一个的答题倒计时。

计时器是唯一一处"非请求触发"的后台工作：每个房间对应一个 ``asyncio.Task``，
按 ``tick_seconds`` 心跳递减剩余秒数并广播 ``timer_update``；归零时关闭当前题目
（删除该题全部回答）、推进到下一题、重置倒计时并广播 ``question_changed``。

题目全部结束后房间状态变为 ``finished``，计时器自动停止。

心跳在每个 await 之后都会确认自己持有的状态仍是该房间当前的计时器，
期间被 ``stop()`` 或重新 ``start()`` 的旧心跳直接放弃。
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass

from app.core.exceptions import StoreFailure
from app.core.logging import get_logger
from app.db.answer_repository import AnswerRepository
from app.schemas.envelopes import ServerEvent
from app.services.broadcaster import BroadcastRouter
from app.services.lobby_manager import LobbyManager

logger = get_logger(__name__)


@dataclass
class TimerState:
    """单个房间的计时器状态（只存在于内存）。"""

    duration: int
    remaining: int
    question_index: int = 0
    question_count: int | None = None
    task: asyncio.Task[None] | None = None


class QuestionTimer:
    """房间答题计时器。

    Attributes:
        answers: 回答仓库，题目结束时删除该题回答。
        lobbies: 房间管理器，同步题目下标与结束状态。
        broadcaster: 广播路由。
        tick_seconds: 心跳间隔。
    """

    def __init__(
        self,
        answers: AnswerRepository,
        lobbies: LobbyManager,
        broadcaster: BroadcastRouter,
        tick_seconds: float = 1.0,
    ) -> None:
        self.answers = answers
        self.lobbies = lobbies
        self.broadcaster = broadcaster
        self.tick_seconds = tick_seconds
        self._timers: dict[str, TimerState] = {}

    def start(
        self,
        lobby_id: str,
        duration: int,
        question_count: int | None = None,
        start_index: int = 0,
    ) -> None:
        """启动（或重启）房间计时器。

        Args:
            lobby_id: 房间 ID。
            duration: 每道题的秒数。
            question_count: 题目总数；为 None 时不做越界检查。
            start_index: 起始题目下标（房间记录里同步的下标，新房间为 0）。
        """
        self.stop(lobby_id)
        state = TimerState(
            duration=duration,
            remaining=duration,
            question_index=start_index,
            question_count=question_count,
        )
        self._timers[lobby_id] = state
        state.task = asyncio.create_task(self._run(lobby_id, state), name=f"question-timer-{lobby_id}")
        logger.info("计时器启动 | lobby=%s | duration=%ds | questions=%s", lobby_id, duration, question_count)

    def stop(self, lobby_id: str) -> bool:
        """停止并丢弃房间计时器，返回之前是否在运行。"""
        state = self._timers.pop(lobby_id, None)
        if state is None:
            return False
        if state.task is not None and state.task is not _current_task():
            state.task.cancel()
        logger.info("计时器停止 | lobby=%s", lobby_id)
        return True

    def stop_all(self) -> None:
        """停止全部计时器（应用关闭时调用）。"""
        for lobby_id in list(self._timers):
            self.stop(lobby_id)

    def is_running(self, lobby_id: str) -> bool:
        return lobby_id in self._timers

    def remaining(self, lobby_id: str) -> int | None:
        state = self._timers.get(lobby_id)
        return state.remaining if state is not None else None

    def current_index(self, lobby_id: str) -> int | None:
        state = self._timers.get(lobby_id)
        return state.question_index if state is not None else None

    def __len__(self) -> int:
        return len(self._timers)

    async def tick(self, lobby_id: str) -> None:
        """手动执行一次心跳（后台任务按间隔调用同一逻辑）。"""
        state = self._timers.get(lobby_id)
        if state is not None:
            await self._tick(lobby_id, state)

    async def _run(self, lobby_id: str, state: TimerState) -> None:
        while self._timers.get(lobby_id) is state:
            await asyncio.sleep(self.tick_seconds)
            try:
                await self._tick(lobby_id, state)
            except Exception as e:
                logger.error("计时器心跳异常 | lobby=%s | error=%s", lobby_id, e, exc_info=True)

    async def _tick(self, lobby_id: str, state: TimerState) -> None:
        if self._timers.get(lobby_id) is not state:
            return

        remaining = state.remaining - 1
        if remaining > 0:
            state.remaining = remaining
            await self.broadcaster.broadcast(
                ServerEvent(type="timer_update", data={"timeRemaining": remaining}),
                lobby_id,
            )
            return

        closing = state.question_index
        try:
            await self.answers.delete_for_question(lobby_id, closing)
        except StoreFailure as e:
            # 状态保持不变，下一次心跳会重试本次收尾
            logger.error("题目收尾失败，下次心跳重试 | lobby=%s | question=%d | error=%s", lobby_id, closing, e.message)
            return

        if self._timers.get(lobby_id) is not state:
            return

        next_index = closing + 1
        finished = state.question_count is not None and next_index >= state.question_count
        if finished:
            await self._finish(lobby_id, state, next_index)
            return

        state.question_index = next_index
        state.remaining = state.duration
        try:
            if await self.lobbies.set_question_index(lobby_id, next_index) is None:
                logger.info("房间已不存在，停止计时器 | lobby=%s", lobby_id)
                self.stop(lobby_id)
        except StoreFailure as e:
            logger.warning("同步题目下标失败 | lobby=%s | question=%d | error=%s", lobby_id, next_index, e.message)

        await self._announce(lobby_id, next_index)

    async def _finish(self, lobby_id: str, state: TimerState, final_index: int) -> None:
        """最后一题结束：先持久化 finished 状态，成功后才移除计时器。"""
        try:
            lobby = await self.lobbies.set_question_index(lobby_id, final_index, status="finished")
        except StoreFailure as e:
            # 计时器保持在最后一题，下一次心跳重试
            logger.error("房间结束状态写入失败，下次心跳重试 | lobby=%s | error=%s", lobby_id, e.message)
            return

        if self._timers.get(lobby_id) is state:
            self._timers.pop(lobby_id)
        state.question_index = final_index

        await self._announce(lobby_id, final_index)
        logger.info("题目全部结束 | lobby=%s", lobby_id)
        if lobby is not None:
            await self.broadcaster.broadcast(ServerEvent(type="lobby_updated", data=lobby), lobby_id)

    async def _announce(self, lobby_id: str, index: int) -> None:
        await self.broadcaster.broadcast(
            ServerEvent(type="question_changed", data={"questionIndex": index, "answers": []}),
            lobby_id,
        )
        logger.info("切换题目 | lobby=%s | question=%d", lobby_id, index)


def _current_task() -> asyncio.Task[object] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
