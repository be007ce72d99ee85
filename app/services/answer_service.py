"""
app.services.answer_service
~~~~~~~~~~~~~~~~~~~~~~~~~~~

回答聚合 —— 提交回答、表情计数、楼中楼回复与排名。

排名在每次读取时重新计算（净得分降序，其次提交时间降序），
不维护任何回答缓存，存储是唯一的数据来源。
"""
from __future__ import annotations

import uuid
from collections.abc import Iterable
from typing import Any

from app.core.exceptions import NotFound, ValidationFailed
from app.core.locks import KeyedLocks
from app.core.logging import get_logger
from app.db import utc_now
from app.db.answer_repository import AnswerRepository
from app.schemas.game import REACTION_TYPES, Answer

logger = get_logger(__name__)


def apply_reaction(reactions: list[dict[str, Any]], kind: str, is_remove: bool) -> list[dict[str, Any]]:
    """返回应用一次表情增减后的新计数列表（不修改入参）。

    增加时不存在的类型以 1 新建；减少时计数到 0 即移除整条记录，
    对不存在的类型执行减少是空操作。
    """
    updated: list[dict[str, Any]] = []
    found = False
    for entry in reactions:
        if entry["type"] != kind:
            updated.append(dict(entry))
            continue
        found = True
        count = entry["count"] + (-1 if is_remove else 1)
        if count > 0:
            updated.append({"type": kind, "count": count})
    if not found and not is_remove:
        updated.append({"type": kind, "count": 1})
    return updated


def rank_answers(answers: Iterable[Answer]) -> list[Answer]:
    """按净得分降序、提交时间降序排列。"""
    return sorted(answers, key=lambda a: (a.net_score, a.created_at), reverse=True)


class AnswerAggregator:
    """回答聚合服务。

    Attributes:
        answers: 回答仓库。
    """

    def __init__(self, answers: AnswerRepository) -> None:
        self.answers = answers
        self._locks = KeyedLocks()

    async def submit(self, lobby_id: str, author_id: str, content: str, question_index: int) -> Answer:
        """保存一条回答，内容原样存储。"""
        doc = await self.answers.insert_answer(lobby_id, author_id, content, question_index)
        logger.info(
            "提交回答 | lobby=%s | question=%d | player=%s | answer=%s",
            lobby_id, question_index, author_id, doc["id"],
        )
        return Answer.model_validate(doc)

    async def get(self, answer_id: str) -> Answer:
        """按 ID 获取回答。

        Raises:
            NotFound: 回答不存在。
        """
        doc = await self.answers.find_answer(answer_id)
        if doc is None:
            raise NotFound("Answer not found")
        return Answer.model_validate(doc)

    async def add_reaction(self, answer_id: str, kind: str, is_remove: bool = False) -> Answer:
        """增减一次表情计数。计数不区分是谁点的。

        Raises:
            ValidationFailed: 未知的表情类型。
            NotFound: 回答不存在。
        """
        if kind not in REACTION_TYPES:
            raise ValidationFailed(f"Unknown reaction type: {kind}")

        async with self._locks.hold(answer_id):
            current = await self.answers.find_answer(answer_id)
            if current is None:
                raise NotFound("Answer not found")
            reactions = apply_reaction(current.get("reactions", []), kind, is_remove)
            doc = await self.answers.set_reactions(answer_id, reactions)
            if doc is None:
                raise NotFound("Answer not found")

        logger.debug("表情计数更新 | answer=%s | kind=%s | remove=%s", answer_id, kind, is_remove)
        return Answer.model_validate(doc)

    async def add_reply(self, lobby_id: str, answer_id: str, author_id: str, content: str) -> Answer:
        """在回答下追加一条回复。

        Raises:
            NotFound: 回答不存在，或不属于指定房间。
        """
        current = await self.answers.find_answer(answer_id)
        if current is None or current["lobby_id"] != lobby_id:
            raise NotFound("Answer not found")

        reply = {
            "id": uuid.uuid4().hex,
            "player_id": author_id,
            "content": content,
            "created_at": utc_now(),
        }
        doc = await self.answers.push_reply(answer_id, reply)
        if doc is None:
            raise NotFound("Answer not found")
        logger.info("追加回复 | lobby=%s | answer=%s | player=%s", lobby_id, answer_id, author_id)
        return Answer.model_validate(doc)

    async def list(self, lobby_id: str, question_index: int) -> list[Answer]:
        """返回某道题的回答，按排名排序。"""
        docs = await self.answers.list_answers(lobby_id, question_index)
        return rank_answers(Answer.model_validate(doc) for doc in docs)

    async def close_question(self, lobby_id: str, question_index: int) -> int:
        """删除某道题的全部回答，返回删除条数。"""
        removed = await self.answers.delete_for_question(lobby_id, question_index)
        logger.info("关闭题目 | lobby=%s | question=%d | removed=%d", lobby_id, question_index, removed)
        return removed
