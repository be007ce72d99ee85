"""
app.services.reply_service
~~~~~~~~~~~~~~~~~~~~~~~~~~

独立回复记录的增删查。

回复记录挂在回答下，回答随题目结束或房间回收被删除后，
对应的回复由清理任务通过 ``cleanup_orphaned_replies()`` 一并回收。
"""
from __future__ import annotations

from app.core.logging import get_logger
from app.db.answer_repository import AnswerRepository
from app.db.reply_repository import ReplyRepository
from app.schemas.game import ReplyRecord

logger = get_logger(__name__)


class ReplyService:

    def __init__(self, replies: ReplyRepository, answers: AnswerRepository) -> None:
        self.replies = replies
        self.answers = answers

    async def create_reply(self, answer_id: str, player_id: str, content: str) -> ReplyRecord:
        doc = await self.replies.insert_reply(answer_id, player_id, content)
        logger.info("创建回复 | answer=%s | player=%s | reply=%s", answer_id, player_id, doc["id"])
        return ReplyRecord.model_validate(doc)

    async def get_replies(self, answer_id: str) -> list[ReplyRecord]:
        """按时间正序返回回答下的全部回复。"""
        return [ReplyRecord.model_validate(doc) for doc in await self.replies.list_for_answer(answer_id)]

    async def delete_reply(self, reply_id: str, player_id: str) -> bool:
        """只允许作者删除自己的回复，返回是否删除成功。"""
        deleted = await self.replies.delete_reply(reply_id, player_id)
        if deleted:
            logger.info("删除回复 | reply=%s | player=%s", reply_id, player_id)
        return deleted

    async def cleanup_orphaned_replies(self) -> int:
        """删除所属回答已不存在的回复记录，返回删除条数。"""
        live_ids = await self.answers.list_answer_ids()
        removed = await self.replies.delete_orphans(live_ids)
        if removed:
            logger.info("清理孤立回复 | count=%d", removed)
        return removed
