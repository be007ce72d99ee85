"""
app.db.question_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~

题库仓库 —— 封装 MongoDB ``questions`` 集合，并负责从 YAML 种子文件导入题目。

随机抽题使用 ``$sample`` 聚合，同一次抽取内不会出现重复题目；
抽取结果在内存中再打乱一次，保证返回顺序与存储顺序无关。
"""
from __future__ import annotations

import random
import uuid
from pathlib import Path
from typing import Any

import yaml
from motor.motor_asyncio import AsyncIOMotorDatabase

from app.core.logging import get_logger
from app.db import store_errors, utc_now

logger = get_logger(__name__)

_COLLECTION_NAME = "questions"


def load_question_file(path: Path) -> list[dict[str, Any]]:
    """解析题库 YAML 文件。

    文件格式::

        themes:
          icebreaker:
            - "If you could have any superpower, what would it be?"
            - content: "Pick one: tea or coffee?"
              type: multiple_choice

    Args:
        path: YAML 文件路径。

    Returns:
        可直接写入 ``questions`` 集合的文档列表。
    """
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    docs: list[dict[str, Any]] = []
    for theme, entries in (data.get("themes") or {}).items():
        for entry in entries or []:
            if isinstance(entry, str):
                entry = {"content": entry}
            docs.append({
                "id": uuid.uuid4().hex,
                "content": entry["content"],
                "type": entry.get("type", "text"),
                "theme": theme,
                "created_at": utc_now(),
            })
    return docs


class QuestionRepository:
    """题库仓库。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase, rng: random.Random | None = None) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]
        self._rng = rng or random.Random()

    async def seed_from_file(self, path: Path) -> int:
        """题目集合为空时从种子文件导入题目，返回导入条数。"""
        with store_errors("count questions"):
            existing = await self._collection.count_documents({})
        if existing:
            logger.debug("题库已有 %d 道题，跳过导入", existing)
            return 0
        if not path.exists():
            logger.warning("题库种子文件不存在: %s", path)
            return 0

        docs = load_question_file(path)
        if not docs:
            return 0
        with store_errors("seed questions"):
            await self._collection.insert_many(docs)
        logger.info("题库已导入 | file=%s | count=%d", path.name, len(docs))
        return len(docs)

    async def get_random_questions(self, count: int) -> list[dict[str, Any]]:
        """随机抽取不重复的题目。

        Args:
            count: 期望数量；题库不足时返回全部可用题目。

        Returns:
            打乱顺序后的题目列表，字段为 ``id`` / ``content`` / ``type`` / ``theme``。
        """
        pipeline: list[dict[str, Any]] = [
            {"$sample": {"size": count}},
            {"$project": {"_id": 0, "id": 1, "content": 1, "type": 1, "theme": 1}},
        ]

        with store_errors("get random questions"):
            questions = await self._collection.aggregate(pipeline).to_list(length=None)
        self._rng.shuffle(questions)
        return questions
