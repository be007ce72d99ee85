"""
app.schemas.game
~~~~~~~~~~~~~~~~

房间、题目、回答、回复、用户资料等领域模型。

存储层统一使用 snake_case 字段；序列化到客户端时，
``Lobby`` 与 ``ReplyRecord`` 输出 camelCase（与前端约定一致），
``Answer`` 保持 snake_case。
"""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

LobbyStatus = Literal["waiting", "playing", "finished"]
ReactionType = Literal["upvote", "downvote", "laugh", "love", "wow"]
QuestionType = Literal["text", "multiple_choice"]

REACTION_TYPES: tuple[str, ...] = ("upvote", "downvote", "laugh", "love", "wow")


class _CamelModel(BaseModel):
    """以 camelCase 别名序列化、同时接受 snake_case 字段名的基类。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Question(BaseModel):
    """题库中的一道题。"""

    id: str = Field(..., description="题目唯一标识")
    content: str = Field(..., description="题目文本")
    type: QuestionType = Field(default="text", description="题型")
    theme: str = Field(default="general", description="题目主题")


class Lobby(_CamelModel):
    """房间记录。

    ``current_players`` 是成员记录数量的派生值，每次成员变动后都会重新统计，
    不能作为独立可信的计数使用。
    """

    id: str = Field(..., description="房间唯一标识")
    name: str = Field(..., description="房间名称")
    capacity: int = Field(..., description="房间容量")
    current_players: int = Field(default=0, description="当前成员数")
    host_id: str = Field(..., description="房主的会话 ID")
    status: LobbyStatus = Field(default="waiting", description="房间状态")
    questions: list[Question] = Field(default_factory=list, description="本房间的题目序列")
    current_question_index: int = Field(default=0, description="当前题目下标")
    created_at: datetime | None = Field(default=None, description="创建时间")
    updated_at: datetime | None = Field(default=None, description="最近更新时间")

    @property
    def is_full(self) -> bool:
        """房间是否已满。"""
        return self.current_players >= self.capacity

    @property
    def current_question(self) -> Question | None:
        """当前题目；下标越界（题目已全部结束）时返回 None。"""
        if 0 <= self.current_question_index < len(self.questions):
            return self.questions[self.current_question_index]
        return None


class Membership(BaseModel):
    """房间成员记录。存在即代表该玩家在房间内。"""

    lobby_id: str
    player_id: str
    joined_at: datetime


class Reaction(BaseModel):
    """某种表情反应的计数。计数归零时整条记录会被移除。"""

    type: ReactionType
    count: int = Field(..., ge=1)


class Reply(BaseModel):
    """回答下的一条楼中楼回复。"""

    id: str
    player_id: str
    content: str
    created_at: datetime


class Answer(BaseModel):
    """玩家针对某道题提交的回答。"""

    id: str
    lobby_id: str
    question_index: int
    player_id: str
    content: str
    created_at: datetime
    reactions: list[Reaction] = Field(default_factory=list)
    replies: list[Reply] = Field(default_factory=list)

    def reaction_count(self, kind: str) -> int:
        """返回指定类型反应的计数，不存在时为 0。"""
        for reaction in self.reactions:
            if reaction.type == kind:
                return reaction.count
        return 0

    @property
    def net_score(self) -> int:
        """净得分 = 点赞数 - 点踩数。"""
        return self.reaction_count("upvote") - self.reaction_count("downvote")


class ReplyRecord(_CamelModel):
    """独立存储的回复记录（支持作者删除）。"""

    id: str
    answer_id: str
    player_id: str
    content: str
    created_at: datetime


class Profile(BaseModel):
    """玩家的展示身份：用户名、头像和颜色。"""

    id: str
    username: str
    avatar: str
    color: str
