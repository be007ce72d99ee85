"""
app.schemas.envelopes
~~~~~~~~~~~~~~~~~~~~~

WebSocket 消息信封：入站解析 + 请求体校验 + 出站序列化。

入站格式为 ``{"type": "...", ...payload}``。历史客户端有的把字段放在顶层，
有的放在 ``data`` 对象里，``envelope_payload()`` 会把两者合并（``data`` 优先）。

出站格式统一为 ``{"type": "...", "data": ...}``，转发的未知消息额外带 ``sender``。
"""
from __future__ import annotations

import json
from typing import Any, TypeVar

from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from app.core.exceptions import MalformedEnvelope, ValidationFailed
from app.schemas.game import ReactionType

RequestT = TypeVar("RequestT", bound="InboundRequest")


# ── 入站解析 ──────────────────────────────────────────────────────────

def parse_envelope(raw: str) -> dict[str, Any]:
    """把原始文本解析为信封字典。

    Raises:
        MalformedEnvelope: 不是 JSON 对象，或缺少字符串类型的 ``type`` 字段。
    """
    try:
        envelope = json.loads(raw)
    except ValueError as e:
        raise MalformedEnvelope("Invalid message format") from e
    if not isinstance(envelope, dict) or not isinstance(envelope.get("type"), str):
        raise MalformedEnvelope("Invalid message format")
    return envelope


def envelope_payload(envelope: dict[str, Any]) -> dict[str, Any]:
    """合并顶层字段与 ``data`` 中的字段，返回请求负载。"""
    payload = {k: v for k, v in envelope.items() if k not in ("type", "data")}
    nested = envelope.get("data")
    if isinstance(nested, dict):
        payload.update(nested)
    return payload


# ── 请求体 ────────────────────────────────────────────────────────────

class InboundRequest(BaseModel):
    """所有入站请求体的基类：字段以 camelCase 接收，忽略多余字段。"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class CreateLobbyRequest(InboundRequest):
    name: str = Field(..., min_length=1, max_length=64)
    capacity: int = Field(..., gt=0)

    @field_validator("capacity", mode="before")
    @classmethod
    def _reject_bool(cls, value: Any) -> Any:
        # JSON 的 true/false 在宽松模式下会被当作 1/0
        if isinstance(value, bool):
            raise ValueError("capacity must be a positive integer")
        return value


class JoinLobbyRequest(InboundRequest):
    lobby_id: str = Field(..., min_length=1)


class LeaveLobbyRequest(InboundRequest):
    lobby_id: str = Field(..., min_length=1)


class SubmitAnswerRequest(InboundRequest):
    lobby_id: str = Field(..., min_length=1)
    content: str
    question_index: int = Field(..., ge=0)


class AddReactionRequest(InboundRequest):
    answer_id: str = Field(..., min_length=1)
    reaction_type: ReactionType
    is_remove: bool = False


class AddReplyRequest(InboundRequest):
    answer_id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)


class SubmitReplyRequest(InboundRequest):
    lobby_id: str = Field(..., min_length=1)
    answer_id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)


class GetRepliesRequest(InboundRequest):
    answer_id: str = Field(..., min_length=1)


class CreateReplyRequest(InboundRequest):
    answer_id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)


class DeleteReplyRequest(InboundRequest):
    reply_id: str = Field(..., min_length=1)


class GetUserInfoRequest(InboundRequest):
    user_id: str = Field(..., min_length=1)


class ChangeQuestionRequest(InboundRequest):
    lobby_id: str = Field(..., min_length=1)
    question_index: int = Field(..., ge=0)


def parse_request(model: type[RequestT], envelope: dict[str, Any]) -> RequestT:
    """按请求模型校验信封负载。

    Raises:
        ValidationFailed: 字段缺失或类型不合法，错误信息指出第一个出错的字段。
    """
    try:
        return model.model_validate(envelope_payload(envelope))
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "payload"
        if first["type"] == "missing":
            raise ValidationFailed(f"Missing required field: {field}") from e
        raise ValidationFailed(f"Invalid field {field}: {first['msg']}") from e


# ── 出站事件 ──────────────────────────────────────────────────────────

class ServerEvent(BaseModel):
    """出站事件。

    Attributes:
        type: 事件类型。
        data: 事件数据，可以是 Pydantic 模型、列表或普通字典。
        sender: 仅用于转发未知消息时标记原始发送者。
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    type: str
    data: Any = None
    sender: str | None = None

    @classmethod
    def error(cls, message: str) -> ServerEvent:
        """快捷构造 ``error`` 事件。"""
        return cls(type="error", data=message)

    def to_json(self) -> str:
        """序列化为发往客户端的 JSON 文本。"""
        payload: dict[str, Any] = {"type": self.type, "data": jsonable_encoder(self.data)}
        if self.sender is not None:
            payload["sender"] = self.sender
        return json.dumps(payload, ensure_ascii=False)
