"""
app.schemas.api_response
~~~~~~~~~~~~~~~~~~~~~~~~

REST 接口统一应答体。

WebSocket 事件走 ``ServerEvent``，HTTP 接口（房间列表、回答排行等只读投影）
统一通过 ``ApiResponse`` 返回 ``{"code": ..., "data": ..., "msg": ...}``。
"""
from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """统一 JSON 应答体。

    .. code-block:: json

        {"code": 200, "data": [{"id": "...", "currentPlayers": 2}], "msg": "success"}

    Attributes:
        code: 业务状态码，200 表示成功，其余沿用 HTTP 语义（404 房间不存在等）。
        data: 实际业务数据。
        msg: 人类可读的状态消息。
    """

    code: int = Field(default=200, description="业务状态码")
    data: T = Field(..., description="业务数据")
    msg: str = Field(default="success", description="状态消息")

    @classmethod
    def ok(cls, data: T, msg: str = "success") -> ApiResponse[T]:
        """快捷构造成功响应。"""
        return cls(code=200, data=data, msg=msg)

    @classmethod
    def fail(cls, msg: str = "error", code: int = 500, data: Any = None) -> ApiResponse[Any]:
        """快捷构造失败响应，``data`` 默认为空。"""
        return cls(code=code, data=data, msg=msg)
