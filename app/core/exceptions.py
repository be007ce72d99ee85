"""
app.core.exceptions
~~~~~~~~~~~~~~~~~~~

业务异常体系。

所有异常都继承自 ``LobbyError``，其 ``message`` 是可以直接发给客户端的
可读文本。网关层统一捕获并转换为 ``error`` 事件，只发给触发请求的连接。
"""
from __future__ import annotations


class LobbyError(Exception):
    """业务异常基类。

    Attributes:
        message: 面向客户端的错误描述。
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationFailed(LobbyError):
    """请求字段缺失或格式不合法。"""


class NotFound(LobbyError):
    """房间 / 回答 / 用户不存在。"""


class LobbyFull(LobbyError):
    """房间人数已达上限。"""


class StoreFailure(LobbyError):
    """存储层调用失败。"""


class MalformedEnvelope(LobbyError):
    """入站消息无法解析。"""
