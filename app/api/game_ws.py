"""
app.api.game_ws
~~~~~~~~~~~~~~~

WebSocket 会话网关 —— 单一端点 ``/ws``。

每条连接对应一个会话：连接建立时推送 ``user_info``，之后按到达顺序处理入站消息，
连接断开时（无论正常关闭还是异常）按"离开房间"回收会话。

消息协议（JSON）:
  - 入站 ``{"type": "...", ...字段}``，字段也可以放在 ``data`` 对象里
  - 出站 ``{"type": "...", "data": ...}``
  - 出错时只给发起者回 ``{"type": "error", "data": "可读的错误信息"}``
"""
from __future__ import annotations

import asyncio
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.core.exceptions import LobbyError, StoreFailure
from app.core.logging import get_logger, request_id_ctx_var
from app.core.rate_limit import WebSocketRateLimiter
from app.core.settings import settings
from app.schemas.envelopes import ServerEvent, parse_envelope
from app.services.connection import Session
from app.services.coordinator import LobbyCoordinator, failure_message

logger = get_logger(__name__)

router: APIRouter = APIRouter()

_QUEUE_SIZE = 20


@router.websocket("/ws")
async def websocket_game_endpoint(websocket: WebSocket) -> None:
    """WebSocket 游戏端点。

    接收与处理拆成两个协程：接收端按实际到达时间做限流判断，
    处理端逐条串行执行，保证同一连接的消息按到达顺序生效。

    Args:
        websocket: FastAPI WebSocket 连接对象。
    """
    token = request_id_ctx_var.set(f"ws-{uuid.uuid4().hex[:8]}")
    try:
        coordinator: LobbyCoordinator = websocket.app.state.coordinator
        session = await coordinator.on_connect(websocket)

        ws_limiter = WebSocketRateLimiter(interval_seconds=settings.WS_RATE_LIMIT_INTERVAL)
        queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=_QUEUE_SIZE)

        async def receive_loop() -> None:
            try:
                while True:
                    raw = await websocket.receive_text()
                    if not ws_limiter.is_allowed(session.id):
                        await coordinator.broadcaster.send(session, ServerEvent.error("Too many messages"))
                        continue
                    try:
                        queue.put_nowait(raw)
                    except asyncio.QueueFull:
                        logger.warning("消息队列已满，丢弃消息 | session=%s", session.id)
                        await coordinator.broadcaster.send(session, ServerEvent.error("Server busy, try again"))
            except WebSocketDisconnect:
                pass
            except Exception as e:
                logger.error("WebSocket 接收异常 | session=%s | error=%s", session.id, e, exc_info=True)
            finally:
                await queue.put(None)

        async def process_loop() -> None:
            while True:
                raw = await queue.get()
                if raw is None:
                    break
                await handle_message(coordinator, session, raw)

        try:
            await asyncio.gather(receive_loop(), process_loop())
        finally:
            ws_limiter.remove_client(session.id)
            try:
                await coordinator.on_disconnect(session)
            except Exception as e:
                logger.error("断开连接清理异常 | session=%s | error=%s", session.id, e, exc_info=True)
    finally:
        request_id_ctx_var.reset(token)


async def handle_message(coordinator: LobbyCoordinator, session: Session, raw: str) -> None:
    """处理一条入站消息，任何异常都转换为发给发起者的 ``error`` 事件。"""
    kind = ""
    try:
        envelope = parse_envelope(raw)
        kind = envelope["type"]
        await coordinator.dispatch(session, envelope)
    except StoreFailure as e:
        logger.error("存储调用失败 | session=%s | type=%s | error=%s", session.id, kind, e.message)
        await coordinator.broadcaster.send(session, ServerEvent.error(failure_message(kind)))
    except LobbyError as e:
        logger.warning("请求被拒绝 | session=%s | type=%s | reason=%s", session.id, kind, e.message)
        await coordinator.broadcaster.send(session, ServerEvent.error(e.message))
    except Exception as e:
        logger.error("消息处理异常 | session=%s | type=%s | error=%s", session.id, kind, e, exc_info=True)
        await coordinator.broadcaster.send(session, ServerEvent.error(failure_message(kind)))
