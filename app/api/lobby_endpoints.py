"""
app.api.lobby_endpoints
~~~~~~~~~~~~~~~~~~~~~~~

房间只读 REST 接口 —— 供大厅页面轮询和排查问题使用。

路由前缀 ``/api``。所有写操作都走 WebSocket，这里只提供查询。

端点:
  - ``GET /lobbies``                                 → 房间列表（按创建时间倒序）
  - ``GET /lobbies/{lobby_id}``                      → 房间详情
  - ``GET /lobbies/{lobby_id}/answers?question_index`` → 某道题的回答排行
"""
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from app.api.deps import get_answer_aggregator, get_lobby_manager
from app.core.rate_limit import limiter
from app.schemas.api_response import ApiResponse
from app.schemas.game import Answer, Lobby
from app.services.answer_service import AnswerAggregator
from app.services.lobby_manager import LobbyManager

router: APIRouter = APIRouter()


def _not_found(msg: str) -> JSONResponse:
    return JSONResponse(status_code=404, content=ApiResponse.fail(msg=msg, code=404).model_dump())


@router.get("/lobbies", summary="获取房间列表", response_model=ApiResponse[list[Lobby]])
@limiter.limit("10/second")
async def list_lobbies(request: Request, manager: LobbyManager = Depends(get_lobby_manager)):
    """返回全部房间，最新创建的在前。"""
    lobbies = await manager.get_lobbies()
    return ApiResponse.ok(data=lobbies)


@router.get("/lobbies/{lobby_id}", summary="获取房间详情", response_model=ApiResponse[Lobby])
@limiter.limit("5/second")
async def lobby_info(request: Request, lobby_id: str, manager: LobbyManager = Depends(get_lobby_manager)):
    """返回指定房间；房间不存在时返回 404。

    Args:
        lobby_id: 房间唯一标识。
    """
    lobby = await manager.find_lobby(lobby_id)
    if lobby is None:
        return _not_found("Lobby not found")
    return ApiResponse.ok(data=lobby)


@router.get(
    "/lobbies/{lobby_id}/answers",
    summary="获取回答排行",
    response_model=ApiResponse[list[Answer]],
)
@limiter.limit("5/second")
async def lobby_answers(
    request: Request,
    lobby_id: str,
    question_index: int | None = Query(None, ge=0, description="题目下标，缺省为房间当前题目"),
    manager: LobbyManager = Depends(get_lobby_manager),
    aggregator: AnswerAggregator = Depends(get_answer_aggregator),
):
    """返回某道题的回答，按净得分与提交时间排序。

    Args:
        request: FastAPI Request 对象（用于限流判断）。
        lobby_id: 房间唯一标识。
        question_index: 题目下标（可选）。
    """
    lobby = await manager.find_lobby(lobby_id)
    if lobby is None:
        return _not_found("Lobby not found")
    index = lobby.current_question_index if question_index is None else question_index
    answers = await aggregator.list(lobby_id, index)
    return ApiResponse.ok(data=answers)
