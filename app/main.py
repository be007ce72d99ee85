"""
app.main
~~~~~~~~

FastAPI 应用入口 —— 注册路由、挂载中间件、定义生命周期。

生命周期内创建的进程级组件（连接注册表、计时器、协调器、清理任务）
全部挂在 ``app.state`` 上，路由通过 ``app.api.deps`` 取用。
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api import game_ws, lobby_endpoints
from app.core.logging import get_logger, setup_logging
from app.core.rate_limit import limiter
from app.core.settings import settings
from app.db import close_mongo, connect_mongo, get_database
from app.db.answer_repository import AnswerRepository
from app.db.lobby_repository import LobbyRepository
from app.db.question_repository import QuestionRepository
from app.db.reply_repository import ReplyRepository
from app.schemas.api_response import ApiResponse
from app.services.answer_service import AnswerAggregator
from app.services.broadcaster import BroadcastRouter
from app.services.cleanup import LobbySweeper
from app.services.connection import ConnectionRegistry
from app.services.coordinator import LobbyCoordinator
from app.services.lobby_manager import LobbyManager
from app.services.profile import ProfileDirectory
from app.services.question_timer import QuestionTimer
from app.services.reply_service import ReplyService

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


def build_coordinator(
    lobbies: LobbyRepository,
    answers: AnswerRepository,
    questions: QuestionRepository,
    replies: ReplyRepository,
) -> LobbyCoordinator:
    """按配置组装协调器及其依赖的全部服务。"""
    registry = ConnectionRegistry()
    broadcaster = BroadcastRouter(registry)
    manager = LobbyManager(
        lobbies,
        answers,
        questions,
        questions_per_lobby=settings.QUESTIONS_PER_LOBBY,
        stale_after=timedelta(seconds=settings.LOBBY_STALE_SECONDS),
        idle_after=timedelta(seconds=settings.LOBBY_IDLE_SECONDS),
    )
    timer = QuestionTimer(answers, manager, broadcaster, tick_seconds=settings.TIMER_TICK_SECONDS)
    return LobbyCoordinator(
        registry=registry,
        profiles=ProfileDirectory(),
        broadcaster=broadcaster,
        manager=manager,
        timer=timer,
        aggregator=AnswerAggregator(answers),
        replies=ReplyService(replies, answers),
        question_duration=settings.QUESTION_DURATION_SECONDS,
        random_lobby_name=settings.RANDOM_LOBBY_NAME,
        random_lobby_capacity=settings.RANDOM_LOBBY_CAPACITY,
    )


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    await connect_mongo()
    db = get_database()

    questions = QuestionRepository(db)
    await questions.seed_from_file(settings.question_bank_path)

    coordinator = build_coordinator(LobbyRepository(db), AnswerRepository(db), questions, ReplyRepository(db))
    sweeper = LobbySweeper(
        coordinator.manager,
        coordinator.timer,
        coordinator.registry,
        coordinator.broadcaster,
        replies=coordinator.replies,
        interval_seconds=settings.CLEANUP_INTERVAL_SECONDS,
    )
    app.state.coordinator = coordinator
    app.state.sweeper = sweeper
    sweeper.start()

    logger.info(
        "🚀 应用已启动 | env=%s | debug=%s | log_level=%s",
        settings.ENVIRONMENT,
        settings.debug,
        settings.effective_log_level,
    )
    yield
    # ── 关闭 ──
    coordinator.timer.stop_all()
    await sweeper.stop()
    await close_mongo()
    logger.info("👋 应用已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="多人派对问答游戏后端：房间、轮换题目、回答与表情实时同步",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ── CORS 中间件 ───────────────────────────────────────────────────────
if settings.allow_cors_all_origins:
    # dev / test 环境：允许所有来源，方便本地调试
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

# ── 路由挂载 ──────────────────────────────────────────────────────────
app.include_router(lobby_endpoints.router, prefix="/api", tags=["Lobbies"])
app.include_router(game_ws.router, tags=["WebSocket Game"])


# ── 全局异常处理器 ────────────────────────────────────────────────────

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # 非 prod 环境返回详细错误信息，prod 环境隐藏内部细节
    detail = str(exc) if not settings.is_prod else "Internal server error"
    response = ApiResponse.fail(msg=detail, code=500, data=None)
    return JSONResponse(
        status_code=500,
        content=response.model_dump(),
    )


@app.get("/health", tags=["System"])
async def health_check() -> JSONResponse:
    """验证服务是否正常运行。"""
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "debug": settings.debug,
            "log_level": settings.effective_log_level,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )
