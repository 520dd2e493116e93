"""
coderoom.main
~~~~~~~~~~~~~

FastAPI 应用入口 —— 注册路由、挂载中间件、定义生命周期。
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from coderoom.api import room_endpoints, room_ws
from coderoom.core.languages import LanguageRegistry
from coderoom.core.logging import get_logger, setup_logging
from coderoom.core.rate_limit import WebSocketRateLimiter, limiter
from coderoom.core.settings import settings
from coderoom.db import create_document_repository
from coderoom.llm.gemini_provider import GeminiProvider
from coderoom.schemas.api_response import ApiResponse
from coderoom.services.assistant import AssistantService
from coderoom.services.connection import ConnectionRegistry
from coderoom.services.coordinator import SessionCoordinator
from coderoom.services.execution import create_execution_bridge
from coderoom.services.room_broadcaster import RoomBroadcaster
from coderoom.services.room_state import RoomStateStore
from coderoom.services.sandbox import PistonSandbox

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    languages = LanguageRegistry.from_yaml(settings.languages_path)
    repo = create_document_repository()
    registry = ConnectionRegistry()
    broadcaster = RoomBroadcaster(registry)
    store = RoomStateStore(
        default_language=settings.DEFAULT_LANGUAGE,
        chat_limit=settings.CHAT_HISTORY_LIMIT,
        ai_limit=settings.AI_HISTORY_LIMIT,
        max_document_chars=settings.MAX_DOCUMENT_CHARS,
        max_output_chars=settings.MAX_OUTPUT_CHARS,
        loader=repo,
    )
    sandbox = PistonSandbox(settings.SANDBOX_URL, timeout=settings.SANDBOX_TIMEOUT)
    bridge = create_execution_bridge(settings.EXECUTION_MODE, store, broadcaster, languages, sandbox)
    assistant = AssistantService(GeminiProvider())

    app.state.languages = languages
    app.state.document_repository = repo
    app.state.sandbox = sandbox
    app.state.assistant = assistant
    app.state.coordinator = SessionCoordinator(
        store=store,
        registry=registry,
        broadcaster=broadcaster,
        bridge=bridge,
        assistant=assistant,
        limiter=WebSocketRateLimiter(interval_seconds=settings.WS_RATE_LIMIT_INTERVAL),
        auto_reply=settings.ASSISTANT_AUTO_REPLY,
    )
    logger.info(
        "🚀 应用已启动 | env=%s | debug=%s | log_level=%s | execution=%s",
        settings.ENVIRONMENT,
        settings.debug,
        settings.effective_log_level,
        settings.EXECUTION_MODE,
    )
    yield
    # ── 关闭 ──
    await app.state.coordinator.aclose()
    logger.info("👋 应用已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="实时协作代码房间后端 API",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ── CORS 中间件 ───────────────────────────────────────────────────────
if settings.allow_cors_all_origins:
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
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["*"],
    )

# ── 路由挂载 ──────────────────────────────────────────────────────────
app.include_router(room_endpoints.router, prefix="/api", tags=["Rooms & Assistant"])
app.include_router(room_ws.router, tags=["WebSocket Collaboration"])


# ── 全局异常处理器 ────────────────────────────────────────────────────

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # prod 环境隐藏内部细节
    detail = str(exc) if not settings.is_prod else "服务器内部错误"
    response = ApiResponse.fail(msg=detail, code=500, data=None)
    return JSONResponse(
        status_code=500,
        content=response.model_dump(),
    )


@app.get("/health", tags=["System"])
async def health_check(request: Request) -> JSONResponse:
    """验证服务是否正常运行。"""
    coordinator: SessionCoordinator | None = getattr(request.app.state, "coordinator", None)
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "debug": settings.debug,
            "log_level": settings.effective_log_level,
            "execution_mode": settings.EXECUTION_MODE,
            "connections": coordinator.registry.connection_count if coordinator else 0,
            "rooms": len(coordinator.store.room_ids()) if coordinator else 0,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "coderoom.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )
