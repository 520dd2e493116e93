"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— mock 掉所有外部调用（Gemini、Piston 沙箱），
用内存里的假连接记录每条连接收到的事件，使单元测试可在无网络环境下快速运行。
"""
from __future__ import annotations

import json
import os
from collections.abc import Awaitable, Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("GEMINI_API_KEY", "test-fake-key")
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置

from coderoom.core.languages import LanguageRegistry  # noqa: E402
from coderoom.core.rate_limit import WebSocketRateLimiter  # noqa: E402
from coderoom.core.settings import settings  # noqa: E402
from coderoom.services.assistant import AssistantService  # noqa: E402
from coderoom.services.connection import ConnectionRegistry, ParticipantConnection  # noqa: E402
from coderoom.services.coordinator import SessionCoordinator  # noqa: E402
from coderoom.services.execution import RemoteExecutionBridge  # noqa: E402
from coderoom.services.room_broadcaster import RoomBroadcaster  # noqa: E402
from coderoom.services.room_state import RoomStateStore  # noqa: E402
from coderoom.services.sandbox import SandboxResult  # noqa: E402


# ── 假连接 ────────────────────────────────────────────────────────────

class Recorder:
    """模拟 ``websocket.send_text``，记录收到的每一帧。"""

    def __init__(self) -> None:
        self.frames: list[dict[str, Any]] = []
        self.broken = False

    async def __call__(self, message: str) -> None:
        if self.broken:
            raise ConnectionError("socket closed")
        self.frames.append(json.loads(message))

    def names(self) -> list[str]:
        return [frame["event"] for frame in self.frames]

    def payloads(self, event: str) -> list[dict[str, Any]]:
        return [frame["data"] for frame in self.frames if frame["event"] == event]

    def clear(self) -> None:
        self.frames.clear()


def frame(event: str, **data: Any) -> str:
    """构造一个入站帧。"""
    return json.dumps({"event": event, "data": data})


# ── 协作方 mock ──────────────────────────────────────────────────────

@pytest.fixture()
def mock_bot() -> MagicMock:
    """返回一个 mock 的 LLM 客户端，``complete`` 固定返回一句回答。"""
    bot = MagicMock()
    bot.complete = AsyncMock(return_value="Use a for loop.")
    return bot


@pytest.fixture()
def mock_sandbox() -> MagicMock:
    """返回一个 mock 的 Piston 沙箱，执行结果固定为 ``hi``。"""
    sandbox = MagicMock()
    sandbox.execute = AsyncMock(return_value=SandboxResult(output="hi\n", status="exit:0", success=True))
    return sandbox


@pytest.fixture()
def languages() -> LanguageRegistry:
    return LanguageRegistry.from_yaml(settings.languages_path)


@pytest.fixture()
def store() -> RoomStateStore:
    return RoomStateStore(
        default_language="javascript",
        chat_limit=50,
        ai_limit=50,
        max_document_chars=1_000,
        max_output_chars=10_000,
    )


@pytest.fixture()
def coordinator(
    store: RoomStateStore,
    languages: LanguageRegistry,
    mock_bot: MagicMock,
    mock_sandbox: MagicMock,
) -> SessionCoordinator:
    """远程执行模式下的协调器，AI 请求不限流。"""
    registry = ConnectionRegistry()
    broadcaster = RoomBroadcaster(registry)
    bridge = RemoteExecutionBridge(store, broadcaster, languages, mock_sandbox)
    return SessionCoordinator(
        store=store,
        registry=registry,
        broadcaster=broadcaster,
        bridge=bridge,
        assistant=AssistantService(mock_bot),
        limiter=WebSocketRateLimiter(interval_seconds=0),
    )


JoinFn = Callable[..., Awaitable[tuple[ParticipantConnection, Recorder]]]


@pytest.fixture()
def join(coordinator: SessionCoordinator) -> JoinFn:
    """建立一条假连接并加入房间，返回 ``(连接, 记录器)``。"""

    async def _join(display_name: str, room_id: str = "r1") -> tuple[ParticipantConnection, Recorder]:
        recorder = Recorder()
        conn = coordinator.connect(recorder)
        await coordinator.dispatch(conn, frame("join", roomId=room_id, displayName=display_name))
        return conn, recorder

    return _join
