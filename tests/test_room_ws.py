"""
tests.test_room_ws
~~~~~~~~~~~~~~~~~~

WebSocket 端点测试。

使用 mock WebSocket 直接驱动端点函数，验证接收 / 处理循环与断开时的清理。
"""
from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from conftest import frame
from fastapi import WebSocket, WebSocketDisconnect

from coderoom.api.room_ws import websocket_endpoint
from coderoom.core.settings import settings
from coderoom.services.coordinator import SessionCoordinator


def _mock_websocket(coordinator: SessionCoordinator, incoming: list) -> AsyncMock:
    mock_ws = AsyncMock(spec=WebSocket)
    mock_ws.app = SimpleNamespace(state=SimpleNamespace(coordinator=coordinator))
    mock_ws.receive_text.side_effect = incoming
    return mock_ws


def _sent(mock_ws: AsyncMock) -> list[dict]:
    return [json.loads(call.args[0]) for call in mock_ws.send_text.call_args_list]


@pytest.mark.asyncio
async def test_events_processed_in_order_and_cleaned_up(coordinator: SessionCoordinator) -> None:
    """加入、编辑、聊天按顺序处理；断开后房间被清除。"""
    mock_ws = _mock_websocket(coordinator, [
        frame("join", roomId="r1", displayName="alice"),
        frame("code-change", roomId="r1", content="x = 1"),
        frame("chat-message", roomId="r1", text="hello"),
        WebSocketDisconnect(),
    ])

    await websocket_endpoint(mock_ws)

    mock_ws.accept.assert_awaited_once()
    events = [f["event"] for f in _sent(mock_ws)]
    assert events[0] == "joined"
    assert "chat-message" in events
    assert not coordinator.store.exists("r1")
    assert coordinator.registry.connection_count == 0


@pytest.mark.asyncio
async def test_malformed_frame_does_not_end_connection(coordinator: SessionCoordinator, join) -> None:
    """坏帧被丢弃，后续事件照常处理。"""
    _, rec_bob = await join("bob")
    mock_ws = _mock_websocket(coordinator, [
        frame("join", roomId="r1", displayName="alice"),
        "}{",
        frame("code-change", roomId="r1", content="after garbage"),
        WebSocketDisconnect(),
    ])

    await websocket_endpoint(mock_ws)

    assert rec_bob.payloads("code-change")[-1]["content"] == "after garbage"
    assert len(rec_bob.payloads("disconnected")) == 1
    assert coordinator.store.get("r1").document == "after garbage"


@pytest.mark.asyncio
async def test_full_queue_keeps_state_changes(
    coordinator: SessionCoordinator, join, monkeypatch: pytest.MonkeyPatch,
) -> None:
    """队列满时文档与元数据变更不会被丢弃。"""
    monkeypatch.setattr(settings, "WS_QUEUE_SIZE", 1)
    _, rec_bob = await join("bob")
    mock_ws = _mock_websocket(coordinator, [
        frame("join", roomId="r1", displayName="alice"),
        frame("code-change", roomId="r1", content="x = 1"),
        frame("language-change", roomId="r1", language="python"),
        frame("input-change", roomId="r1", text="42"),
        WebSocketDisconnect(),
    ])

    await websocket_endpoint(mock_ws)

    state = coordinator.store.get("r1")
    assert state.document == "x = 1"
    assert state.language == "python"
    assert state.stdin == "42"
    assert rec_bob.payloads("language-change")[-1]["language"] == "python"
