"""
coderoom.api.room_ws
~~~~~~~~~~~~~~~~~~~~

WebSocket 实时协作接口。

提供 ``/ws`` 端点。一条连接可以加入任意多个房间，所有事件都是
``{"event": 名称, "data": 载荷}`` 形式的 JSON 文本帧，载荷里携带 ``roomId``。
"""
from __future__ import annotations

import asyncio
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from coderoom.core.logging import get_logger, request_id_ctx_var
from coderoom.core.settings import settings
from coderoom.schemas.events import STATE_EVENTS, EventKind, MalformedEventError, parse_envelope
from coderoom.services.coordinator import SessionCoordinator

logger = get_logger(__name__)

router: APIRouter = APIRouter()

QUEUE_FULL_NOTICE = "Server is busy, your last message was dropped. Please retry."


def _changes_room_state(raw: str) -> bool:
    try:
        name, _ = parse_envelope(raw)
    except MalformedEventError:
        return False
    return EventKind.lookup(name) in STATE_EVENTS


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """WebSocket 协作端点。

    接收与处理分离：接收协程只负责把帧放进队列，处理协程按到达顺序逐个分发，
    同一连接的事件因此严格保序。LLM 调用与代码执行由协调器放到后台任务，
    不会阻塞队列。

    Args:
        websocket: FastAPI WebSocket 连接对象。
    """
    ws_req_id = f"ws-{uuid.uuid4().hex[:8]}"
    token = request_id_ctx_var.set(ws_req_id)

    try:
        coordinator: SessionCoordinator = websocket.app.state.coordinator
        await websocket.accept()
        connection = coordinator.connect(websocket.send_text, connection_id=ws_req_id)

        queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=settings.WS_QUEUE_SIZE)

        async def receive_loop() -> None:
            try:
                while True:
                    raw: str = await websocket.receive_text()
                    try:
                        queue.put_nowait(raw)
                    except asyncio.QueueFull:
                        if _changes_room_state(raw):
                            # 状态事件不丢弃：暂停接收，等处理协程腾出位置
                            logger.warning("WS 队列已满，等待处理 | conn=%s", connection.connection_id)
                            await queue.put(raw)
                            continue
                        logger.warning("WS 队列已满，丢弃事件 | conn=%s", connection.connection_id)
                        await coordinator.broadcaster.send_to(
                            connection, EventKind.NOTICE, {"message": QUEUE_FULL_NOTICE},
                        )
            except WebSocketDisconnect:
                pass  # 正常断开
            except Exception as e:
                logger.error("WebSocket 接收异常: %s | conn=%s", e, connection.connection_id, exc_info=True)
            finally:
                await queue.put(None)  # 发送结束信号给处理协程

        async def process_loop() -> None:
            while True:
                raw = await queue.get()
                if raw is None:
                    break
                try:
                    await coordinator.dispatch(connection, raw)
                except Exception as e:
                    # 单个事件出错不影响后续事件
                    logger.error("事件处理异常: %s | conn=%s", e, connection.connection_id, exc_info=True)

        try:
            await asyncio.gather(receive_loop(), process_loop())
        finally:
            await coordinator.disconnect(connection)

    finally:
        request_id_ctx_var.reset(token)
