"""
coderoom.services.coordinator
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

会话协调器 —— 全局单例，负责连接的加入 / 离开、事件分发与房间生命周期。

- 加入：记录显示名、加入房间、向全员发送花名册，并向新成员单播房间当前状态（迟到者追平）。
- 变更：先写入房间状态，再转发给房间内其他成员；聊天和 AI 消息发给包括发送者在内的全员。
- 离开：向其他成员广播离开通知（每条连接每个房间恰好一次），最后一人离开时清除房间状态。

所有处理函数都运行在同一个事件循环中，同一时刻只有一个处理函数在修改房间状态。
LLM 调用和代码执行以后台任务运行，不会阻塞后续事件。
"""
from __future__ import annotations

import uuid
from functools import partial
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError

from coderoom.core.logging import get_logger
from coderoom.core.rate_limit import WebSocketRateLimiter
from coderoom.llm.gemini_provider import is_error_reply
from coderoom.schemas.events import (
    INBOUND_PAYLOADS,
    VIDEO_ACTIONS,
    AiMessagePayload,
    ChatMessagePayload,
    CodeChangePayload,
    DocRequestPayload,
    EventKind,
    EventPayload,
    InputChangePayload,
    JoinPayload,
    LanguageChangePayload,
    MalformedEventError,
    Message,
    RunInputPayload,
    RunOutputPayload,
    RunStartPayload,
    VideoActionPayload,
    parse_envelope,
)
from coderoom.schemas.room_interactions import RoomInfoData
from coderoom.services.assistant import ASSISTANT_NAME, AssistantService
from coderoom.services.background import BackgroundTasks
from coderoom.services.connection import (
    ConnectionRegistry,
    ConnectionState,
    ParticipantConnection,
)
from coderoom.services.execution import ExecutionBridge
from coderoom.services.room_broadcaster import RoomBroadcaster
from coderoom.services.room_state import RoomStateStore

logger = get_logger(__name__)

Handler = Callable[[ParticipantConnection, Any, dict[str, Any]], Awaitable[None]]

# 不要求发送者已加入房间的事件
_ROOMLESS_EVENTS: frozenset[EventKind] = frozenset({
    EventKind.JOIN,
    EventKind.SYNC_CODE_REQUEST,
    EventKind.VIDEO_SYNC_REQUEST,
})

RATE_LIMIT_NOTICE = "You're sending AI requests too quickly, please wait a moment."


class SessionCoordinator:
    """房间会话协调器。

    Attributes:
        store: 房间状态仓库。
        registry: 进程级连接表。
        broadcaster: 房间广播器。
        bridge: 执行桥。
        assistant: 编程助手。
        limiter: 单连接 AI 请求限流器。
        auto_reply: 是否由服务端自动回复 AI 面板中的提问。
    """

    def __init__(
        self,
        store: RoomStateStore,
        registry: ConnectionRegistry,
        broadcaster: RoomBroadcaster,
        bridge: ExecutionBridge,
        assistant: AssistantService,
        limiter: WebSocketRateLimiter | None = None,
        auto_reply: bool = True,
    ) -> None:
        self.store = store
        self.registry = registry
        self.broadcaster = broadcaster
        self.bridge = bridge
        self.assistant = assistant
        self.limiter = limiter or WebSocketRateLimiter(interval_seconds=0)
        self.auto_reply = auto_reply
        self.tasks = BackgroundTasks("coordinator")

        self._handlers: dict[EventKind, Handler] = {
            EventKind.JOIN: self._on_join,
            EventKind.LEAVE: self._on_leave,
            EventKind.CODE_CHANGE: self._on_code_change,
            EventKind.SYNC_CODE_REQUEST: self._on_sync_request,
            EventKind.LANGUAGE_CHANGE: self._on_language_change,
            EventKind.INPUT_CHANGE: self._on_input_change,
            EventKind.RUN_START: self._on_run_start,
            EventKind.RUN_INPUT: self._on_run_input,
            EventKind.RUN_STOP: self._on_run_stop,
            EventKind.RUN_OUTPUT: self._on_run_output,
            EventKind.CHAT_MESSAGE: self._on_chat_message,
            EventKind.AI_MESSAGE: self._on_ai_message,
            EventKind.AI_HISTORY_REQUEST: self._on_ai_history_request,
            EventKind.AI_DOC_REQUEST: self._on_doc_request,
            EventKind.VIDEO_JOIN: self._on_video_join,
            EventKind.VIDEO_SYNC_REQUEST: self._on_video_sync_request,
        }
        for action in VIDEO_ACTIONS:
            self._handlers[action] = partial(self._on_video_action, action)

    # ── 连接生命周期 ──────────────────────────────────────────────────

    def connect(
        self,
        sender: Callable[[str], Awaitable[None]],
        connection_id: str | None = None,
    ) -> ParticipantConnection:
        """登记一条新连接（尚未加入任何房间）。"""
        connection = ParticipantConnection(connection_id or uuid.uuid4().hex, sender)
        self.registry.register(connection)
        logger.info("连接已建立 | conn=%s | 在线连接: %d", connection.connection_id, self.registry.connection_count)
        return connection

    async def disconnect(self, connection: ParticipantConnection) -> None:
        """处理传输层断开。重复调用是空操作，离开通知因此只会发出一次。"""
        if connection.state in (ConnectionState.DISCONNECTING, ConnectionState.DISCONNECTED):
            return
        connection.state = ConnectionState.DISCONNECTING

        display_name = self.registry.name_of(connection.connection_id)
        rooms = sorted(connection.rooms)
        for room_id in rooms:
            self._remove_from_room(connection, room_id)
        for room_id in rooms:
            await self._announce_departure(room_id, connection.connection_id, display_name)

        self.registry.unregister(connection.connection_id)
        self.limiter.remove_client(connection.connection_id)
        connection.state = ConnectionState.DISCONNECTED
        logger.info(
            "连接已断开 | conn=%s | name=%s | rooms=%s | 在线连接: %d",
            connection.connection_id, display_name, rooms, self.registry.connection_count,
        )

    def _remove_from_room(self, connection: ParticipantConnection, room_id: str) -> None:
        """移出房间；成员数由 1 变为 0 时立即清除房间状态。"""
        remaining = self.registry.remove_member(room_id, connection)
        state = self.store.get(room_id)
        if state is not None:
            state.video_members.discard(connection.connection_id)
        if remaining == 0:
            self._teardown(room_id)

    def _teardown(self, room_id: str) -> None:
        state = self.store.teardown(room_id)
        if state is not None:
            self.tasks.spawn(self.bridge.release_room(room_id, state))

    async def _announce_departure(self, room_id: str, connection_id: str, display_name: str) -> None:
        await self.broadcaster.broadcast(
            room_id,
            EventKind.DISCONNECTED,
            {"roomId": room_id, "connectionId": connection_id, "displayName": display_name},
            exclude=connection_id,
        )

    # ── 分发 ──────────────────────────────────────────────────────────

    async def dispatch(self, connection: ParticipantConnection, raw: str | bytes | dict[str, Any]) -> None:
        """处理一个入站事件。格式错误的事件被记录并丢弃，不影响其他房间和连接。"""
        if not connection.is_open:
            return

        try:
            name, data = parse_envelope(raw)
        except MalformedEventError as e:
            logger.warning("无法解析的事件，已丢弃 | conn=%s | %s", connection.connection_id, e)
            return

        kind = EventKind.lookup(name)
        if kind is None or kind not in INBOUND_PAYLOADS:
            logger.debug("未知事件，忽略 | conn=%s | event=%s", connection.connection_id, name)
            return

        try:
            payload = INBOUND_PAYLOADS[kind].model_validate(data)
        except ValidationError as e:
            logger.warning(
                "事件载荷不合法，已丢弃 | conn=%s | event=%s | %s",
                connection.connection_id, name, e.errors(include_url=False),
            )
            return

        if kind not in _ROOMLESS_EVENTS and not self.registry.is_member(payload.room_id, connection.connection_id):
            logger.warning(
                "连接未加入该房间，事件已丢弃 | conn=%s | room=%s | event=%s",
                connection.connection_id, payload.room_id, name,
            )
            return

        await self._handlers[kind](connection, payload, data)

    # ── 成员 ──────────────────────────────────────────────────────────

    async def _on_join(self, connection: ParticipantConnection, payload: JoinPayload, data: dict[str, Any]) -> None:
        room_id = payload.room_id
        display_name = payload.display_name

        self.registry.set_name(connection.connection_id, display_name)
        self.registry.add_member(room_id, connection)
        connection.state = ConnectionState.JOINED
        self.store.ensure(room_id)

        await self.broadcaster.broadcast(
            room_id,
            EventKind.JOINED,
            {
                "roomId": room_id,
                "clients": self.registry.roster(room_id),
                "connectionId": connection.connection_id,
                "displayName": display_name,
            },
        )
        await self._send_catch_up(connection, room_id)
        logger.info(
            "加入房间 | room=%s | conn=%s | name=%s | 在线: %d",
            room_id, connection.connection_id, display_name, self.registry.member_count(room_id),
        )

    async def _send_catch_up(self, connection: ParticipantConnection, room_id: str) -> None:
        """向新成员单播房间当前状态。每一项都在发送时读取，保证拿到的是最新值。"""
        send = self.broadcaster.send_to

        await send(connection, EventKind.AI_HISTORY_SYNC, {
            "roomId": room_id,
            "messages": [m.to_wire() for m in self.store.ai_history(room_id)],
        })

        chat = self.store.chat_history(room_id)
        if chat:
            await send(connection, EventKind.CHAT_HISTORY, {
                "roomId": room_id, "messages": [m.to_wire() for m in chat],
            })

        state = self.store.get(room_id)
        if state is not None and state.document:
            await send(connection, EventKind.CODE_CHANGE, {
                "roomId": room_id, "content": state.document, "code": state.document,
            })

        state = self.store.get(room_id)
        if state is not None:
            await send(connection, EventKind.LANGUAGE_CHANGE, {"roomId": room_id, "language": state.language})

        state = self.store.get(room_id)
        if state is not None and state.last_output:
            await send(connection, EventKind.RUN_OUTPUT, {
                "roomId": room_id,
                "output": state.last_output,
                "done": not self.bridge.is_running(room_id),
                "replace": True,
            })

        state = self.store.get(room_id)
        if state is not None and state.stdin:
            await send(connection, EventKind.INPUT_CHANGE, {
                "roomId": room_id, "text": state.stdin, "input": state.stdin,
            })

    async def _on_leave(self, connection: ParticipantConnection, payload: EventPayload, data: dict[str, Any]) -> None:
        room_id = payload.room_id
        display_name = self.registry.name_of(connection.connection_id)
        self._remove_from_room(connection, room_id)
        if not connection.rooms:
            connection.state = ConnectionState.CONNECTED
        await self._announce_departure(room_id, connection.connection_id, display_name)
        logger.info("离开房间 | room=%s | conn=%s", room_id, connection.connection_id)

    # ── 文档与元数据 ──────────────────────────────────────────────────

    async def _on_code_change(
        self, connection: ParticipantConnection, payload: CodeChangePayload, data: dict[str, Any],
    ) -> None:
        if self.store.apply_document_change(payload.room_id, payload.content):
            await self.broadcaster.broadcast(
                payload.room_id, EventKind.CODE_CHANGE, data, exclude=connection.connection_id,
            )

    async def _on_sync_request(
        self, connection: ParticipantConnection, payload: EventPayload, data: dict[str, Any],
    ) -> None:
        snapshot = self.store.snapshot(payload.room_id)
        await self.broadcaster.send_to(connection, EventKind.SYNC_CODE, {
            "roomId": payload.room_id,
            "code": snapshot["code"],
            "content": snapshot["code"],
            "language": snapshot["language"],
            "output": snapshot["output"],
            "input": snapshot["input"],
        })

    async def _on_language_change(
        self, connection: ParticipantConnection, payload: LanguageChangePayload, data: dict[str, Any],
    ) -> None:
        self.store.apply_language_change(payload.room_id, payload.language)
        await self.broadcaster.broadcast(
            payload.room_id, EventKind.LANGUAGE_CHANGE, data, exclude=connection.connection_id,
        )

    async def _on_input_change(
        self, connection: ParticipantConnection, payload: InputChangePayload, data: dict[str, Any],
    ) -> None:
        self.store.apply_stdin_change(payload.room_id, payload.text)
        await self.broadcaster.broadcast(
            payload.room_id, EventKind.INPUT_CHANGE, data, exclude=connection.connection_id,
        )

    # ── 执行 ──────────────────────────────────────────────────────────

    async def _on_run_start(
        self, connection: ParticipantConnection, payload: RunStartPayload, data: dict[str, Any],
    ) -> None:
        state = self.store.ensure(payload.room_id)
        language = payload.language or state.language
        stdin = payload.stdin if payload.stdin is not None else state.stdin
        await self.bridge.start(payload.room_id, payload.source, language, connection, stdin=stdin)

    async def _on_run_input(
        self, connection: ParticipantConnection, payload: RunInputPayload, data: dict[str, Any],
    ) -> None:
        await self.bridge.forward_stdin(payload.room_id, payload.text, connection)

    async def _on_run_stop(
        self, connection: ParticipantConnection, payload: EventPayload, data: dict[str, Any],
    ) -> None:
        await self.bridge.stop(payload.room_id, connection)

    async def _on_run_output(
        self, connection: ParticipantConnection, payload: RunOutputPayload, data: dict[str, Any],
    ) -> None:
        """客户端自行调用执行服务后广播的结果：替换房间输出并转发给其他人。"""
        self.store.set_output(payload.room_id, payload.output)
        await self.broadcaster.broadcast(
            payload.room_id, EventKind.RUN_OUTPUT, data, exclude=connection.connection_id,
        )

    # ── 聊天 ──────────────────────────────────────────────────────────

    async def _on_chat_message(
        self, connection: ParticipantConnection, payload: ChatMessagePayload, data: dict[str, Any],
    ) -> None:
        message = Message.create(
            text=(payload.text or "").strip(),
            sender_name=self.registry.name_of(connection.connection_id),
        )
        self.store.append_chat(payload.room_id, message)
        # 发给包括发送者在内的全员，发送者以服务端分配的 id 去重
        await self.broadcaster.broadcast(
            payload.room_id, EventKind.CHAT_MESSAGE, {"roomId": payload.room_id, **message.to_wire()},
        )

    # ── AI 助手 ───────────────────────────────────────────────────────

    async def _on_ai_message(
        self, connection: ParticipantConnection, payload: AiMessagePayload, data: dict[str, Any],
    ) -> None:
        room_id = payload.room_id
        text = (payload.text or "").strip()
        sender = ASSISTANT_NAME if payload.is_ai else self.registry.name_of(connection.connection_id)
        message = Message.create(text=text, sender_name=sender, is_ai=payload.is_ai)
        self.store.append_ai(room_id, message)
        await self.broadcaster.broadcast(room_id, EventKind.AI_MESSAGE, {"roomId": room_id, **message.to_wire()})

        if payload.is_ai or not self.auto_reply:
            return
        if not self.limiter.is_allowed(connection.connection_id):
            await self._notice(connection, room_id, RATE_LIMIT_NOTICE)
            return
        self.tasks.spawn(self._reply(room_id, text))

    async def _reply(self, room_id: str, question: str) -> None:
        state = self.store.get(room_id)
        if state is None:
            return
        reply = await self.assistant.answer(question, state.document, state.language)

        if self.store.get(room_id) is not state:
            logger.debug("房间已清除，丢弃 AI 回复 | room=%s", room_id)
            return
        message = Message.create(text=reply, sender_name=ASSISTANT_NAME, is_ai=True)
        self.store.append_ai(room_id, message)
        await self.broadcaster.broadcast(room_id, EventKind.AI_MESSAGE, {"roomId": room_id, **message.to_wire()})

    async def _on_ai_history_request(
        self, connection: ParticipantConnection, payload: EventPayload, data: dict[str, Any],
    ) -> None:
        await self.broadcaster.send_to(connection, EventKind.AI_HISTORY_SYNC, {
            "roomId": payload.room_id,
            "messages": [m.to_wire() for m in self.store.ai_history(payload.room_id)],
        })

    async def _on_doc_request(
        self, connection: ParticipantConnection, payload: DocRequestPayload, data: dict[str, Any],
    ) -> None:
        room_id = payload.room_id
        if not payload.code.strip():
            await self._doc_result(connection, room_id, error="No code provided for documentation.")
            return
        if not self.limiter.is_allowed(connection.connection_id):
            await self._doc_result(connection, room_id, error=RATE_LIMIT_NOTICE)
            return

        state = self.store.get(room_id)
        language = payload.language or (state.language if state else "")
        self.tasks.spawn(self._document(connection, room_id, payload.code, language))

    async def _document(self, connection: ParticipantConnection, room_id: str, code: str, language: str) -> None:
        text = await self.assistant.document(code, language)
        if is_error_reply(text):
            await self._doc_result(connection, room_id, error=text)
        else:
            await self._doc_result(connection, room_id, documentation=text)

    async def _doc_result(
        self,
        connection: ParticipantConnection,
        room_id: str,
        documentation: str | None = None,
        error: str | None = None,
    ) -> None:
        data: dict[str, Any] = {"roomId": room_id}
        if error is not None:
            data["error"] = error
        else:
            data["documentation"] = documentation
        await self.broadcaster.send_to(connection, EventKind.AI_DOC_RESULT, data)

    # ── 一起看视频 ────────────────────────────────────────────────────

    async def _on_video_join(
        self, connection: ParticipantConnection, payload: EventPayload, data: dict[str, Any],
    ) -> None:
        state = self.store.ensure(payload.room_id)
        state.video_members.add(connection.connection_id)
        await self._send_video_state(connection, payload.room_id)

    async def _on_video_action(
        self,
        kind: EventKind,
        connection: ParticipantConnection,
        payload: VideoActionPayload,
        data: dict[str, Any],
    ) -> None:
        self.store.apply_video_event(
            payload.room_id,
            kind,
            position_seconds=payload.position_seconds,
            media_url=payload.media_url,
            action_timestamp=payload.action_timestamp,
        )
        state = self.store.ensure(payload.room_id)
        # 发出视频操作即视为进入了视频子房间
        state.video_members.add(connection.connection_id)
        await self.broadcaster.broadcast(
            payload.room_id,
            kind,
            data,
            exclude=connection.connection_id,
            only=set(state.video_members),
        )

    async def _on_video_sync_request(
        self, connection: ParticipantConnection, payload: EventPayload, data: dict[str, Any],
    ) -> None:
        await self._send_video_state(connection, payload.room_id)

    async def _send_video_state(self, connection: ParticipantConnection, room_id: str) -> None:
        state = self.store.get(room_id)
        video = state.video_state if state is not None else None
        await self.broadcaster.send_to(
            connection, EventKind.VIDEO_STATE_SYNC, video.to_wire() if video else {},
        )

    # ── 其他 ──────────────────────────────────────────────────────────

    async def _notice(self, connection: ParticipantConnection, room_id: str, text: str) -> None:
        await self.broadcaster.send_to(connection, EventKind.NOTICE, {"roomId": room_id, "message": text})

    def room_info(self, room_id: str) -> RoomInfoData | None:
        """房间摘要信息，房间不存在时返回 None。"""
        state = self.store.get(room_id)
        if state is None:
            return None
        return RoomInfoData(
            room_id=room_id,
            online_count=self.registry.member_count(room_id),
            language=state.language,
            running=self.bridge.is_running(room_id),
        )

    def list_rooms(self) -> list[RoomInfoData]:
        return [info for room_id in self.store.room_ids() if (info := self.room_info(room_id))]

    async def aclose(self) -> None:
        await self.tasks.aclose()
        await self.bridge.aclose()
