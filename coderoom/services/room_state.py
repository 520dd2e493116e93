"""
coderoom.services.room_state
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间状态仓库 —— 每个房间权威的共享状态（文档、语言、输入框、运行输出、
聊天记录、AI 对话记录、视频播放状态以及执行会话句柄）。

所有写操作都是整体覆盖或追加，没有合并逻辑，重复应用同一事件结果不变。
房间在第一个参与者加入时隐式创建，最后一个参与者离开时由 ``teardown`` 清除。
"""
from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Protocol

from coderoom.core.logging import get_logger
from coderoom.schemas.events import EventKind, Message, VideoState

logger = get_logger(__name__)


class DocumentLoader(Protocol):
    """可选的文档持久化接口，用于新建房间时载入已保存的文档。"""

    def load(self, room_id: str) -> dict[str, Any] | None: ...


@dataclass
class RoomState:
    """单个房间的共享状态。"""

    room_id: str
    language: str
    chat_history: deque[Message]
    ai_history: deque[Message]
    document: str = ""
    stdin: str = ""
    last_output: str = ""
    video_state: VideoState | None = None
    video_members: set[str] = field(default_factory=set)
    # 由执行桥独占读写
    execution_session: Any = None

    def snapshot(self) -> dict[str, Any]:
        """返回迟到者需要的完整视图。"""
        return {
            "roomId": self.room_id,
            "code": self.document,
            "language": self.language,
            "output": self.last_output,
            "input": self.stdin,
            "chatHistory": [m.to_wire() for m in self.chat_history],
            "aiHistory": [m.to_wire() for m in self.ai_history],
            "videoState": self.video_state.to_wire() if self.video_state else None,
        }


class RoomStateStore:
    """进程内所有房间状态的唯一持有者。

    Attributes:
        default_language: 新房间的默认语言。
        chat_limit: 每个房间保留的聊天消息条数。
        ai_limit: 每个房间保留的 AI 对话条数。
        max_document_chars: 单个文档允许的最大字符数。
        max_output_chars: 保留的运行输出最大字符数（保留最新部分）。
    """

    def __init__(
        self,
        default_language: str = "javascript",
        chat_limit: int = 50,
        ai_limit: int = 50,
        max_document_chars: int = 1_000_000,
        max_output_chars: int = 100_000,
        loader: DocumentLoader | None = None,
    ) -> None:
        self.default_language = default_language
        self.chat_limit = chat_limit
        self.ai_limit = ai_limit
        self.max_document_chars = max_document_chars
        self.max_output_chars = max_output_chars
        self._loader = loader
        self._rooms: dict[str, RoomState] = {}

    # ── 生命周期 ──────────────────────────────────────────────────────

    def _new_state(self, room_id: str) -> RoomState:
        return RoomState(
            room_id=room_id,
            language=self.default_language,
            chat_history=deque(maxlen=self.chat_limit),
            ai_history=deque(maxlen=self.ai_limit),
        )

    def ensure(self, room_id: str) -> RoomState:
        """获取房间状态，不存在则创建默认状态（幂等）。"""
        state = self._rooms.get(room_id)
        if state is None:
            state = self._new_state(room_id)
            self._seed(state)
            self._rooms[room_id] = state
            logger.info("房间状态已创建 | room=%s", room_id)
        return state

    def _seed(self, state: RoomState) -> None:
        """从文档存储中恢复已保存的文档和语言。"""
        if self._loader is None:
            return
        saved = self._loader.load(state.room_id)
        if not saved:
            return
        content = saved.get("content")
        if isinstance(content, str) and len(content) <= self.max_document_chars:
            state.document = content
        language = saved.get("language")
        if isinstance(language, str) and language:
            state.language = language
        logger.info("房间文档已从存储恢复 | room=%s | %d chars", state.room_id, len(state.document))

    def get(self, room_id: str) -> RoomState | None:
        return self._rooms.get(room_id)

    def exists(self, room_id: str) -> bool:
        return room_id in self._rooms

    def room_ids(self) -> list[str]:
        return list(self._rooms)

    def snapshot(self, room_id: str) -> dict[str, Any]:
        """返回房间当前视图。房间不存在时返回默认空状态，且不会创建房间。"""
        state = self._rooms.get(room_id) or self._new_state(room_id)
        return state.snapshot()

    def teardown(self, room_id: str) -> RoomState | None:
        """清除房间的全部状态。仅在参与者数量归零时调用。"""
        state = self._rooms.pop(room_id, None)
        if state is not None:
            state.chat_history.clear()
            state.ai_history.clear()
            state.video_members.clear()
            logger.info("房间状态已清除 | room=%s", room_id)
        return state

    # ── 标量字段（后写者胜）─────────────────────────────────────────────

    def apply_document_change(self, room_id: str, content: str) -> bool:
        """覆盖文档内容。超过上限的内容会被拒绝，返回是否已写入。"""
        if len(content) > self.max_document_chars:
            logger.warning(
                "文档超过上限，已丢弃 | room=%s | %d > %d chars",
                room_id, len(content), self.max_document_chars,
            )
            return False
        self.ensure(room_id).document = content
        return True

    def apply_language_change(self, room_id: str, language: str) -> None:
        """覆盖语言。不做校验，不支持的语言在执行时才会被拒绝。"""
        self.ensure(room_id).language = language

    def apply_stdin_change(self, room_id: str, text: str) -> None:
        self.ensure(room_id).stdin = text

    def set_output(self, room_id: str, output: str) -> None:
        """整体替换最近一次运行输出。"""
        state = self._rooms.get(room_id)
        if state is not None:
            state.last_output = output[-self.max_output_chars:]

    def append_output(self, room_id: str, chunk: str) -> None:
        """追加一段流式输出，只保留最新的 ``max_output_chars`` 个字符。"""
        state = self._rooms.get(room_id)
        if state is not None:
            state.last_output = (state.last_output + chunk)[-self.max_output_chars:]

    # ── 追加日志 ──────────────────────────────────────────────────────

    def append_chat(self, room_id: str, message: Message) -> Message:
        """追加聊天消息，超过上限时淘汰最旧的消息。"""
        self.ensure(room_id).chat_history.append(message)
        return message

    def append_ai(self, room_id: str, message: Message) -> Message:
        """追加 AI 面板消息，上限独立于聊天记录。"""
        self.ensure(room_id).ai_history.append(message)
        return message

    def chat_history(self, room_id: str) -> list[Message]:
        state = self._rooms.get(room_id)
        return list(state.chat_history) if state else []

    def ai_history(self, room_id: str) -> list[Message]:
        state = self._rooms.get(room_id)
        return list(state.ai_history) if state else []

    # ── 视频 ──────────────────────────────────────────────────────────

    def apply_video_event(
        self,
        room_id: str,
        kind: EventKind,
        position_seconds: float | None = None,
        media_url: str | None = None,
        action_timestamp: float | None = None,
    ) -> VideoState:
        """按事件类型选择性更新播放状态。

        - play / pause: 更新播放标志和进度
        - seek: 只更新进度
        - change: 换源，进度归零并标记为播放中
        """
        state = self.ensure(room_id)
        video = state.video_state or VideoState()
        updates: dict[str, Any] = {
            "last_action_kind": kind.value,
            "last_action_at": action_timestamp if action_timestamp is not None else time.time() * 1000,
        }

        if kind in (EventKind.VIDEO_PLAY, EventKind.VIDEO_PAUSE):
            updates["is_playing"] = kind is EventKind.VIDEO_PLAY
            if position_seconds is not None:
                updates["position_seconds"] = position_seconds
        elif kind is EventKind.VIDEO_SEEK:
            if position_seconds is not None:
                updates["position_seconds"] = position_seconds
        elif kind is EventKind.VIDEO_CHANGE:
            updates["media_url"] = media_url or ""
            updates["position_seconds"] = 0.0
            updates["is_playing"] = True
        else:
            raise ValueError(f"not a video action: {kind.value}")

        state.video_state = video.model_copy(update=updates)
        return state.video_state
