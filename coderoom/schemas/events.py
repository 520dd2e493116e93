"""
coderoom.schemas.events
~~~~~~~~~~~~~~~~~~~~~~~

房间事件协议 —— 参与者与协调器之间交换的全部事件类型及其载荷结构。

每个 WebSocket 文本帧都是一个 JSON 信封::

    {"event": "code-change", "data": {"roomId": "r1", "content": "print(1)"}}

载荷模型采用鸭子类型：未知字段一律忽略，字段同时接受规范名和旧客户端使用的别名
（如 ``content`` / ``code``），因此给已有事件增加字段不会影响旧的参与者。
"""
from __future__ import annotations

import json
import secrets
import time
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

DEFAULT_DISPLAY_NAME = "Anonymous"
MAX_DISPLAY_NAME: int = 64


class EventKind(str, Enum):
    """封闭的事件目录。值即为线上的事件名。"""

    # ── 成员 ──
    JOIN = "join"
    JOINED = "joined"
    DISCONNECTED = "disconnected"
    LEAVE = "leave"

    # ── 文档同步 ──
    CODE_CHANGE = "code-change"
    SYNC_CODE = "sync-code"
    SYNC_CODE_REQUEST = "sync-code-request"

    # ── 元数据同步 ──
    LANGUAGE_CHANGE = "language-change"
    INPUT_CHANGE = "input-change"

    # ── 执行 ──
    RUN_START = "run-start"
    RUN_INPUT = "run-input"
    RUN_STOP = "run-stop"
    RUN_OUTPUT = "run-output"

    # ── 聊天 ──
    CHAT_MESSAGE = "chat-message"
    CHAT_HISTORY = "chat-history"

    # ── AI 助手 ──
    AI_MESSAGE = "ai-message"
    AI_HISTORY_REQUEST = "ai-history-request"
    AI_HISTORY_SYNC = "ai-history-sync"
    AI_DOC_REQUEST = "ai-doc-request"
    AI_DOC_RESULT = "ai-doc-result"

    # ── 一起看视频 ──
    VIDEO_JOIN = "video-join"
    VIDEO_PLAY = "video-play"
    VIDEO_PAUSE = "video-pause"
    VIDEO_SEEK = "video-seek"
    VIDEO_CHANGE = "video-change"
    VIDEO_STATE_SYNC = "video-state-sync"
    VIDEO_SYNC_REQUEST = "video-sync-request"

    # ── 系统提示 ──
    NOTICE = "notice"

    @classmethod
    def lookup(cls, name: str) -> EventKind | None:
        """按线上事件名查找，不在目录中的返回 None。"""
        try:
            return cls(name)
        except ValueError:
            return None


VIDEO_ACTIONS: frozenset[EventKind] = frozenset({
    EventKind.VIDEO_PLAY,
    EventKind.VIDEO_PAUSE,
    EventKind.VIDEO_SEEK,
    EventKind.VIDEO_CHANGE,
})


# 改变房间共享状态的事件，丢弃会让成员之间永久不一致
STATE_EVENTS: frozenset[EventKind] = frozenset({
    EventKind.JOIN,
    EventKind.LEAVE,
    EventKind.CODE_CHANGE,
    EventKind.LANGUAGE_CHANGE,
    EventKind.INPUT_CHANGE,
    EventKind.RUN_START,
    EventKind.RUN_STOP,
})


class MalformedEventError(ValueError):
    """信封无法解析（非 JSON、缺少事件名等）。"""


# ── 载荷模型 ──────────────────────────────────────────────────────────

class EventPayload(BaseModel):
    """所有入站载荷的基类，至少携带房间标识。"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    room_id: str = Field(..., min_length=1, max_length=128, description="房间标识")


class JoinPayload(EventPayload):
    display_name: str = Field(
        default=DEFAULT_DISPLAY_NAME,
        validation_alias=AliasChoices("displayName", "display_name", "username"),
    )

    @field_validator("display_name", mode="before")
    @classmethod
    def _normalize_name(cls, value: Any) -> Any:
        """空名字回落为默认名，过长的名字截断。"""
        if value is None:
            return DEFAULT_DISPLAY_NAME
        if isinstance(value, str):
            return value.strip()[:MAX_DISPLAY_NAME] or DEFAULT_DISPLAY_NAME
        return value


class CodeChangePayload(EventPayload):
    content: str = Field(..., validation_alias=AliasChoices("content", "code"))


class LanguageChangePayload(EventPayload):
    language: str = Field(..., min_length=1, max_length=32)


class InputChangePayload(EventPayload):
    text: str = Field(..., validation_alias=AliasChoices("text", "input"))


class RunStartPayload(EventPayload):
    source: str = Field(default="", validation_alias=AliasChoices("source", "code"))
    language: str | None = None
    stdin: str | None = Field(default=None, validation_alias=AliasChoices("stdin", "input"))


class RunInputPayload(EventPayload):
    text: str = Field(..., validation_alias=AliasChoices("text", "input"))


class RunOutputPayload(EventPayload):
    """客户端以请求/响应模式运行后广播的结果。"""

    output: str


class ChatMessagePayload(EventPayload):
    """聊天消息。兼容 ``{text}`` 与旧客户端的 ``{message: {text}}`` 两种写法。"""

    text: str | None = None
    message: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _resolve_text(self) -> ChatMessagePayload:
        if self.text is None and self.message is not None:
            nested = self.message.get("text")
            if isinstance(nested, str):
                self.text = nested
        if not self.text or not self.text.strip():
            raise ValueError("message text is required")
        return self


class AiMessagePayload(ChatMessagePayload):
    is_ai: bool = False

    @model_validator(mode="after")
    def _resolve_flag(self) -> AiMessagePayload:
        if self.message is not None and self.message.get("isAi") is True:
            self.is_ai = True
        return self


class DocRequestPayload(EventPayload):
    code: str = ""
    language: str | None = None
    display_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("displayName", "display_name", "username"),
    )


class VideoActionPayload(EventPayload):
    position_seconds: float | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("positionSeconds", "position_seconds", "currentTime"),
    )
    media_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("mediaUrl", "media_url", "videoUrl"),
    )
    action_timestamp: float | None = Field(
        default=None,
        validation_alias=AliasChoices("actionTimestamp", "action_timestamp", "timestamp"),
    )


# 入站事件 → 载荷模型。未出现在此表中的事件只会被服务端发出。
INBOUND_PAYLOADS: dict[EventKind, type[EventPayload]] = {
    EventKind.JOIN: JoinPayload,
    EventKind.LEAVE: EventPayload,
    EventKind.CODE_CHANGE: CodeChangePayload,
    EventKind.SYNC_CODE_REQUEST: EventPayload,
    EventKind.LANGUAGE_CHANGE: LanguageChangePayload,
    EventKind.INPUT_CHANGE: InputChangePayload,
    EventKind.RUN_START: RunStartPayload,
    EventKind.RUN_INPUT: RunInputPayload,
    EventKind.RUN_STOP: EventPayload,
    EventKind.RUN_OUTPUT: RunOutputPayload,
    EventKind.CHAT_MESSAGE: ChatMessagePayload,
    EventKind.AI_MESSAGE: AiMessagePayload,
    EventKind.AI_HISTORY_REQUEST: EventPayload,
    EventKind.AI_DOC_REQUEST: DocRequestPayload,
    EventKind.VIDEO_JOIN: EventPayload,
    EventKind.VIDEO_PLAY: VideoActionPayload,
    EventKind.VIDEO_PAUSE: VideoActionPayload,
    EventKind.VIDEO_SEEK: VideoActionPayload,
    EventKind.VIDEO_CHANGE: VideoActionPayload,
    EventKind.VIDEO_SYNC_REQUEST: EventPayload,
}


# ── 房间内的共享数据结构 ──────────────────────────────────────────────

class Message(BaseModel):
    """聊天 / AI 面板中的一条消息，创建后不可修改。"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    id: str
    text: str
    sender_name: str
    created_at: int = Field(..., description="创建时间（epoch 毫秒）")
    is_ai: bool = False

    @classmethod
    def create(cls, text: str, sender_name: str, is_ai: bool = False) -> Message:
        """以服务端时间戳 + 随机后缀生成消息 ID。"""
        now_ms = int(time.time() * 1000)
        return cls(
            id=f"{now_ms}-{secrets.token_hex(4)}",
            text=text,
            sender_name=sender_name,
            created_at=now_ms,
            is_ai=is_ai,
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class VideoState(BaseModel):
    """一起看视频的播放状态。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    media_url: str = ""
    is_playing: bool = False
    position_seconds: float = 0.0
    last_action_kind: str | None = None
    last_action_at: float | None = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


# ── 信封编解码 ────────────────────────────────────────────────────────

def parse_envelope(raw: str | bytes | dict[str, Any]) -> tuple[str, dict[str, Any]]:
    """解析入站信封，返回 ``(事件名, 载荷字典)``。

    Raises:
        MalformedEventError: 非 JSON、不是对象、缺少事件名或载荷不是对象。
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise MalformedEventError(f"invalid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise MalformedEventError("envelope must be a JSON object")

    name = raw.get("event")
    if not isinstance(name, str) or not name:
        raise MalformedEventError("envelope is missing the event name")

    data = raw.get("data", {})
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MalformedEventError("event data must be a JSON object")
    return name, data


def envelope(kind: EventKind, data: dict[str, Any]) -> dict[str, Any]:
    """构造出站信封。"""
    return {"event": kind.value, "data": data}
