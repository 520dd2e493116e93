"""
coderoom.services.connection
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

参与者连接与全局连接表。

``ParticipantConnection`` 封装一条传输层连接（通常是 WebSocket），
``ConnectionRegistry`` 维护进程级的「连接 → 显示名」映射以及每个房间的成员列表。
两者都只由会话协调器在单个事件循环内写入，不需要加锁。
"""
from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from coderoom.core.logging import get_logger
from coderoom.schemas.events import DEFAULT_DISPLAY_NAME, EventKind, envelope

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    """单条连接的生命周期状态。"""

    CONNECTED = "connected"
    JOINED = "joined"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"


class ParticipantConnection:
    """一个参与者的连接。

    Attributes:
        connection_id: 连接建立时分配的临时标识。
        state: 当前生命周期状态。
        rooms: 该连接已加入的房间。
    """

    def __init__(self, connection_id: str, sender: Callable[[str], Awaitable[None]]) -> None:
        self.connection_id = connection_id
        self.state = ConnectionState.CONNECTED
        self.rooms: set[str] = set()
        self._sender = sender
        # 同一条连接上的写操作串行化，避免并发广播交错写帧
        self._send_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self.state in (ConnectionState.CONNECTED, ConnectionState.JOINED)

    async def send(self, kind: EventKind, data: dict[str, Any]) -> None:
        """发送一个事件。传输层异常原样抛出，由调用方决定是否吞掉。"""
        message = json.dumps(envelope(kind, data), ensure_ascii=False)
        async with self._send_lock:
            await self._sender(message)

    def __repr__(self) -> str:
        return f"ParticipantConnection({self.connection_id!r}, state={self.state.value})"


class ConnectionRegistry:
    """进程级连接表：连接 → 显示名、房间 → 成员。"""

    def __init__(self) -> None:
        self._connections: dict[str, ParticipantConnection] = {}
        self._names: dict[str, str] = {}
        # dict 保持加入顺序，花名册按加入先后排列
        self._members: dict[str, dict[str, None]] = {}

    # ── 连接 ──────────────────────────────────────────────────────────

    def register(self, connection: ParticipantConnection) -> None:
        self._connections[connection.connection_id] = connection

    def unregister(self, connection_id: str) -> None:
        """移除连接及其显示名映射。"""
        self._connections.pop(connection_id, None)
        self._names.pop(connection_id, None)

    def get(self, connection_id: str) -> ParticipantConnection | None:
        return self._connections.get(connection_id)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # ── 显示名 ────────────────────────────────────────────────────────

    def set_name(self, connection_id: str, display_name: str) -> None:
        self._names[connection_id] = display_name

    def name_of(self, connection_id: str) -> str:
        return self._names.get(connection_id, DEFAULT_DISPLAY_NAME)

    # ── 房间成员 ──────────────────────────────────────────────────────

    def add_member(self, room_id: str, connection: ParticipantConnection) -> bool:
        """把连接加入房间，返回是否为新加入。"""
        members = self._members.setdefault(room_id, {})
        is_new = connection.connection_id not in members
        members[connection.connection_id] = None
        connection.rooms.add(room_id)
        return is_new

    def remove_member(self, room_id: str, connection: ParticipantConnection) -> int:
        """把连接移出房间，返回房间剩余成员数。"""
        connection.rooms.discard(room_id)
        members = self._members.get(room_id)
        if members is None:
            return 0
        members.pop(connection.connection_id, None)
        if not members:
            del self._members[room_id]
            return 0
        return len(members)

    def is_member(self, room_id: str, connection_id: str) -> bool:
        return connection_id in self._members.get(room_id, {})

    def member_count(self, room_id: str) -> int:
        return len(self._members.get(room_id, {}))

    def members(self, room_id: str) -> list[ParticipantConnection]:
        return [
            self._connections[cid]
            for cid in self._members.get(room_id, {})
            if cid in self._connections
        ]

    def roster(self, room_id: str) -> list[dict[str, str]]:
        """房间当前花名册。"""
        return [
            {"connectionId": cid, "displayName": self.name_of(cid)}
            for cid in self._members.get(room_id, {})
        ]
