"""
coderoom.services.room_broadcaster
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间广播器 —— 把事件扇出给房间内的连接。

投递语义是尽力而为：不确认、不重试。向已经断开的连接发送失败时只记录日志，
花名册由该连接自己的断开流程负责修正。
"""
from __future__ import annotations

import asyncio
from collections.abc import Collection
from typing import Any

from coderoom.core.logging import get_logger
from coderoom.schemas.events import EventKind
from coderoom.services.connection import ConnectionRegistry, ParticipantConnection

logger = get_logger(__name__)


class RoomBroadcaster:
    """基于连接表的房间广播器。

    Attributes:
        registry: 进程级连接表。
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    async def send_to(
        self, connection: ParticipantConnection, kind: EventKind, data: dict[str, Any],
    ) -> None:
        """单播给一个连接。"""
        if not connection.is_open:
            return
        try:
            await connection.send(kind, data)
        except Exception as e:
            logger.debug("单播失败，忽略 | conn=%s | event=%s | %s", connection.connection_id, kind.value, e)

    async def broadcast(
        self,
        room_id: str,
        kind: EventKind,
        data: dict[str, Any],
        exclude: str | None = None,
        only: Collection[str] | None = None,
    ) -> int:
        """向房间内成员广播事件。

        Args:
            room_id: 房间标识。
            kind: 事件类型。
            data: 事件载荷。
            exclude: 需要排除的连接（通常是发送者）。
            only: 只发给这些连接（如视频子房间成员）。

        Returns:
            尝试投递的连接数。
        """
        targets = [
            conn for conn in self.registry.members(room_id)
            if conn.is_open
            and conn.connection_id != exclude
            and (only is None or conn.connection_id in only)
        ]
        if not targets:
            return 0

        results = await asyncio.gather(
            *(conn.send(kind, data) for conn in targets),
            return_exceptions=True,
        )
        for conn, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.debug(
                    "广播失败，忽略 | room=%s | conn=%s | event=%s | %s",
                    room_id, conn.connection_id, kind.value, result,
                )
        return len(targets)
