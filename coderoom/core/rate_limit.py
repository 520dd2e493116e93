"""
coderoom.core.rate_limit
~~~~~~~~~~~~~~~~~~~~~~~~

REST 接口与 WebSocket AI 请求的限流配置。
"""
from __future__ import annotations

import time

from slowapi import Limiter
from slowapi.util import get_remote_address

# --------- HTTP 接口限流器 ---------
# 基于客户端 IP 地址进行限流
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
)


# --------- WebSocket 限流器 ---------
class WebSocketRateLimiter:
    """基于内存的简单 WebSocket 限流器。

    记录每个连接上一次触发 AI 调用的时间，过快的请求会被拒绝。
    只用于会调用 LLM 的事件，普通编辑和聊天事件不受限制。
    """

    def __init__(self, interval_seconds: float = 2.0) -> None:
        self.interval_seconds = interval_seconds
        self._last_request_time: dict[str, float] = {}

    def is_allowed(self, client_id: str) -> bool:
        """检查客户端是否允许发起请求。

        Args:
            client_id: 连接标识。

        Returns:
            是否允许。如果允许，则同时更新上次请求时间。
        """
        if self.interval_seconds <= 0:
            return True

        now = time.monotonic()
        last_time = self._last_request_time.get(client_id)

        if last_time is None or now - last_time >= self.interval_seconds:
            self._last_request_time[client_id] = now
            return True
        return False

    def remove_client(self, client_id: str) -> None:
        """清理断开连接的客户端记录。"""
        self._last_request_time.pop(client_id, None)
