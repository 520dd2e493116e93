"""
coderoom.services.background
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

后台任务容器 —— 持有 ``asyncio.Task`` 的强引用，任务异常统一记录日志。

LLM 调用、远程执行和子进程输出泵都以后台任务运行，
不阻塞连接的事件处理循环。
"""
from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Coroutine
from typing import Any

from coderoom.core.logging import get_logger

logger = get_logger(__name__)


class BackgroundTasks:
    """一组后台任务。"""

    def __init__(self, name: str) -> None:
        self.name = name
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """启动后台任务并持有引用。"""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s 后台任务异常: %s", self.name, exc, exc_info=exc)

    async def join(self) -> None:
        """等待当前所有任务结束（测试和优雅关闭使用）。"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """取消并等待所有任务。"""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

    def __len__(self) -> int:
        return len(self._tasks)
