"""
coderoom.services.execution
~~~~~~~~~~~~~~~~~~~~~~~~~~~

执行桥 —— 把房间里的运行 / 输入 / 停止请求路由到代码执行协作方，并把输出广播回房间。

两种模式共用同一个接口（``ExecutionBridge``）：

- ``LocalExecutionBridge``  本地子进程，流式输出，支持转发 stdin 和强制停止。
  每个房间最多一个存活进程，新的运行总是先杀掉旧进程（抢占，不排队）。
  状态机：idle → compiling（仅编译型语言）→ running → idle。
- ``RemoteExecutionBridge`` 远程沙箱一次性请求，结果整体返回，没有持久会话。

所有失败（语言不支持、空代码、进程启动失败、沙箱不可达）都会转换成
``run-output`` 事件里的可读文本，不会向上抛出。
"""
from __future__ import annotations

import asyncio
import codecs
from abc import ABC, abstractmethod
import contextlib
import os
import shutil
import signal
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from coderoom.core.languages import LanguageRegistry, LanguageSpec
from coderoom.core.logging import get_logger
from coderoom.schemas.events import EventKind
from coderoom.services.background import BackgroundTasks
from coderoom.services.connection import ParticipantConnection
from coderoom.services.room_broadcaster import RoomBroadcaster
from coderoom.services.room_state import RoomState, RoomStateStore
from coderoom.services.sandbox import PistonSandbox

logger = get_logger(__name__)

_READ_CHUNK: int = 4096
# 强制结束后等待输出泵收尾的最长时间
_REAP_TIMEOUT: float = 5.0

NO_ACTIVE_PROCESS = "No active process."
PROCESS_STOPPED = "Process stopped."
NO_CODE = "No code to run."


class SessionState(str, Enum):
    IDLE = "idle"
    COMPILING = "compiling"
    RUNNING = "running"


class ExecutionBridge(ABC):
    """执行桥基类：语言解析、提示消息、输出广播和后台任务管理。

    Attributes:
        store: 房间状态仓库（``last_output`` 与 ``execution_session`` 由本组件写入）。
        broadcaster: 房间广播器。
        languages: 语言目录。
    """

    mode: str = "base"

    def __init__(
        self,
        store: RoomStateStore,
        broadcaster: RoomBroadcaster,
        languages: LanguageRegistry,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.languages = languages
        self.tasks = BackgroundTasks("execution")

    # ── 对外接口 ──────────────────────────────────────────────────────

    @abstractmethod
    async def start(
        self,
        room_id: str,
        source: str,
        language: str,
        requester: ParticipantConnection,
        stdin: str = "",
    ) -> None:
        """在房间里开始一次新的运行，抢占尚未结束的旧运行。"""

    @abstractmethod
    async def forward_stdin(self, room_id: str, text: str, requester: ParticipantConnection) -> None:
        """把一行输入转发给房间正在运行的进程。"""

    @abstractmethod
    async def stop(self, room_id: str, requester: ParticipantConnection) -> None:
        """停止房间当前的运行。"""

    @abstractmethod
    async def release_room(self, room_id: str, state: RoomState) -> None:
        """房间被清除后释放其执行资源（静默，不广播）。"""

    @abstractmethod
    def is_running(self, room_id: str) -> bool:
        """房间是否有尚未结束的运行。"""

    async def aclose(self) -> None:
        """关闭时取消所有后台任务。"""
        await self.tasks.aclose()

    # ── 公共工具 ──────────────────────────────────────────────────────

    def _resolve(self, source: str, language: str) -> tuple[LanguageSpec | None, str | None]:
        """检查代码与语言，返回 ``(语言配方, 错误提示)``。"""
        if not source or not source.strip():
            return None, NO_CODE
        spec = self.languages.get(language)
        if spec is None:
            return None, f"Unsupported language: {language}"
        return spec, None

    async def advise(self, requester: ParticipantConnection, room_id: str, text: str) -> None:
        """只发给请求者的一次性提示。"""
        await self.broadcaster.send_to(
            requester,
            EventKind.RUN_OUTPUT,
            {"roomId": room_id, "output": text, "done": True, "advisory": True},
        )

    async def publish(
        self,
        room_id: str,
        output: str,
        done: bool = False,
        exit_code: int | None = None,
    ) -> None:
        """把一段输出写入房间状态并广播给房间全体成员（包括发起者）。"""
        if output:
            self.store.append_output(room_id, output)
        data: dict[str, Any] = {"roomId": room_id, "output": output, "done": done}
        if exit_code is not None:
            data["exitCode"] = exit_code
        await self.broadcaster.broadcast(room_id, EventKind.RUN_OUTPUT, data)


# ---------------------------------------------------------------------------
# 本地流式执行
# ---------------------------------------------------------------------------

@dataclass(eq=False)
class ExecutionSession:
    """一个房间内的一次运行，独占一个进程和一个临时目录。"""

    room_id: str
    generation: int
    language: str
    workdir: Path | None = None
    state: SessionState = SessionState.IDLE
    process: asyncio.subprocess.Process | None = None
    task: asyncio.Task[Any] | None = field(default=None, repr=False)

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.returncode is None


def _kill_process(process: asyncio.subprocess.Process) -> None:
    """强制结束进程（POSIX 下连同其进程组）。"""
    if process.returncode is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except (ProcessLookupError, PermissionError):
        # 进程已退出，或进程组已不存在
        with contextlib.suppress(ProcessLookupError):
            process.kill()


class LocalExecutionBridge(ExecutionBridge):
    """本地子进程执行，输出逐块流式广播。"""

    mode = "local"

    def __init__(
        self,
        store: RoomStateStore,
        broadcaster: RoomBroadcaster,
        languages: LanguageRegistry,
    ) -> None:
        super().__init__(store, broadcaster, languages)
        self._locks: dict[str, asyncio.Lock] = {}
        self._generation: int = 0

    def _lock_for(self, room_id: str) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = self._locks[room_id] = asyncio.Lock()
        return lock

    def _current(self, room_id: str) -> ExecutionSession | None:
        state = self.store.get(room_id)
        return state.execution_session if state is not None else None

    def _is_current(self, session: ExecutionSession) -> bool:
        return self._current(session.room_id) is session

    def is_running(self, room_id: str) -> bool:
        return self._current(room_id) is not None

    # ── 运行 ──────────────────────────────────────────────────────────

    async def start(
        self,
        room_id: str,
        source: str,
        language: str,
        requester: ParticipantConnection,
        stdin: str = "",
    ) -> None:
        spec, problem = self._resolve(source, language)
        if spec is None:
            await self.advise(requester, room_id, problem or NO_CODE)
            return

        async with self._lock_for(room_id):
            await self._kill_current(room_id)

            state = self.store.get(room_id)
            if state is None:
                # 等待旧进程退出期间房间已被清除
                return

            self._generation += 1
            session = ExecutionSession(
                room_id=room_id,
                generation=self._generation,
                language=spec.name,
            )
            # 先登记新会话再做任何 await，旧句柄此时已经不可达
            state.execution_session = session
            self.store.set_output(room_id, "")
            session.task = self.tasks.spawn(self._run(session, spec, source, stdin))

        logger.info(
            "开始运行 | room=%s | language=%s | generation=%d",
            room_id, spec.name, session.generation,
        )

    async def _run(self, session: ExecutionSession, spec: LanguageSpec, source: str, stdin: str) -> None:
        room_id = session.room_id
        try:
            workdir = session.workdir = Path(tempfile.mkdtemp(prefix="coderoom-"))
            (workdir / spec.filename).write_text(source, encoding="utf-8")

            if spec.compiled and spec.compile:
                session.state = SessionState.COMPILING
                ok = await self._compile(session, spec)
                if not ok:
                    return

            session.state = SessionState.RUNNING
            process = await self._spawn_process(spec.render(spec.run, workdir), workdir, with_stdin=True)
            session.process = process
            if not self._is_current(session):
                _kill_process(process)
                await process.wait()
                return

            if stdin:
                await self._write_stdin(process, stdin)

            await self._pump_output(session, process)
            exit_code = await process.wait()

            if self._is_current(session):
                self._detach(session)
                await self.publish(room_id, "", done=True, exit_code=exit_code)
                logger.info("运行结束 | room=%s | exit=%s", room_id, exit_code)
        except (OSError, ValueError) as e:
            # 临时目录、源文件写入（如无法编码的代理字符）或进程启动失败
            logger.warning("进程启动失败 | room=%s | %s", room_id, e)
            if self._is_current(session):
                self._detach(session)
                await self.publish(
                    room_id,
                    f"Error: could not start {spec.display_name or spec.name} process: {e}\n",
                    done=True,
                )
        finally:
            session.state = SessionState.IDLE
            if self._is_current(session):
                self._detach(session)
            if session.workdir is not None:
                shutil.rmtree(session.workdir, ignore_errors=True)

    async def _compile(self, session: ExecutionSession, spec: LanguageSpec) -> bool:
        """编译源代码。失败时发出唯一一条输出事件并返回 False。"""
        assert spec.compile is not None
        assert session.workdir is not None
        process = await self._spawn_process(spec.render(spec.compile, session.workdir), session.workdir)
        session.process = process
        if not self._is_current(session):
            _kill_process(process)
            await process.wait()
            return False

        stdout, _ = await process.communicate()
        if not self._is_current(session):
            return False
        if process.returncode != 0:
            text = stdout.decode("utf-8", errors="replace")
            if text and not text.endswith("\n"):
                text += "\n"
            text += f"Compilation failed (exit code {process.returncode})."
            self._detach(session)
            await self.publish(session.room_id, text, done=True, exit_code=process.returncode)
            logger.info("编译失败 | room=%s | exit=%s", session.room_id, process.returncode)
            return False
        return True

    @staticmethod
    async def _spawn_process(
        command: list[str], workdir: Path, with_stdin: bool = False,
    ) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE if with_stdin else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=str(workdir),
            start_new_session=os.name == "posix",
        )

    async def _pump_output(self, session: ExecutionSession, process: asyncio.subprocess.Process) -> None:
        """逐块读取合并后的 stdout/stderr 并实时广播。"""
        assert process.stdout is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await process.stdout.read(_READ_CHUNK)
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail and self._is_current(session):
                    await self.publish(session.room_id, tail)
                return
            if not self._is_current(session):
                # 已被抢占或停止，丢弃被杀进程残留的输出
                continue
            text = decoder.decode(chunk)
            if text:
                await self.publish(session.room_id, text)

    @staticmethod
    async def _write_stdin(process: asyncio.subprocess.Process, text: str) -> bool:
        if process.stdin is None or process.returncode is not None:
            return False
        if not text.endswith("\n"):
            text += "\n"
        try:
            process.stdin.write(text.encode("utf-8", errors="replace"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            return False
        return True

    # ── 输入 / 停止 ───────────────────────────────────────────────────

    async def forward_stdin(self, room_id: str, text: str, requester: ParticipantConnection) -> None:
        session = self._current(room_id)
        if session is None or session.state is not SessionState.RUNNING or not session.alive:
            await self.advise(requester, room_id, NO_ACTIVE_PROCESS)
            return
        assert session.process is not None
        if not await self._write_stdin(session.process, text):
            await self.advise(requester, room_id, NO_ACTIVE_PROCESS)

    async def stop(self, room_id: str, requester: ParticipantConnection) -> None:
        async with self._lock_for(room_id):
            stopped = await self._kill_current(room_id)
        if stopped:
            logger.info("运行已停止 | room=%s", room_id)
            await self.publish(room_id, PROCESS_STOPPED, done=True)
        else:
            await self.advise(requester, room_id, NO_ACTIVE_PROCESS)

    async def release_room(self, room_id: str, state: RoomState) -> None:
        session = state.execution_session
        state.execution_session = None
        if not self.store.exists(room_id):
            # 同名房间可能已被重新创建，它的锁不能丢
            self._locks.pop(room_id, None)
        if isinstance(session, ExecutionSession):
            await self._kill_session(session)
            logger.info("房间已清除，运行进程已结束 | room=%s", room_id)

    # ── 内部 ──────────────────────────────────────────────────────────

    def _detach(self, session: ExecutionSession) -> None:
        state = self.store.get(session.room_id)
        if state is not None and state.execution_session is session:
            state.execution_session = None

    async def _kill_current(self, room_id: str) -> bool:
        """结束房间当前的运行并确认其进程已退出。返回是否确实结束了一个运行。"""
        session = self._current(room_id)
        if session is None:
            return False
        self._detach(session)
        await self._kill_session(session)
        return True

    async def _kill_session(self, session: ExecutionSession) -> None:
        if session.process is not None:
            _kill_process(session.process)
            await session.process.wait()

        task = session.task
        if task is None or task.done() or task is asyncio.current_task():
            return
        try:
            # 会话已脱离房间，输出泵读到 EOF 后自行收尾
            await asyncio.wait_for(asyncio.shield(task), timeout=_REAP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("输出泵未按时结束，强制取消 | room=%s", session.room_id)
            task.cancel()
            if session.process is not None:
                _kill_process(session.process)

    async def aclose(self) -> None:
        for room_id in self.store.room_ids():
            state = self.store.get(room_id)
            if state is not None and isinstance(state.execution_session, ExecutionSession):
                session = state.execution_session
                state.execution_session = None
                if session.process is not None:
                    _kill_process(session.process)
        await super().aclose()


# ---------------------------------------------------------------------------
# 远程一次性执行
# ---------------------------------------------------------------------------

class RemoteExecutionBridge(ExecutionBridge):
    """远程沙箱执行：一次请求得到完整输出，不支持交互输入。"""

    mode = "remote"

    def __init__(
        self,
        store: RoomStateStore,
        broadcaster: RoomBroadcaster,
        languages: LanguageRegistry,
        sandbox: PistonSandbox,
    ) -> None:
        super().__init__(store, broadcaster, languages)
        self.sandbox = sandbox
        self._generation: int = 0
        # 房间 → 正在等待结果的运行代号
        self._pending: dict[str, int] = {}

    def is_running(self, room_id: str) -> bool:
        return room_id in self._pending

    async def start(
        self,
        room_id: str,
        source: str,
        language: str,
        requester: ParticipantConnection,
        stdin: str = "",
    ) -> None:
        spec, problem = self._resolve(source, language)
        if spec is None:
            await self.advise(requester, room_id, problem or NO_CODE)
            return
        state = self.store.get(room_id)
        if state is None:
            return

        # 新的运行使尚未返回的旧结果失效
        self._generation += 1
        generation = self._pending[room_id] = self._generation
        self.store.set_output(room_id, "")
        self.tasks.spawn(self._run(state, generation, spec, source, stdin))

    async def _run(self, state: RoomState, generation: int, spec: LanguageSpec, source: str, stdin: str) -> None:
        room_id = state.room_id
        try:
            result = await self.sandbox.execute(spec, source, stdin)
        finally:
            current = self._pending.get(room_id) == generation
            if current:
                del self._pending[room_id]
        if not current:
            logger.debug("丢弃过期的远程执行结果 | room=%s", room_id)
            return
        # 房间被清除（或清除后重建）时结果作废
        if self.store.get(room_id) is not state:
            return
        self.store.set_output(room_id, "")
        await self.publish(room_id, result.output, done=True)

    async def forward_stdin(self, room_id: str, text: str, requester: ParticipantConnection) -> None:
        await self.advise(
            requester, room_id,
            "Interactive input is not available in this execution mode; set the input box before running.",
        )

    async def stop(self, room_id: str, requester: ParticipantConnection) -> None:
        if self._pending.pop(room_id, None) is None:
            await self.advise(requester, room_id, NO_ACTIVE_PROCESS)
            return
        await self.publish(room_id, PROCESS_STOPPED, done=True)

    async def release_room(self, room_id: str, state: RoomState) -> None:
        if not self.store.exists(room_id):
            self._pending.pop(room_id, None)


def create_execution_bridge(
    mode: str,
    store: RoomStateStore,
    broadcaster: RoomBroadcaster,
    languages: LanguageRegistry,
    sandbox: PistonSandbox,
) -> ExecutionBridge:
    """按部署配置选择执行模式。"""
    if mode == "local":
        return LocalExecutionBridge(store, broadcaster, languages)
    return RemoteExecutionBridge(store, broadcaster, languages, sandbox)
