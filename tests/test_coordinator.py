"""
tests.test_coordinator
~~~~~~~~~~~~~~~~~~~~~~

会话协调器单元测试：加入与追平、变更转发、离开通知、房间清除、
聊天 / AI 助手、视频同步，以及异常事件的隔离。
"""
from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest
from conftest import Recorder, frame

from coderoom.core.rate_limit import WebSocketRateLimiter
from coderoom.llm.gemini_provider import ERROR_PREFIX
from coderoom.services.coordinator import RATE_LIMIT_NOTICE, SessionCoordinator


# ── 加入与追平 ────────────────────────────────────────────────────────

class TestJoin:
    """测试加入房间和迟到者追平。"""

    @pytest.mark.asyncio
    async def test_roster_sent_to_everyone(self, coordinator: SessionCoordinator, join) -> None:
        _, rec_a = await join("alice")
        conn_b, _ = await join("bob")

        joined = rec_a.payloads("joined")[-1]
        assert [c["displayName"] for c in joined["clients"]] == ["alice", "bob"]
        assert joined["connectionId"] == conn_b.connection_id

    @pytest.mark.asyncio
    async def test_late_joiner_catch_up(self, coordinator: SessionCoordinator, join) -> None:
        conn_a, _ = await join("alice")
        await coordinator.dispatch(conn_a, frame("code-change", roomId="r1", content="x = 1"))
        await coordinator.dispatch(conn_a, frame("language-change", roomId="r1", language="python"))
        await coordinator.dispatch(conn_a, frame("chat-message", roomId="r1", text="hi"))

        _, rec_b = await join("bob")

        assert rec_b.names() == [
            "joined", "ai-history-sync", "chat-history", "code-change", "language-change",
        ]
        assert rec_b.payloads("code-change")[0]["content"] == "x = 1"
        assert rec_b.payloads("language-change")[0]["language"] == "python"
        assert [m["text"] for m in rec_b.payloads("chat-history")[0]["messages"]] == ["hi"]

    @pytest.mark.asyncio
    async def test_blank_name_joins_as_anonymous(self, coordinator: SessionCoordinator, join) -> None:
        conn, rec = await join("   ")

        joined = rec.payloads("joined")[0]
        assert joined["displayName"] == "Anonymous"
        assert coordinator.registry.name_of(conn.connection_id) == "Anonymous"

    @pytest.mark.asyncio
    async def test_empty_name_joins_as_anonymous(self, coordinator: SessionCoordinator, join) -> None:
        _, rec = await join("")

        assert rec.payloads("joined")[0]["displayName"] == "Anonymous"

    @pytest.mark.asyncio
    async def test_long_name_truncated(self, coordinator: SessionCoordinator, join) -> None:
        _, rec = await join("x" * 65)

        assert rec.payloads("joined")[0]["displayName"] == "x" * 64

    @pytest.mark.asyncio
    async def test_fresh_room_catch_up(self, coordinator: SessionCoordinator, join) -> None:
        """空房间只追平 AI 记录和语言。"""
        _, rec = await join("alice")

        assert rec.names() == ["joined", "ai-history-sync", "language-change"]
        assert rec.payloads("language-change")[0]["language"] == "javascript"

    @pytest.mark.asyncio
    async def test_run_output_in_catch_up(self, coordinator: SessionCoordinator, join) -> None:
        conn_a, _ = await join("alice")
        await coordinator.dispatch(conn_a, frame("run-output", roomId="r1", output="42\n"))

        _, rec_b = await join("bob")

        output = rec_b.payloads("run-output")[0]
        assert output["output"] == "42\n"
        assert output["done"] is True


# ── 变更转发 ──────────────────────────────────────────────────────────

class TestRelay:
    """测试文档与元数据变更：写入状态后转发给其他成员。"""

    @pytest.mark.asyncio
    async def test_code_change_excludes_sender(self, coordinator: SessionCoordinator, join) -> None:
        conn_a, rec_a = await join("alice")
        _, rec_b = await join("bob")
        rec_a.clear()

        await coordinator.dispatch(conn_a, frame("code-change", roomId="r1", content="print(1)"))

        assert rec_b.payloads("code-change")[-1]["content"] == "print(1)"
        assert rec_a.frames == []
        assert coordinator.store.get("r1").document == "print(1)"

    @pytest.mark.asyncio
    async def test_rooms_are_isolated(self, coordinator: SessionCoordinator, join) -> None:
        conn_a, _ = await join("alice", room_id="r1")
        _, rec_b = await join("bob", room_id="r2")
        rec_b.clear()

        await coordinator.dispatch(conn_a, frame("input-change", roomId="r1", text="5"))

        assert rec_b.frames == []
        assert coordinator.store.get("r2").stdin == ""

    @pytest.mark.asyncio
    async def test_non_member_events_dropped(self, coordinator: SessionCoordinator) -> None:
        conn = coordinator.connect(Recorder())

        await coordinator.dispatch(conn, frame("code-change", roomId="r1", content="sneaky"))

        assert not coordinator.store.exists("r1")

    @pytest.mark.asyncio
    async def test_sync_code_request_without_membership(self, coordinator: SessionCoordinator, join) -> None:
        conn_a, _ = await join("alice")
        await coordinator.dispatch(conn_a, frame("code-change", roomId="r1", content="shared"))

        recorder = Recorder()
        outsider = coordinator.connect(recorder)
        await coordinator.dispatch(outsider, frame("sync-code-request", roomId="r1"))

        assert recorder.payloads("sync-code")[0]["code"] == "shared"


# ── 离开与清除 ────────────────────────────────────────────────────────

class TestDeparture:
    """测试离开通知恰好一次，以及最后一人离开时的房间清除。"""

    @pytest.mark.asyncio
    async def test_disconnect_announced_exactly_once(self, coordinator: SessionCoordinator, join) -> None:
        _, rec_a = await join("alice")
        conn_b, rec_b = await join("bob")
        _, rec_c = await join("carol")

        await coordinator.disconnect(conn_b)
        await coordinator.disconnect(conn_b)

        for recorder in (rec_a, rec_c):
            notices = recorder.payloads("disconnected")
            assert len(notices) == 1
            assert notices[0]["connectionId"] == conn_b.connection_id
            assert notices[0]["displayName"] == "bob"
        assert rec_b.payloads("disconnected") == []
        assert coordinator.registry.member_count("r1") == 2

    @pytest.mark.asyncio
    async def test_teardown_when_last_member_leaves(self, coordinator: SessionCoordinator, join) -> None:
        conn_a, _ = await join("alice")
        conn_b, _ = await join("bob")
        await coordinator.dispatch(conn_a, frame("code-change", roomId="r1", content="secret"))
        await coordinator.dispatch(conn_a, frame("chat-message", roomId="r1", text="hello"))

        await coordinator.disconnect(conn_a)
        assert coordinator.store.exists("r1")

        await coordinator.dispatch(conn_b, frame("leave", roomId="r1"))
        assert not coordinator.store.exists("r1")

        _, rec_c = await join("carol")
        assert rec_c.payloads("code-change") == []
        assert rec_c.payloads("chat-history") == []

    @pytest.mark.asyncio
    async def test_multi_room_disconnect(self, coordinator: SessionCoordinator, join) -> None:
        conn_a, _ = await join("alice", room_id="r1")
        await coordinator.dispatch(conn_a, frame("join", roomId="r2", displayName="alice"))
        _, rec_b = await join("bob", room_id="r2")

        await coordinator.disconnect(conn_a)

        assert not coordinator.store.exists("r1")
        assert coordinator.store.exists("r2")
        assert len(rec_b.payloads("disconnected")) == 1

    @pytest.mark.asyncio
    async def test_closed_connection_ignored(self, coordinator: SessionCoordinator, join) -> None:
        conn_a, _ = await join("alice")
        await coordinator.disconnect(conn_a)

        await coordinator.dispatch(conn_a, frame("join", roomId="r1"))

        assert not coordinator.store.exists("r1")


# ── 容错 ──────────────────────────────────────────────────────────────

class TestIsolation:
    """测试异常事件与失效连接不影响其他参与者。"""

    @pytest.mark.asyncio
    async def test_malformed_events_dropped(self, coordinator: SessionCoordinator, join) -> None:
        conn_a, _ = await join("alice")
        _, rec_b = await join("bob")

        await coordinator.dispatch(conn_a, "{{{ not json")
        await coordinator.dispatch(conn_a, frame("code-change", content="x"))
        await coordinator.dispatch(conn_a, frame("code-change", roomId="r1"))
        await coordinator.dispatch(conn_a, frame("no-such-event", roomId="r1"))
        await coordinator.dispatch(conn_a, frame("code-change", roomId="r1", content="ok"))

        assert [p["content"] for p in rec_b.payloads("code-change")] == ["ok"]

    @pytest.mark.asyncio
    async def test_broken_connection_does_not_block_others(
        self, coordinator: SessionCoordinator, join,
    ) -> None:
        conn_a, _ = await join("alice")
        _, rec_b = await join("bob")
        _, rec_c = await join("carol")
        rec_b.broken = True

        await coordinator.dispatch(conn_a, frame("code-change", roomId="r1", content="still here"))

        assert rec_c.payloads("code-change")[-1]["content"] == "still here"


# ── 聊天与 AI 助手 ────────────────────────────────────────────────────

class TestChat:
    @pytest.mark.asyncio
    async def test_chat_echo_includes_sender(self, coordinator: SessionCoordinator, join) -> None:
        conn_a, rec_a = await join("alice")
        _, rec_b = await join("bob")

        await coordinator.dispatch(conn_a, frame("chat-message", roomId="r1", message={"text": "hello"}))

        mine = rec_a.payloads("chat-message")[0]
        theirs = rec_b.payloads("chat-message")[0]
        assert mine["id"] == theirs["id"]
        assert theirs["senderName"] == "alice"
        assert theirs["text"] == "hello"


class TestAssistant:
    """测试 AI 面板的自动回复、限流与文档生成。"""

    @pytest.mark.asyncio
    async def test_auto_reply_broadcast(
        self, coordinator: SessionCoordinator, join, mock_bot: MagicMock,
    ) -> None:
        conn_a, rec_a = await join("alice")
        _, rec_b = await join("bob")
        await coordinator.dispatch(conn_a, frame("code-change", roomId="r1", content="for i in x:"))

        await coordinator.dispatch(conn_a, frame("ai-message", roomId="r1", text="how do I loop?"))
        await coordinator.tasks.join()

        messages = rec_b.payloads("ai-message")
        assert [m["senderName"] for m in messages] == ["alice", "AI Assistant"]
        assert messages[1]["isAi"] is True
        assert messages[1]["text"] == "Use a for loop."
        assert len(rec_a.payloads("ai-message")) == 2

        _, prompt = mock_bot.complete.call_args.args
        assert "how do I loop?" in prompt
        assert "for i in x:" in prompt
        assert len(coordinator.store.ai_history("r1")) == 2

    @pytest.mark.asyncio
    async def test_ai_flagged_message_not_answered(
        self, coordinator: SessionCoordinator, join, mock_bot: MagicMock,
    ) -> None:
        conn_a, _ = await join("alice")

        await coordinator.dispatch(
            conn_a, frame("ai-message", roomId="r1", message={"text": "answer", "isAi": True}),
        )
        await coordinator.tasks.join()

        mock_bot.complete.assert_not_called()
        assert coordinator.store.ai_history("r1")[0].sender_name == "AI Assistant"

    @pytest.mark.asyncio
    async def test_reply_dropped_after_teardown(
        self, coordinator: SessionCoordinator, join, mock_bot: MagicMock,
    ) -> None:
        release = asyncio.Event()

        async def slow_complete(system_prompt: str, user_content: str) -> str:
            await release.wait()
            return "too late"

        mock_bot.complete.side_effect = slow_complete
        conn_a, _ = await join("alice")
        await coordinator.dispatch(conn_a, frame("ai-message", roomId="r1", text="question"))
        await asyncio.sleep(0)

        await coordinator.disconnect(conn_a)
        release.set()
        await coordinator.tasks.join()

        assert not coordinator.store.exists("r1")

    @pytest.mark.asyncio
    async def test_rate_limited(
        self, coordinator: SessionCoordinator, join, mock_bot: MagicMock,
    ) -> None:
        coordinator.limiter = WebSocketRateLimiter(interval_seconds=60)
        conn_a, rec_a = await join("alice")

        await coordinator.dispatch(conn_a, frame("ai-message", roomId="r1", text="one"))
        await coordinator.dispatch(conn_a, frame("ai-message", roomId="r1", text="two"))
        await coordinator.tasks.join()

        assert mock_bot.complete.await_count == 1
        assert rec_a.payloads("notice")[0]["message"] == RATE_LIMIT_NOTICE

    @pytest.mark.asyncio
    async def test_ai_history_request(self, coordinator: SessionCoordinator, join) -> None:
        conn_a, rec_a = await join("alice")
        await coordinator.dispatch(conn_a, frame("ai-message", roomId="r1", text="q"))
        await coordinator.tasks.join()
        rec_a.clear()

        await coordinator.dispatch(conn_a, frame("ai-history-request", roomId="r1"))

        messages = rec_a.payloads("ai-history-sync")[0]["messages"]
        assert [m["text"] for m in messages] == ["q", "Use a for loop."]

    @pytest.mark.asyncio
    async def test_doc_result_unicast(
        self, coordinator: SessionCoordinator, join, mock_bot: MagicMock,
    ) -> None:
        mock_bot.complete.return_value = "## add(a, b)"
        conn_a, rec_a = await join("alice")
        _, rec_b = await join("bob")

        await coordinator.dispatch(
            conn_a, frame("ai-doc-request", roomId="r1", code="def add(a, b): ...", language="python"),
        )
        await coordinator.tasks.join()

        assert rec_a.payloads("ai-doc-result") == [{"roomId": "r1", "documentation": "## add(a, b)"}]
        assert rec_b.payloads("ai-doc-result") == []

    @pytest.mark.asyncio
    async def test_doc_request_errors(
        self, coordinator: SessionCoordinator, join, mock_bot: MagicMock,
    ) -> None:
        conn_a, rec_a = await join("alice")

        await coordinator.dispatch(conn_a, frame("ai-doc-request", roomId="r1", code="   "))
        mock_bot.complete.return_value = f"{ERROR_PREFIX} (boom). Please try again!"
        await coordinator.dispatch(conn_a, frame("ai-doc-request", roomId="r1", code="x = 1"))
        await coordinator.tasks.join()

        results = rec_a.payloads("ai-doc-result")
        assert len(results) == 2
        assert all("error" in r and "documentation" not in r for r in results)
        assert mock_bot.complete.await_count == 1


# ── 执行（远程模式）──────────────────────────────────────────────────

class TestRun:
    """测试运行请求经由协调器到达执行桥。"""

    @pytest.mark.asyncio
    async def test_run_result_broadcast(
        self, coordinator: SessionCoordinator, join, mock_sandbox: MagicMock,
    ) -> None:
        conn_a, rec_a = await join("alice")
        _, rec_b = await join("bob")
        await coordinator.dispatch(conn_a, frame("language-change", roomId="r1", language="python"))
        await coordinator.dispatch(conn_a, frame("input-change", roomId="r1", text="7"))

        await coordinator.dispatch(conn_a, frame("run-start", roomId="r1", code="print(input())"))
        await coordinator.bridge.tasks.join()

        spec, source, stdin = mock_sandbox.execute.call_args.args
        assert spec.name == "python"
        assert source == "print(input())"
        assert stdin == "7"
        for recorder in (rec_a, rec_b):
            assert recorder.payloads("run-output")[-1] == {"roomId": "r1", "output": "hi\n", "done": True}
        assert coordinator.store.get("r1").last_output == "hi\n"

    @pytest.mark.asyncio
    async def test_unsupported_language_advisory(self, coordinator: SessionCoordinator, join) -> None:
        conn_a, rec_a = await join("alice")
        _, rec_b = await join("bob")

        await coordinator.dispatch(conn_a, frame("run-start", roomId="r1", code="x", language="cobol"))

        advisory = rec_a.payloads("run-output")[-1]
        assert advisory["output"] == "Unsupported language: cobol"
        assert advisory["advisory"] is True
        assert rec_b.payloads("run-output") == []


# ── 一起看视频 ────────────────────────────────────────────────────────

class TestVideo:
    @pytest.mark.asyncio
    async def test_video_actions_reach_video_members_only(
        self, coordinator: SessionCoordinator, join,
    ) -> None:
        conn_a, rec_a = await join("alice")
        conn_b, rec_b = await join("bob")
        _, rec_c = await join("carol")

        await coordinator.dispatch(conn_a, frame("video-join", roomId="r1"))
        await coordinator.dispatch(conn_b, frame("video-join", roomId="r1"))
        assert rec_a.payloads("video-state-sync") == [{}]

        await coordinator.dispatch(conn_a, frame("video-play", roomId="r1", currentTime=12.0))

        assert rec_b.payloads("video-play")[0]["currentTime"] == 12.0
        assert rec_c.payloads("video-play") == []
        assert rec_a.payloads("video-play") == []

        video = coordinator.store.get("r1").video_state
        assert video.is_playing is True
        assert video.position_seconds == 12.0

    @pytest.mark.asyncio
    async def test_video_sync_request(self, coordinator: SessionCoordinator, join) -> None:
        conn_a, _ = await join("alice")
        await coordinator.dispatch(conn_a, frame("video-change", roomId="r1", videoUrl="https://v/1.mp4"))

        recorder = Recorder()
        outsider = coordinator.connect(recorder)
        await coordinator.dispatch(outsider, frame("video-sync-request", roomId="r1"))

        state = recorder.payloads("video-state-sync")[0]
        assert state["mediaUrl"] == "https://v/1.mp4"
        assert state["isPlaying"] is True


# ── 查询 ──────────────────────────────────────────────────────────────

class TestRoomInfo:
    @pytest.mark.asyncio
    async def test_list_rooms(self, coordinator: SessionCoordinator, join) -> None:
        await join("alice", room_id="r1")
        await join("bob", room_id="r1")
        await join("carol", room_id="r2")

        rooms = {info.room_id: info for info in coordinator.list_rooms()}

        assert rooms["r1"].online_count == 2
        assert rooms["r2"].online_count == 1
        assert coordinator.room_info("missing") is None
