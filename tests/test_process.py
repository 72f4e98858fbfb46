import asyncio
import sys
from pathlib import Path

import pytest
import pytest_asyncio

from agentbridge.bus import EventBus
from agentbridge.core.errors import ProcessWriteError, SpawnError
from agentbridge.core.models import ApprovalDecision, PermissionMode, TurnState
from agentbridge.core.process import AgentSettings, _read_lines, build_agent_args, reap, spawn_agent
from agentbridge.core.session import ChatSession
from tests.conftest import EventRecorder, eventually

FAKE_AGENT = Path(__file__).parent / "fixtures" / "fake_agent.py"


async def spawn_fake(command: list[str], cwd: str):
    # Swap the configured executable for the fake agent, keep the real argv
    return await spawn_agent([sys.executable, str(FAKE_AGENT), *command[1:]], cwd)


class TestBuildArgs:
    def test_new_assisted(self):
        args = build_agent_args(
            conversation_id="conv", resume=False, permission_mode=PermissionMode.ASSISTED, max_turns=7
        )
        assert args == [
            "-p",
            "--verbose",
            "--output-format",
            "stream-json",
            "--input-format",
            "stream-json",
            "--max-turns",
            "7",
            "--permission-mode",
            "default",
            "--permission-prompt-tool",
            "stdio",
            "--session-id",
            "conv",
        ]

    def test_resume_unrestricted_ignores_system_prompt(self):
        args = build_agent_args(
            conversation_id="conv",
            resume=True,
            permission_mode=PermissionMode.UNRESTRICTED,
            max_turns=50,
            system_prompt="ignored on resume",
        )
        assert args[-3:] == ["--dangerously-skip-permissions", "--resume", "conv"]
        assert "--append-system-prompt" not in args


class TestReadLines:
    @pytest.mark.asyncio
    async def test_oversized_line_is_dropped(self):
        reader = asyncio.StreamReader(limit=16)
        reader.feed_data(b"short\n" + b"x" * 100 + b"\nafter\n")
        reader.feed_eof()
        assert [line async for line in _read_lines(reader)] == [b"short\n", b"after\n"]

    @pytest.mark.asyncio
    async def test_partial_last_line(self):
        reader = asyncio.StreamReader()
        reader.feed_data(b"one\ntail")
        reader.feed_eof()
        assert [line async for line in _read_lines(reader)] == [b"one\n", b"tail"]


class TestAgentProcess:
    @pytest.mark.asyncio
    async def test_spawn_missing_executable(self, tmp_path: Path):
        with pytest.raises(SpawnError):
            await spawn_agent([str(tmp_path / "no-such-agent")], str(tmp_path))

    @pytest.mark.asyncio
    async def test_write_after_exit(self, tmp_path: Path):
        handle = await spawn_agent([sys.executable, "-c", "pass"], str(tmp_path))
        assert await handle.wait() == 0
        with pytest.raises(ProcessWriteError):
            await handle.write_line({"type": "user"})

    @pytest.mark.asyncio
    async def test_reap_kills_stubborn_process(self, tmp_path: Path):
        script = "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); print('ready', flush=True); time.sleep(30)"
        handle = await spawn_agent([sys.executable, "-c", script], str(tmp_path))
        async for line in handle.stdout_lines():
            assert line == b"ready\n"
            break
        code = await reap(handle, timeout=0.2)
        assert code is not None
        assert code != 0


@pytest_asyncio.fixture
async def live_session(tmp_path: Path, bus: EventBus, recorder: EventRecorder):
    settings = AgentSettings(agent_path="claude", max_turns=5, spawn_grace_seconds=0.05, stop_timeout_seconds=2.0)
    chat = ChatSession(chat_id="live", cwd=str(tmp_path), settings=settings, emit=bus.publish, spawn=spawn_fake)
    await chat.start()
    yield chat
    await chat.close()


class TestLiveSession:
    @pytest.mark.asyncio
    async def test_full_turn_over_real_pipes(self, live_session: ChatSession, recorder: EventRecorder):
        await live_session.send_message("list files")
        await eventually(lambda: live_session.turn_state == TurnState.AWAITING_APPROVAL, timeout=10)

        [request] = live_session.list_pending()
        assert request.request_id == "req-1"
        assert request.tool_use_id == "toolu_1"

        await live_session.respond_to_approval("req-1", ApprovalDecision.allow())
        await eventually(lambda: live_session.turn_state == TurnState.IDLE, timeout=10)
        await eventually(lambda: live_session.pid is None, timeout=10)

        entries = recorder.entries()
        assert [e["type"] for e in entries] == [
            "user",
            "assistant",
            "tool_use",
            "approval_prompt",
            "log_event",
            "turn_completion",
        ]
        assert entries[1]["content"]["text"] == "echo: list files"
        # The fake agent echoes the behavior it parsed from our control_response
        assert entries[-1]["content"]["result"] == "allow"

    @pytest.mark.asyncio
    async def test_crash_mid_turn(self, live_session: ChatSession, recorder: EventRecorder, monkeypatch):
        monkeypatch.setenv("FAKE_AGENT_CRASH", "1")
        await live_session.send_message("boom")
        await eventually(lambda: live_session.turn_state == TurnState.ERROR, timeout=10)
        assert "code 3" in recorder.statuses()[-1].error
