import asyncio
import json
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio

from agentbridge.bus import EventBus
from agentbridge.core.errors import ProcessWriteError
from agentbridge.core.process import AgentSettings
from agentbridge.core.session import ChatSession
from agentbridge.events import OUTWARD_EVENTS, BridgeEvent, ChatStatusEvent, TranscriptEntryEvent


class FakeAgentProcess:
    """In-memory stand-in for one agent process; tests script its stdout."""

    def __init__(self, pid: int = 4242):
        self.pid = pid
        self.returncode: int | None = None
        self.written: list[dict[str, Any]] = []
        self.stderr: list[bytes] = []
        self.fail_writes = False
        self.terminated = False
        self.killed = False
        self.ignores_signals = False
        self._stdout: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._exited = asyncio.Event()

    def emit(self, payload: dict[str, Any]) -> None:
        self._stdout.put_nowait((json.dumps(payload) + "\n").encode())

    def emit_raw(self, text: str) -> None:
        self._stdout.put_nowait(text.encode())

    def exit(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self._stdout.put_nowait(None)
        self._exited.set()

    async def stdout_lines(self):
        while True:
            line = await self._stdout.get()
            if line is None:
                return
            yield line

    async def stderr_lines(self):
        for line in self.stderr:
            yield line

    async def write_line(self, payload: dict[str, Any]) -> None:
        if self.fail_writes or self.returncode is not None:
            raise ProcessWriteError("Agent stdin is closed")
        self.written.append(payload)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignores_signals:
            self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        if not self.ignores_signals:
            self.exit(-9)


class FakeSpawner:
    def __init__(self):
        self.calls: list[tuple[list[str], str]] = []
        self.processes: list[FakeAgentProcess] = []
        self.error: Exception | None = None

    async def __call__(self, command: list[str], cwd: str) -> FakeAgentProcess:
        self.calls.append((command, cwd))
        if self.error is not None:
            raise self.error
        process = FakeAgentProcess(pid=1000 + len(self.processes))
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeAgentProcess:
        return self.processes[-1]

    @property
    def last_args(self) -> list[str]:
        return self.calls[-1][0]


class EventRecorder:
    def __init__(self, bus: EventBus):
        self.events: list[BridgeEvent] = []
        for event_type in OUTWARD_EVENTS:
            bus.subscribe(event_type, self._record)

    async def _record(self, event: BridgeEvent) -> None:
        self.events.append(event)

    def of_type[T](self, event_type: type[T]) -> list[T]:
        return [e for e in self.events if isinstance(e, event_type)]

    def statuses(self) -> list[ChatStatusEvent]:
        return self.of_type(ChatStatusEvent)

    def entries(self) -> list[dict[str, Any]]:
        return [e.entry.to_dict() for e in self.of_type(TranscriptEntryEvent)]

    def entry_types(self) -> list[str]:
        return [entry["type"] for entry in self.entries()]

    def clear(self) -> None:
        self.events.clear()


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate holds; the session actor runs on its own task."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


async def settle() -> None:
    """Let every queued mailbox message drain."""
    for _ in range(20):
        await asyncio.sleep(0)


@pytest.fixture
def agent_settings() -> AgentSettings:
    return AgentSettings(agent_path="claude", max_turns=50, spawn_grace_seconds=0, stop_timeout_seconds=0.5)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest_asyncio.fixture
async def session(
    bus: EventBus, recorder: EventRecorder, spawner: FakeSpawner, agent_settings: AgentSettings
) -> AsyncGenerator[ChatSession]:
    chat = ChatSession(chat_id="chat1", cwd="/work/project", settings=agent_settings, emit=bus.publish, spawn=spawner)
    await chat.start()
    yield chat
    await chat.close()


# --- Captured stream-json lines ---


def assistant_line(*blocks: dict[str, Any], usage: dict[str, Any] | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": list(blocks)}
    if usage is not None:
        message["usage"] = usage
    return {"type": "assistant", "message": message}


def tool_use_block(name: str, tool_id: str, tool_input: dict[str, Any]) -> dict[str, Any]:
    return {"type": "tool_use", "id": tool_id, "name": name, "input": tool_input}


def control_request(request_id: str, tool_name: str = "Bash", tool_input: dict | None = None, tool_use_id: str | None = None):
    request: dict[str, Any] = {
        "subtype": "can_use_tool",
        "tool_name": tool_name,
        "input": tool_input if tool_input is not None else {"command": "ls /tmp"},
    }
    if tool_use_id is not None:
        request["tool_use_id"] = tool_use_id
    return {"type": "control_request", "request_id": request_id, "request": request}


def result_line(subtype: str = "success", result: str = "Done") -> dict[str, Any]:
    return {
        "type": "result",
        "subtype": subtype,
        "is_error": subtype != "success",
        "result": result,
        "duration_ms": 1234,
        "num_turns": 2,
        "total_cost_usd": 0.01,
    }
