import asyncio
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Protocol

from agentbridge.config import Config
from agentbridge.constants import (
    ASSISTED_FLAGS,
    STDOUT_READ_LIMIT,
    STREAM_FLAGS,
    UNRESTRICTED_FLAGS,
)
from agentbridge.core.codec import dump_line
from agentbridge.core.errors import ProcessWriteError, SpawnError
from agentbridge.core.models import PermissionMode
from agentbridge.logging import get_logger

_logger = get_logger(__name__)


@dataclass(frozen=True)
class AgentSettings:
    """Process-level knobs shared by every chat, derived from Config."""

    agent_path: str
    max_turns: int
    spawn_grace_seconds: float
    stop_timeout_seconds: float
    echo_user_messages: bool = True

    @classmethod
    def from_config(cls, config: Config) -> "AgentSettings":
        return cls(
            agent_path=config.claude_path,
            max_turns=config.max_turns,
            spawn_grace_seconds=config.spawn_grace_seconds,
            stop_timeout_seconds=config.stop_timeout_seconds,
            echo_user_messages=config.echo_user_messages,
        )


def build_agent_args(
    *,
    conversation_id: str,
    resume: bool,
    permission_mode: PermissionMode,
    max_turns: int,
    system_prompt: str | None = None,
) -> list[str]:
    # --print and --verbose are both required for stream-json output
    args = [*STREAM_FLAGS, "--max-turns", str(max_turns)]

    if permission_mode == PermissionMode.UNRESTRICTED:
        args.extend(UNRESTRICTED_FLAGS)
    else:
        args.extend(ASSISTED_FLAGS)

    if resume:
        args.extend(["--resume", conversation_id])
    else:
        args.extend(["--session-id", conversation_id])
        if system_prompt:
            args.extend(["--append-system-prompt", system_prompt])
    return args


class AgentHandle(Protocol):
    """What a chat session needs from one running agent process."""

    @property
    def pid(self) -> int | None: ...

    @property
    def returncode(self) -> int | None: ...

    def stdout_lines(self) -> AsyncIterator[bytes]: ...

    def stderr_lines(self) -> AsyncIterator[bytes]: ...

    async def write_line(self, payload: dict[str, Any]) -> None: ...

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


type SpawnFn = Callable[[list[str], str], Awaitable[AgentHandle]]


class AgentProcess:
    def __init__(self, proc: asyncio.subprocess.Process):
        self._proc = proc

    @property
    def pid(self) -> int | None:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    async def stdout_lines(self) -> AsyncIterator[bytes]:
        assert self._proc.stdout is not None
        async for line in _read_lines(self._proc.stdout):
            yield line

    async def stderr_lines(self) -> AsyncIterator[bytes]:
        assert self._proc.stderr is not None
        async for line in _read_lines(self._proc.stderr):
            yield line

    async def write_line(self, payload: dict[str, Any]) -> None:
        stdin = self._proc.stdin
        if stdin is None or stdin.is_closing() or self._proc.returncode is not None:
            raise ProcessWriteError("Agent stdin is closed")
        try:
            stdin.write(dump_line(payload))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ProcessWriteError(f"Agent stdin write failed: {e}") from e

    async def wait(self) -> int:
        return await self._proc.wait()

    def terminate(self) -> None:
        with suppress(ProcessLookupError):
            self._proc.terminate()

    def kill(self) -> None:
        with suppress(ProcessLookupError):
            self._proc.kill()


async def _read_lines(stream: asyncio.StreamReader) -> AsyncIterator[bytes]:
    """Yield newline-terminated lines; an oversized line is drained and dropped, not fatal."""
    while True:
        try:
            line = await stream.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            if e.partial:
                yield e.partial
            return
        except asyncio.LimitOverrunError as e:
            _logger.warning("Dropping oversized stream line (%d bytes buffered)", e.consumed)
            await _skip_past_newline(stream)
            continue
        yield line


async def _skip_past_newline(stream: asyncio.StreamReader) -> None:
    while True:
        try:
            await stream.readuntil(b"\n")
            return
        except asyncio.LimitOverrunError as e:
            await stream.readexactly(e.consumed)
        except asyncio.IncompleteReadError:
            return


async def spawn_agent(command: list[str], cwd: str) -> AgentHandle:
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ},
            limit=STDOUT_READ_LIMIT,
        )
    except OSError as e:
        raise SpawnError(f"Failed to start agent {command[0]!r}: {e}") from e
    return AgentProcess(proc)


async def reap(handle: AgentHandle, timeout: float) -> int | None:
    """Terminate, wait up to ``timeout``, then kill. Returns the exit code if observed."""
    if handle.returncode is not None:
        return handle.returncode
    handle.terminate()
    try:
        return await asyncio.wait_for(handle.wait(), timeout=timeout)
    except TimeoutError:
        _logger.warning("Agent process %s ignored SIGTERM, killing", handle.pid)
        handle.kill()
        try:
            return await asyncio.wait_for(handle.wait(), timeout=timeout)
        except TimeoutError:
            return None
