import asyncio
from contextlib import suppress

from agentbridge.bus import EventBus
from agentbridge.config import Config, get_config
from agentbridge.core.process import AgentSettings, SpawnFn, spawn_agent
from agentbridge.core.registry import SessionRegistry
from agentbridge.logging import get_logger
from agentbridge.server.stream import Broadcaster

_logger = get_logger(__name__)


class Runtime:
    def __init__(self, config: Config | None = None, spawn: SpawnFn = spawn_agent):
        self.config = config or get_config()
        self.bus = EventBus()
        self.registry = SessionRegistry(AgentSettings.from_config(self.config), self.bus, spawn=spawn)
        self.broadcaster = Broadcaster(self.bus)
        self._cleanup_task: asyncio.Task | None = None
        self._connected = False

    async def connect(self) -> None:
        if self._connected:
            return
        self.broadcaster.attach()
        self._connected = True
        _logger.info("Runtime ready", agent_path=self.config.claude_path, max_turns=self.config.max_turns)

    def start_cleanup(self) -> None:
        interval = self.config.cleanup_interval_seconds
        if interval <= 0 or self._cleanup_task is not None:
            return
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(interval))

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.registry.cleanup()
            except Exception:
                _logger.exception("Periodic cleanup failed")

    async def close(self) -> None:
        if self._cleanup_task:
            self._cleanup_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None
        await self.registry.close()
        self.broadcaster.detach()
        self._connected = False


_runtime: Runtime | None = None
_runtime_lock = asyncio.Lock()


async def get_runtime_async() -> Runtime:
    global _runtime
    async with _runtime_lock:
        if _runtime is None:
            _runtime = Runtime()
            await _runtime.connect()
            _runtime.start_cleanup()
    return _runtime


def get_runtime() -> Runtime:
    if _runtime is None:
        raise RuntimeError("Runtime not initialized. Call get_runtime_async() first.")
    if not _runtime._connected:
        raise RuntimeError("Runtime not connected. Call await runtime.connect() first.")
    return _runtime


async def reset_runtime() -> None:
    global _runtime
    if _runtime is not None:
        await _runtime.close()
        _runtime = None
