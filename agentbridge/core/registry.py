import asyncio

from agentbridge.bus import EventBus
from agentbridge.core.errors import ChatNotFound
from agentbridge.core.models import (
    ApprovalDecision,
    ApprovalRequest,
    Attachment,
    ChatInfo,
    LifecycleStatus,
    PermissionMode,
)
from agentbridge.core.process import AgentSettings, SpawnFn, spawn_agent
from agentbridge.core.session import ChatSession
from agentbridge.logging import get_logger
from agentbridge.utils import short_id

_logger = get_logger(__name__)

_REMOVABLE = (LifecycleStatus.STOPPED, LifecycleStatus.ERROR)


class SessionRegistry:
    """All live chats, keyed by chat id.

    The map is the only structure shared between concurrent callers; every
    insert and delete goes through ``_lock``. Per-chat work is delegated to
    the chat's own actor and runs outside the lock.
    """

    def __init__(self, settings: AgentSettings, bus: EventBus, spawn: SpawnFn = spawn_agent):
        self.settings = settings
        self.bus = bus
        self._spawn = spawn
        self._sessions: dict[str, ChatSession] = {}
        self._lock = asyncio.Lock()

    async def create(
        self,
        cwd: str,
        *,
        name: str | None = None,
        system_prompt: str | None = None,
        resume_conversation_id: str | None = None,
        permission_mode: PermissionMode = PermissionMode.ASSISTED,
    ) -> ChatSession:
        async with self._lock:
            chat_id = short_id()
            while chat_id in self._sessions:
                chat_id = short_id()
            session = ChatSession(
                chat_id=chat_id,
                cwd=cwd,
                settings=self.settings,
                emit=self.bus.publish,
                spawn=self._spawn,
                name=name,
                system_prompt=system_prompt,
                conversation_id=resume_conversation_id,
                permission_mode=permission_mode,
            )
            self._sessions[chat_id] = session
        await session.start()
        return session

    def get(self, chat_id: str) -> ChatSession:
        session = self._sessions.get(chat_id)
        if session is None:
            raise ChatNotFound(chat_id)
        return session

    async def send_message(self, chat_id: str, content: str, attachments: list[Attachment] | None = None) -> None:
        await self.get(chat_id).send_message(content, attachments)

    async def respond_to_approval(self, chat_id: str, request_id: str, decision: ApprovalDecision) -> None:
        await self.get(chat_id).respond_to_approval(request_id, decision)

    async def stop(self, chat_id: str) -> None:
        await self.get(chat_id).stop()

    async def set_auto_approve(self, chat_id: str, enabled: bool) -> int:
        return await self.get(chat_id).set_auto_approve(enabled)

    def get_auto_approve(self, chat_id: str) -> bool:
        return self.get(chat_id).auto_approve

    def pending_approvals(self, chat_id: str) -> list[ApprovalRequest]:
        return self.get(chat_id).list_pending()

    def list_chats(self) -> list[ChatInfo]:
        return [session.info() for session in self._sessions.values()]

    def pid_map(self) -> dict[int, str]:
        """Map of live agent pid -> chat id."""
        return {session.pid: chat_id for chat_id, session in self._sessions.items() if session.pid is not None}

    async def cleanup(self) -> int:
        """Remove stopped and failed chats. Chats with a finished turn stay; they are reusable."""
        async with self._lock:
            removed = [s for s in self._sessions.values() if s.status in _REMOVABLE]
            for session in removed:
                del self._sessions[session.id]

        for session in removed:
            await session.close()
        if removed:
            _logger.info("Cleaned up %d chat(s)", len(removed), chat_ids=[s.id for s in removed])
        return len(removed)

    async def close(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        if sessions:
            _logger.info("Shutting down %d chat(s)", len(sessions))
        await asyncio.gather(*(session.close() for session in sessions), return_exceptions=True)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, chat_id: str) -> bool:
        return chat_id in self._sessions
