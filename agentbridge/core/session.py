"""One chat: a long-lived conversation served by one agent process per turn.

All state changes happen on the session's actor task. Public coroutines
post a command to the mailbox and wait for its result; the stdout reader,
the process-exit watcher and the delayed prompt writer post messages to the
same mailbox. Nothing else mutates ``turn_state`` or ``pending_approvals``,
so no lock is needed inside a session.

Messages from a process that has been replaced carry an older generation
number and are dropped.
"""

import asyncio
import json
import shlex
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from functools import partial
from typing import Any
from uuid import uuid4

from agentbridge.constants import INPUT_PREVIEW_LIMIT, LOG_TEXT_PREVIEW, STDERR_PREVIEW_LIMIT
from agentbridge.core.codec import encode_control_response, encode_user_message
from agentbridge.core.errors import (
    ApprovalNotFound,
    ChatStopped,
    ProcessNotRunning,
    ProcessWriteError,
    SpawnError,
    TurnInProgress,
)
from agentbridge.core.models import (
    ApprovalBehavior,
    ApprovalDecision,
    ApprovalRequest,
    Attachment,
    ChatInfo,
    LifecycleStatus,
    PermissionMode,
    TurnState,
)
from agentbridge.core.parsing import parse_line
from agentbridge.core.process import AgentHandle, AgentSettings, SpawnFn, build_agent_args, reap, spawn_agent
from agentbridge.core.transcript import (
    ApprovalPrompt,
    ControlRequest,
    LogEvent,
    SystemInit,
    TranscriptEntry,
    TurnCompletion,
    UserText,
)
from agentbridge.core.transitions import (
    can_start_turn,
    is_turn_active,
    validate_lifecycle_transition,
    validate_turn_transition,
)
from agentbridge.events import ApprovalRequestEvent, BridgeEvent, ChatStatusEvent, TranscriptEntryEvent
from agentbridge.logging import get_logger
from agentbridge.utils import now_iso, truncate

_logger = get_logger(__name__)

type EventSink = Callable[[BridgeEvent], Awaitable[None]]


# --- Mailbox messages ---


@dataclass
class _Command:
    handler: Callable[[], Awaitable[Any]]
    future: asyncio.Future


@dataclass(frozen=True)
class _StdoutLine:
    generation: int
    raw: bytes


@dataclass(frozen=True)
class _ProcessExited:
    generation: int
    returncode: int | None


@dataclass(frozen=True)
class _DeliverPrompt:
    generation: int
    payload: dict[str, Any]


_CLOSE = object()


def _input_preview(tool_input: dict[str, Any]) -> str:
    return truncate(json.dumps(tool_input, indent=2, ensure_ascii=False), INPUT_PREVIEW_LIMIT)


class ChatSession:
    def __init__(
        self,
        *,
        chat_id: str,
        cwd: str,
        settings: AgentSettings,
        emit: EventSink,
        spawn: SpawnFn = spawn_agent,
        name: str | None = None,
        system_prompt: str | None = None,
        conversation_id: str | None = None,
        permission_mode: PermissionMode = PermissionMode.ASSISTED,
    ):
        self.id = chat_id
        self.name = name or f"Chat {chat_id}"
        self.cwd = cwd
        self.system_prompt = system_prompt
        self.permission_mode = permission_mode
        self.conversation_id = conversation_id or str(uuid4())
        self.settings = settings

        self.status = LifecycleStatus.STARTING
        self.turn_state = TurnState.IDLE
        # Turns handed to the agent so far; > 0 means the next spawn resumes.
        # A caller-supplied conversation already exists on the agent side.
        self.turn_count = 1 if conversation_id else 0
        self.pending_approvals: dict[str, ApprovalRequest] = {}
        self.auto_approve = False
        self.created_at = now_iso()
        self.last_activity = self.created_at

        self._emit = emit
        self._spawn = spawn
        self._process: AgentHandle | None = None
        self._generation = 0
        self._stop_requested = False
        self._answered: set[str] = set()
        self._mailbox: asyncio.Queue = asyncio.Queue()
        self._actor: asyncio.Task | None = None
        self._prompt_task: asyncio.Task | None = None
        self._io_tasks: set[asyncio.Task] = set()
        self._closed = False
        self._log = _logger.bind(chat_id=chat_id)

    # --- Public API (each call is serialized through the actor) ---

    async def start(self) -> None:
        self._actor = asyncio.create_task(self._run(), name=f"chat-{self.id}")
        await self._call(self._handle_start)

    async def send_message(self, content: str, attachments: list[Attachment] | None = None) -> None:
        await self._call(self._handle_send, content, attachments or [])

    async def respond_to_approval(self, request_id: str, decision: ApprovalDecision) -> None:
        await self._call(self._handle_respond, request_id, decision)

    async def set_auto_approve(self, enabled: bool) -> int:
        """Toggle auto-approve. Returns how many pending approvals were resolved by enabling it."""
        return await self._call(self._handle_set_auto_approve, enabled)

    async def stop(self) -> None:
        await self._call(self._handle_stop)

    async def close(self) -> None:
        """Shut the actor down and make sure no agent process outlives the session."""
        if self._closed:
            return
        self._closed = True
        if self._actor and not self._actor.done():
            self._mailbox.put_nowait(_CLOSE)
            await self._actor
        self._cancel_prompt()

        process, self._process = self._process, None
        if process is not None:
            await reap(process, self.settings.stop_timeout_seconds)

        for task in list(self._io_tasks):
            task.cancel()
        await asyncio.gather(*self._io_tasks, return_exceptions=True)

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def is_process_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def list_pending(self) -> list[ApprovalRequest]:
        return list(self.pending_approvals.values())

    def info(self) -> ChatInfo:
        return ChatInfo(
            id=self.id,
            name=self.name,
            cwd=self.cwd,
            status=self.status,
            process_state=self.turn_state,
            session_id=self.conversation_id,
            permission_mode=self.permission_mode,
            auto_approve=self.auto_approve,
            created_at=self.created_at,
            last_activity=self.last_activity,
            pid=self.pid,
            pending_approvals=len(self.pending_approvals),
        )

    # --- Actor ---

    async def _call(self, handler: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        if self._closed or self._actor is None or self._actor.done():
            raise ChatStopped(self.id)
        future = asyncio.get_running_loop().create_future()
        self._mailbox.put_nowait(_Command(partial(handler, *args), future))
        return await future

    def _post(self, message: Any) -> None:
        self._mailbox.put_nowait(message)

    async def _run(self) -> None:
        while True:
            message = await self._mailbox.get()
            if message is _CLOSE:
                return
            try:
                await self._dispatch(message)
            except Exception:
                self._log.exception("Chat actor failed handling %s", type(message).__name__)

    async def _dispatch(self, message: Any) -> None:
        match message:
            case _Command(handler=handler, future=future):
                try:
                    result = await handler()
                except Exception as e:
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(result)
            case _StdoutLine():
                await self._on_stdout_line(message)
            case _ProcessExited():
                await self._on_process_exit(message)
            case _DeliverPrompt():
                await self._on_deliver_prompt(message)

    # --- State helpers ---

    def _set_turn_state(self, state: TurnState) -> None:
        validate_turn_transition(before=self.turn_state, after=state)
        self.turn_state = state

    def _set_status(self, status: LifecycleStatus) -> None:
        validate_lifecycle_transition(before=self.status, after=status)
        self.status = status

    async def _publish_status(self, error: str | None = None, invalidated: list[str] | None = None) -> None:
        await self._emit(
            ChatStatusEvent(
                chat_id=self.id,
                status=self.status,
                process_state=self.turn_state,
                auto_approve=self.auto_approve,
                error=error,
                invalidated_requests=tuple(invalidated or ()),
            )
        )

    async def _publish_entry(self, entry: TranscriptEntry) -> None:
        await self._emit(TranscriptEntryEvent(chat_id=self.id, entry=entry))

    def _invalidate_pending(self) -> list[str]:
        request_ids = list(self.pending_approvals)
        if request_ids:
            self._log.warning("Dropping %d unanswerable approval(s)", len(request_ids), request_ids=request_ids)
        self._answered.update(request_ids)
        self.pending_approvals.clear()
        return request_ids

    def _cancel_prompt(self) -> None:
        if self._prompt_task and not self._prompt_task.done():
            self._prompt_task.cancel()
        self._prompt_task = None

    # --- Command handlers ---

    async def _handle_start(self) -> None:
        self._set_status(LifecycleStatus.RUNNING)
        self._log.info(
            "Created chat",
            session_id=self.conversation_id,
            resuming=self.turn_count > 0,
            permission_mode=self.permission_mode.value,
        )
        await self._publish_status()

    async def _handle_send(self, content: str, attachments: list[Attachment]) -> None:
        if self.status == LifecycleStatus.STOPPED:
            raise ChatStopped(self.id)
        if not can_start_turn(self.turn_state):
            raise TurnInProgress(self.id, self.turn_state.value)

        resume = self.turn_count > 0
        command = [
            self.settings.agent_path,
            *build_agent_args(
                conversation_id=self.conversation_id,
                resume=resume,
                permission_mode=self.permission_mode,
                max_turns=self.settings.max_turns,
                system_prompt=self.system_prompt,
            ),
        ]
        self._log.info("Spawning agent: %s", shlex.join(command))

        try:
            await self._retire_process()
            process = await self._spawn(command, self.cwd)
        except SpawnError as e:
            self._log.error("Agent spawn failed: %s", e)
            if self.turn_state != TurnState.ERROR:
                self._set_turn_state(TurnState.ERROR)
            if self.status != LifecycleStatus.ERROR:
                self._set_status(LifecycleStatus.ERROR)
            await self._publish_status(error=str(e))
            raise

        self._generation += 1
        self._process = process
        self._stop_requested = False
        self.turn_count += 1
        self.last_activity = now_iso()
        if self.status == LifecycleStatus.ERROR:
            self._set_status(LifecycleStatus.RUNNING)
        self._set_turn_state(TurnState.PROCESSING)

        self._start_io(self._generation, process)
        await self._publish_status()
        if content and self.settings.echo_user_messages:
            await self._publish_entry(UserText(text=content))
        self._schedule_prompt(self._generation, encode_user_message(content, attachments))

    async def _handle_respond(self, request_id: str, decision: ApprovalDecision) -> None:
        request = self.pending_approvals.get(request_id)
        if request is None:
            raise ApprovalNotFound(self.id, request_id)
        await self._resolve(request, decision, auto=False)

    async def _handle_set_auto_approve(self, enabled: bool) -> int:
        if enabled != self.auto_approve:
            self.auto_approve = enabled
            self._log.info("Auto-approve %s", "on" if enabled else "off")
            await self._publish_status()

        resolved = 0
        if enabled:
            for request in list(self.pending_approvals.values()):
                try:
                    await self._resolve(request, ApprovalDecision.allow(), auto=True)
                except (ProcessNotRunning, ProcessWriteError) as e:
                    self._log.warning("Auto-approve stopped early: %s", e)
                    break
                resolved += 1
        return resolved

    async def _handle_stop(self) -> None:
        if self.status == LifecycleStatus.STOPPED:
            return
        self._set_status(LifecycleStatus.STOPPED)
        self._cancel_prompt()
        if self._process is not None:
            self._stop_requested = True
            self._process.terminate()
        self._log.info("Stopped chat")
        await self._publish_status()

    # --- Process wiring ---

    def _start_io(self, generation: int, process: AgentHandle) -> None:
        for coro in (self._pump_stdout(generation, process), self._pump_stderr(process)):
            task = asyncio.create_task(coro)
            self._io_tasks.add(task)
            task.add_done_callback(self._io_tasks.discard)

    async def _pump_stdout(self, generation: int, process: AgentHandle) -> None:
        try:
            async for raw in process.stdout_lines():
                self._post(_StdoutLine(generation, raw))
        except (OSError, ValueError):
            self._log.warning("Agent stdout closed unexpectedly", exc_info=True)
        returncode = await process.wait()
        self._post(_ProcessExited(generation, returncode))

    async def _pump_stderr(self, process: AgentHandle) -> None:
        with suppress(OSError, ValueError):
            async for raw in process.stderr_lines():
                text = raw.decode("utf-8", errors="replace").strip()
                if text and "Debugger" not in text:
                    self._log.warning("agent stderr: %s", text[:STDERR_PREVIEW_LIMIT])

    def _schedule_prompt(self, generation: int, payload: dict[str, Any]) -> None:
        # The agent sends no ready signal on stdin; wait a grace period after spawn.
        async def deliver() -> None:
            await asyncio.sleep(self.settings.spawn_grace_seconds)
            self._post(_DeliverPrompt(generation, payload))

        self._cancel_prompt()
        self._prompt_task = asyncio.create_task(deliver())

    async def _retire_process(self) -> None:
        process, self._process = self._process, None
        if process is None or process.returncode is not None:
            return
        # A completed turn can race ahead of the OS-level exit.
        try:
            await asyncio.wait_for(process.wait(), timeout=self.settings.stop_timeout_seconds)
        except TimeoutError:
            if await reap(process, self.settings.stop_timeout_seconds) is None:
                # Still alive after SIGKILL; keep it tracked so close() retries.
                self._process = process
                self._log.error("Agent process %s did not exit after SIGKILL", process.pid)
                raise SpawnError(f"Previous agent process {process.pid} is still running") from None

    async def _write(self, payload: dict[str, Any]) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            raise ProcessNotRunning(self.id)
        try:
            await process.write_line(payload)
        except ProcessWriteError as e:
            await self._fail_turn(str(e))
            raise

    async def _fail_turn(self, reason: str) -> None:
        """The pipe is unusable: invalidate approvals, mark the turn failed, end the process."""
        invalidated = self._invalidate_pending()
        if self.turn_state != TurnState.ERROR:
            self._set_turn_state(TurnState.ERROR)
        if self._process is not None:
            self._process.terminate()
        self._log.warning("Turn failed: %s", reason)
        await self._publish_status(error=reason, invalidated=invalidated)

    # --- Mailbox message handlers ---

    async def _on_deliver_prompt(self, message: _DeliverPrompt) -> None:
        self._prompt_task = None
        if message.generation != self._generation or not self.is_process_alive:
            self._log.warning("Dropping user message; agent process already exited")
            return
        self._log.info("Sending user message via stdin")
        with suppress(ProcessNotRunning, ProcessWriteError):
            await self._write(message.payload)

    async def _on_stdout_line(self, message: _StdoutLine) -> None:
        if message.generation != self._generation:
            return
        for item in parse_line(message.raw):
            match item:
                case SystemInit():
                    self._log.info("Agent initialised", agent_session_id=item.session_id, model=item.model)
                case ControlRequest(request=request):
                    await self._on_approval_request(request)
                case TurnCompletion():
                    await self._on_turn_completion(item)
                case TranscriptEntry():
                    await self._publish_entry(item)

    async def _on_approval_request(self, request: ApprovalRequest) -> None:
        if not is_turn_active(self.turn_state):
            self._log.warning("Ignoring approval request outside an active turn", request_id=request.request_id)
            return
        if request.request_id in self.pending_approvals or request.request_id in self._answered:
            self._log.warning("Ignoring duplicate approval request", request_id=request.request_id)
            return

        self.pending_approvals[request.request_id] = request
        self._log.info("Approval needed: %s", request.tool_name, request_id=request.request_id)

        if self.auto_approve:
            try:
                await self._resolve(request, ApprovalDecision.allow(), auto=True)
            except (ProcessNotRunning, ProcessWriteError) as e:
                self._log.warning("Auto-approve failed: %s", e)
            return

        if self.turn_state != TurnState.AWAITING_APPROVAL:
            self._set_turn_state(TurnState.AWAITING_APPROVAL)
            await self._publish_status()
        await self._emit(ApprovalRequestEvent(chat_id=self.id, request=request))
        await self._publish_entry(
            ApprovalPrompt(
                request_id=request.request_id,
                tool_name=request.tool_name,
                tool_use_id=request.tool_use_id,
                input=request.input,
                input_preview=_input_preview(request.input),
                timestamp=request.timestamp,
            )
        )

    async def _resolve(self, request: ApprovalRequest, decision: ApprovalDecision, *, auto: bool) -> None:
        await self._write(encode_control_response(request, decision))
        del self.pending_approvals[request.request_id]
        self._answered.add(request.request_id)
        self.last_activity = now_iso()
        self._log.info(
            "Sent approval response: %s",
            decision.behavior.value,
            request_id=request.request_id,
            tool=request.tool_name,
            auto=auto,
        )

        if not self.pending_approvals and self.turn_state == TurnState.AWAITING_APPROVAL:
            self._set_turn_state(TurnState.PROCESSING)
            await self._publish_status()

        if auto:
            entry = LogEvent(event_type="auto_approval", message=f"AUTO-APPROVED: {request.tool_name}")
        else:
            mark = "✅" if decision.behavior == ApprovalBehavior.ALLOW else "❌"
            entry = LogEvent(
                event_type="approval_response",
                message=f"{mark} {request.tool_name}: {decision.behavior.value}",
            )
        await self._publish_entry(entry)

    async def _on_turn_completion(self, completion: TurnCompletion) -> None:
        self._log.info("Turn completed: %s", completion.outcome, result=(completion.result or "")[:LOG_TEXT_PREVIEW])
        await self._publish_entry(completion)
        if not is_turn_active(self.turn_state):
            return
        invalidated = self._invalidate_pending()
        self._set_turn_state(TurnState.IDLE)
        await self._publish_status(invalidated=invalidated)

    async def _on_process_exit(self, message: _ProcessExited) -> None:
        if message.generation != self._generation or self._process is None:
            return
        self._process = None
        self._cancel_prompt()
        self._log.info("Agent process exited with code %s", message.returncode)

        if not is_turn_active(self.turn_state):
            return

        # Exit without a result line is the authoritative abnormal-termination signal.
        invalidated = self._invalidate_pending()
        if self._stop_requested:
            self._set_turn_state(TurnState.FINISHED)
            error = None
        else:
            self._set_turn_state(TurnState.ERROR)
            error = f"Agent process exited with code {message.returncode} before completing the turn"
            self._log.warning(error)
        await self._publish_status(error=error, invalidated=invalidated)


__all__ = ["ChatSession", "EventSink"]
