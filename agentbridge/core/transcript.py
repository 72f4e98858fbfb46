"""Transcript entries produced from the agent's stream-json output.

Every entry is immutable and carries its own short id and timestamp. The
wire shape mirrors what viewers already render::

    {"id": "1a2b3c4d", "type": "tool_use", "timestamp": "...", "content": {...}}

``SystemInit`` and ``ControlRequest`` are signals consumed by the session and
never broadcast as transcript entries.
"""

from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from agentbridge.core.models import ApprovalRequest
from agentbridge.utils import now_iso, short_id


class EntryType(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    THINKING = "thinking"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    AGENT_SPAWN = "agent_spawn"
    APPROVAL_PROMPT = "approval_prompt"
    TURN_COMPLETION = "turn_completion"
    LOG_EVENT = "log_event"
    TOKEN_USAGE = "token_usage"


@dataclass(frozen=True)
class TranscriptEntry:
    type: EntryType
    id: str = field(default_factory=short_id, kw_only=True)
    timestamp: str = field(default_factory=now_iso, kw_only=True)

    def content(self) -> dict[str, Any]:
        data = asdict(self)
        del data["id"], data["timestamp"]
        data["type"] = self.type.value
        return data

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "content": self.content(),
        }


@dataclass(frozen=True)
class UserText(TranscriptEntry):
    type: EntryType = field(default=EntryType.USER, init=False)
    text: str


@dataclass(frozen=True)
class AssistantText(TranscriptEntry):
    type: EntryType = field(default=EntryType.ASSISTANT, init=False)
    text: str


@dataclass(frozen=True)
class Thinking(TranscriptEntry):
    type: EntryType = field(default=EntryType.THINKING, init=False)
    text: str


@dataclass(frozen=True)
class ToolInvocation(TranscriptEntry):
    type: EntryType = field(default=EntryType.TOOL_USE, init=False)
    tool_name: str
    tool_id: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AgentSpawn(TranscriptEntry):
    type: EntryType = field(default=EntryType.AGENT_SPAWN, init=False)
    agent_type: str
    description: str
    tool_id: str = ""
    prompt_preview: str | None = None


@dataclass(frozen=True)
class ToolResult(TranscriptEntry):
    type: EntryType = field(default=EntryType.TOOL_RESULT, init=False)
    tool_id: str
    output: str
    is_error: bool = False


@dataclass(frozen=True)
class ApprovalPrompt(TranscriptEntry):
    type: EntryType = field(default=EntryType.APPROVAL_PROMPT, init=False)
    request_id: str
    tool_name: str
    input: dict[str, Any]
    input_preview: str
    tool_use_id: str | None = None


@dataclass(frozen=True)
class TurnCompletion(TranscriptEntry):
    type: EntryType = field(default=EntryType.TURN_COMPLETION, init=False)
    outcome: str
    is_error: bool = False
    result: str | None = None
    duration_ms: int | None = None
    num_turns: int | None = None
    total_cost_usd: float | None = None


@dataclass(frozen=True)
class LogEvent(TranscriptEntry):
    type: EntryType = field(default=EntryType.LOG_EVENT, init=False)
    event_type: str
    message: str


@dataclass(frozen=True)
class TokenUsage(TranscriptEntry):
    type: EntryType = field(default=EntryType.TOKEN_USAGE, init=False)
    input_tokens: int
    output_tokens: int
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def content(self) -> dict[str, Any]:
        data = super().content()
        data["total_tokens"] = self.total_tokens
        return data


# --- Session-internal signals ---


@dataclass(frozen=True)
class SystemInit:
    session_id: str | None
    model: str | None = None
    cwd: str | None = None
    tools: tuple[str, ...] = ()


@dataclass(frozen=True)
class ControlRequest:
    request: ApprovalRequest


type ParsedItem = TranscriptEntry | SystemInit | ControlRequest
