from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from agentbridge.utils import now_iso


class PermissionMode(StrEnum):
    ASSISTED = "assisted"
    UNRESTRICTED = "unrestricted"

    @classmethod
    def _missing_(cls, value: object) -> "PermissionMode | None":
        # Older clients send "full_ai"
        if value == "full_ai":
            return cls.UNRESTRICTED
        return None


class LifecycleStatus(StrEnum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class TurnState(StrEnum):
    IDLE = "idle"
    PROCESSING = "processing"
    AWAITING_APPROVAL = "awaiting_approval"
    FINISHED = "finished"
    ERROR = "error"


class ApprovalBehavior(StrEnum):
    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class ApprovalRequest:
    request_id: str
    tool_name: str
    input: dict[str, Any]
    tool_use_id: str | None = None
    suggestions: list[Any] | None = None
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self, chat_id: str) -> dict:
        return {
            "request_id": self.request_id,
            "chat_id": chat_id,
            "tool_name": self.tool_name,
            "tool_use_id": self.tool_use_id,
            "input": self.input,
            "suggestions": self.suggestions,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ApprovalDecision:
    behavior: ApprovalBehavior
    updated_input: dict[str, Any] | None = None
    message: str | None = None

    @classmethod
    def allow(cls, updated_input: dict[str, Any] | None = None) -> "ApprovalDecision":
        return cls(behavior=ApprovalBehavior.ALLOW, updated_input=updated_input)

    @classmethod
    def deny(cls, message: str | None = None) -> "ApprovalDecision":
        return cls(behavior=ApprovalBehavior.DENY, message=message)


@dataclass(frozen=True)
class Attachment:
    name: str
    media_type: str
    data: str  # base64


@dataclass
class ChatInfo:
    """Caller-visible snapshot of a chat session."""

    id: str
    name: str
    cwd: str
    status: LifecycleStatus
    process_state: TurnState
    session_id: str
    permission_mode: PermissionMode
    auto_approve: bool
    created_at: str
    last_activity: str
    pid: int | None = None
    pending_approvals: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "cwd": self.cwd,
            "status": self.status.value,
            "process_state": self.process_state.value,
            "session_id": self.session_id,
            "permission_mode": self.permission_mode.value,
            "auto_approve": self.auto_approve,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "pid": self.pid,
            "pending_approvals": self.pending_approvals,
        }
