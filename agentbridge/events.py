import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from agentbridge.core.models import ApprovalRequest, LifecycleStatus, TurnState
from agentbridge.core.transcript import TranscriptEntry
from agentbridge.utils import now_iso


class EventType(StrEnum):
    TRANSCRIPT_ENTRY = "transcript_entry"
    CHAT_STATUS = "chat_status"
    APPROVAL_REQUEST = "approval_request"


@dataclass(frozen=True)
class BridgeEvent:
    type: EventType
    chat_id: str
    timestamp: str = field(default_factory=now_iso, kw_only=True)

    def data(self) -> dict[str, Any]:
        raise NotImplementedError

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "chat_id": self.chat_id,
            "data": self.data(),
            "timestamp": self.timestamp,
        }

    def to_sse(self) -> dict:
        return {"event": self.type.value, "data": json.dumps(self.to_wire())}

    def to_sse_string(self) -> str:
        sse = self.to_sse()
        return f"event: {sse['event']}\ndata: {sse['data']}\n\n"


@dataclass(frozen=True)
class TranscriptEntryEvent(BridgeEvent):
    type: EventType = field(default=EventType.TRANSCRIPT_ENTRY, init=False)
    entry: TranscriptEntry

    def data(self) -> dict[str, Any]:
        return {**self.entry.to_dict(), "chat_id": self.chat_id}


@dataclass(frozen=True)
class ChatStatusEvent(BridgeEvent):
    type: EventType = field(default=EventType.CHAT_STATUS, init=False)
    status: LifecycleStatus
    process_state: TurnState
    auto_approve: bool = False
    error: str | None = None
    # Approvals dropped because the agent can no longer receive a reply
    invalidated_requests: tuple[str, ...] = ()

    def data(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "chat_id": self.chat_id,
            "status": self.status.value,
            "process_state": self.process_state.value,
            "auto_approve": self.auto_approve,
        }
        if self.error:
            data["error"] = self.error
        if self.invalidated_requests:
            data["invalidated_requests"] = list(self.invalidated_requests)
        return data


@dataclass(frozen=True)
class ApprovalRequestEvent(BridgeEvent):
    type: EventType = field(default=EventType.APPROVAL_REQUEST, init=False)
    request: ApprovalRequest

    def data(self) -> dict[str, Any]:
        return {"chat_id": self.chat_id, "request": self.request.to_dict(self.chat_id)}


OUTWARD_EVENTS: tuple[type[BridgeEvent], ...] = (TranscriptEntryEvent, ChatStatusEvent, ApprovalRequestEvent)
