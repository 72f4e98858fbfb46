"""Approval sub-protocol codec for the agent's stdio channel.

The agent asks for permission with::

    {"type": "control_request", "request_id": "...",
     "request": {"subtype": "can_use_tool", "tool_name": "...",
                 "tool_use_id": "...", "input": {...},
                 "permission_suggestions": [...]}}

and only accepts a reply nested exactly like this::

    {"type": "control_response",
     "response": {"subtype": "success", "request_id": "...",
                  "response": {"behavior": "allow", "updatedInput": {...}, "toolUseID": "..."}}}

The outer envelope is snake_case, the innermost payload camelCase. The agent
does not negotiate versions; any other shape leaves it blocked waiting for a
reply it never recognises, so this module is the only place that knows it.
"""

import json
from typing import Any

from agentbridge.constants import CAN_USE_TOOL, DEFAULT_DENY_MESSAGE
from agentbridge.core.models import ApprovalBehavior, ApprovalDecision, ApprovalRequest, Attachment
from agentbridge.logging import get_logger

_logger = get_logger(__name__)


def decode_control_request(msg: dict[str, Any]) -> ApprovalRequest | None:
    """Decode a ``control_request`` line into an approval request.

    Returns None for request kinds other than ``can_use_tool`` and for
    requests missing their correlation id; both are logged and skipped.
    """
    request = msg.get("request")
    if not isinstance(request, dict):
        _logger.warning("control_request without request body", request_id=msg.get("request_id"))
        return None

    subtype = request.get("subtype")
    if subtype != CAN_USE_TOOL:
        _logger.warning("Unknown control request subtype: %s", subtype, request_id=msg.get("request_id"))
        return None

    request_id = msg.get("request_id")
    if not isinstance(request_id, str) or not request_id:
        _logger.warning("can_use_tool request without request_id")
        return None

    tool_input = request.get("input")
    suggestions = request.get("permission_suggestions")
    return ApprovalRequest(
        request_id=request_id,
        tool_name=str(request.get("tool_name") or ""),
        input=tool_input if isinstance(tool_input, dict) else {},
        tool_use_id=request.get("tool_use_id"),
        suggestions=suggestions if isinstance(suggestions, list) else None,
    )


def encode_control_response(request: ApprovalRequest, decision: ApprovalDecision) -> dict[str, Any]:
    if decision.behavior == ApprovalBehavior.ALLOW:
        result: dict[str, Any] = {
            "behavior": "allow",
            "updatedInput": decision.updated_input if decision.updated_input is not None else request.input,
        }
        if request.tool_use_id is not None:
            result["toolUseID"] = request.tool_use_id
    else:
        result = {
            "behavior": "deny",
            "message": decision.message or DEFAULT_DENY_MESSAGE,
        }

    return {
        "type": "control_response",
        "response": {
            "subtype": "success",
            "request_id": request.request_id,
            "response": result,
        },
    }


def encode_user_message(content: str, attachments: list[Attachment] | None = None) -> dict[str, Any]:
    """Build the stream-json user turn; attachments become image blocks ahead of the text."""
    body: str | list[dict[str, Any]] = content
    if attachments:
        blocks: list[dict[str, Any]] = [
            {
                "type": "image",
                "source": {"type": "base64", "media_type": att.media_type, "data": att.data},
            }
            for att in attachments
        ]
        if content:
            blocks.append({"type": "text", "text": content})
        body = blocks

    return {"type": "user", "message": {"role": "user", "content": body}}


def dump_line(payload: dict[str, Any]) -> bytes:
    """Serialise one stdin line: compact JSON, no raw newlines inside, trailing newline."""
    return (json.dumps(payload, separators=(",", ":"), ensure_ascii=False) + "\n").encode()
