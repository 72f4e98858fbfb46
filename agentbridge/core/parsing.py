import json
from typing import Any

from agentbridge.constants import PROMPT_PREVIEW_LIMIT, SUBAGENT_TOOL_NAME, TOOL_OUTPUT_LIMIT
from agentbridge.core.codec import decode_control_request
from agentbridge.core.transcript import (
    AgentSpawn,
    AssistantText,
    ControlRequest,
    ParsedItem,
    SystemInit,
    Thinking,
    TokenUsage,
    ToolInvocation,
    ToolResult,
    TurnCompletion,
    UserText,
)
from agentbridge.logging import get_logger
from agentbridge.utils import now_iso, short_id, truncate

_logger = get_logger(__name__)


def parse_line(raw: str | bytes, *, with_usage: bool = False) -> list[ParsedItem]:
    """Classify one line of the agent's stream-json output.

    Returns the items in the order their blocks appear in the line; an empty
    list means the line was ignored. Never raises on bad input.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    line = raw.strip()
    if not line:
        return []

    try:
        msg = json.loads(line)
    except (ValueError, RecursionError):
        _logger.debug("Skipping non-JSON line: %.200s", line)
        return []
    if not isinstance(msg, dict):
        return []

    try:
        return _dispatch(msg, with_usage)
    except (AttributeError, KeyError, TypeError, ValueError):
        _logger.warning("Malformed %s line: %.200s", msg.get("type"), line, exc_info=True)
        return []


def _dispatch(msg: dict[str, Any], with_usage: bool) -> list[ParsedItem]:
    timestamp = msg.get("timestamp") or now_iso()
    match msg.get("type"):
        case "system":
            return _parse_system(msg)
        case "control_request":
            request = decode_control_request(msg)
            return [ControlRequest(request)] if request else []
        case "assistant":
            return _parse_assistant(msg, timestamp, with_usage)
        case "user":
            return _parse_user(msg, timestamp)
        case "result":
            return [_parse_result(msg, timestamp)]
        case other:
            _logger.debug("Ignoring stream line of type %s", other)
            return []


def _parse_system(msg: dict[str, Any]) -> list[ParsedItem]:
    if msg.get("subtype") != "init":
        return []
    tools = msg.get("tools") or []
    return [
        SystemInit(
            session_id=msg.get("session_id"),
            model=msg.get("model"),
            cwd=msg.get("cwd"),
            tools=tuple(str(t) for t in tools),
        )
    ]


def _content_blocks(msg: dict[str, Any]) -> list[Any] | str | None:
    message = msg.get("message")
    if not isinstance(message, dict):
        return None
    return message.get("content")


def _parse_assistant(msg: dict[str, Any], timestamp: str, with_usage: bool) -> list[ParsedItem]:
    blocks = _content_blocks(msg)
    items: list[ParsedItem] = []
    if isinstance(blocks, str):
        if blocks:
            items.append(AssistantText(text=blocks, timestamp=timestamp))
        blocks = []

    for block in blocks or []:
        if not isinstance(block, dict):
            continue
        match block.get("type"):
            case "text":
                text = block.get("text") or ""
                if text:
                    items.append(AssistantText(text=text, timestamp=timestamp))
            case "thinking":
                thinking = block.get("thinking") or ""
                if thinking:
                    items.append(Thinking(text=thinking, timestamp=timestamp))
            case "tool_use":
                items.append(_parse_tool_use(block, timestamp))

    if with_usage:
        usage = msg["message"].get("usage") if isinstance(msg.get("message"), dict) else None
        if isinstance(usage, dict):
            items.append(
                TokenUsage(
                    input_tokens=usage.get("input_tokens") or 0,
                    output_tokens=usage.get("output_tokens") or 0,
                    cache_read_tokens=usage.get("cache_read_input_tokens") or 0,
                    cache_creation_tokens=usage.get("cache_creation_input_tokens") or 0,
                    timestamp=timestamp,
                )
            )
    return items


def _parse_tool_use(block: dict[str, Any], timestamp: str) -> ToolInvocation | AgentSpawn:
    tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
    tool_id = block.get("id") or short_id()
    if block.get("name") == SUBAGENT_TOOL_NAME:
        prompt = tool_input.get("prompt")
        return AgentSpawn(
            agent_type=tool_input.get("subagent_type") or "unknown",
            description=tool_input.get("description") or "",
            tool_id=tool_id,
            prompt_preview=prompt[:PROMPT_PREVIEW_LIMIT] if isinstance(prompt, str) else None,
            timestamp=timestamp,
        )
    return ToolInvocation(
        tool_name=block.get("name") or "",
        tool_id=tool_id,
        input=tool_input,
        timestamp=timestamp,
    )


def _parse_user(msg: dict[str, Any], timestamp: str) -> list[ParsedItem]:
    # Tool results come back wrapped in a synthetic user turn; only plain
    # text blocks are human-authored.
    blocks = _content_blocks(msg)
    if isinstance(blocks, str):
        return [UserText(text=blocks, timestamp=timestamp)] if blocks else []

    items: list[ParsedItem] = []
    for block in blocks or []:
        if not isinstance(block, dict):
            continue
        match block.get("type"):
            case "tool_result":
                items.append(
                    ToolResult(
                        tool_id=block.get("tool_use_id") or "",
                        output=truncate(_stringify_output(block.get("content")), TOOL_OUTPUT_LIMIT),
                        is_error=bool(block.get("is_error")),
                        timestamp=timestamp,
                    )
                )
            case "text":
                text = block.get("text") or ""
                if text:
                    items.append(UserText(text=text, timestamp=timestamp))
    return items


def _stringify_output(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text") or "")
            elif isinstance(part, str):
                parts.append(part)
        return "\n".join(parts)
    return json.dumps(content)


def _parse_result(msg: dict[str, Any], timestamp: str) -> TurnCompletion:
    result = msg.get("result")
    return TurnCompletion(
        outcome=msg.get("subtype") or "unknown",
        is_error=bool(msg.get("is_error")),
        result=result if isinstance(result, str) else None,
        duration_ms=msg.get("duration_ms"),
        num_turns=msg.get("num_turns"),
        total_cost_usd=msg.get("total_cost_usd"),
        timestamp=timestamp,
    )
