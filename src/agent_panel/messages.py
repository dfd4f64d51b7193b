"""agent_panel.messages

Conversation data model for the chat panel.

Messages are a tagged union of frozen dataclasses. Transitions build new
instances with `dataclasses.replace` (or a new variant) instead of mutating
flags in place:

- PromptMessage: what the user sent
- PlaceholderMessage: the provisional "Thinking..." entry for an in-flight request
- ResponseMessage: streamed or final assistant text
- ToolCallMessage: a response that only announced a tool call
- ToolResultMessage: structured output of a tool run

Records on the wire and on disk use camelCase keys (`requestId`, `isStreaming`, ...).
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union


JsonDict = dict[str, Any]


@dataclass(frozen=True)
class ContextUsage:
    prompt_tokens: int
    max_context: int
    usage_percent: float


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int
    max_context: int
    usage_percent: float
    completion_tokens: int = 0
    total_tokens: int = 0
    timings: JsonDict | None = None

    def context_usage(self) -> ContextUsage:
        return ContextUsage(
            prompt_tokens=self.prompt_tokens,
            max_context=self.max_context,
            usage_percent=self.usage_percent,
        )


@dataclass(frozen=True)
class PromptMessage:
    id: str
    content: str
    timestamp: float
    request_id: str | None = None
    agent_id: str | None = None
    context_usage: ContextUsage | None = None

    type = "prompt"
    is_placeholder = False
    is_streaming = False


@dataclass(frozen=True)
class PlaceholderMessage:
    id: str
    request_id: str
    agent_id: str | None
    timestamp: float
    content: str = ""
    context_usage: ContextUsage | None = None

    type = "response"
    is_placeholder = True
    is_streaming = True


@dataclass(frozen=True)
class ResponseMessage:
    id: str
    content: str
    timestamp: float
    agent_id: str | None = None
    request_id: str | None = None
    is_streaming: bool = False
    context_usage: ContextUsage | None = None

    type = "response"
    is_placeholder = False


@dataclass(frozen=True)
class ToolCallMessage:
    id: str
    content: str
    timestamp: float
    tool_name: str | None = None
    agent_id: str | None = None
    request_id: str | None = None
    context_usage: ContextUsage | None = None

    type = "toolCall"
    is_placeholder = False
    is_streaming = False


@dataclass(frozen=True)
class ToolResultMessage:
    id: str
    timestamp: float
    tool_name: str
    tool_result: Any = None
    content: str = ""
    agent_id: str | None = None
    request_id: str | None = None
    context_usage: ContextUsage | None = None

    type = "toolResult"
    is_placeholder = False
    is_streaming = False


Message = Union[PromptMessage, PlaceholderMessage, ResponseMessage, ToolCallMessage, ToolResultMessage]


@dataclass
class RequestRecord:
    """Per-request bookkeeping, alive from prompt submission until its metrics report."""

    request_id: str
    agent_id: str
    start_time: float
    response_id: str | None = None
    first_chunk_time: float | None = None
    last_chunk_time: float | None = None
    bytes_received: int = 0
    token_usage: TokenUsage | None = None
    completed_at: float | None = None


@dataclass
class Session:
    id: str
    agent_id: str
    messages: list[Message] = field(default_factory=list)
    last_updated: float = field(default_factory=time.time)


@dataclass(frozen=True)
class SessionInfo:
    id: str
    title: str = ""
    message_count: int = 0
    updated_at: str = ""


# ---- record conversion ----


def _context_usage_to_record(cu: ContextUsage | None) -> JsonDict | None:
    if cu is None:
        return None
    return {"promptTokens": cu.prompt_tokens, "maxContext": cu.max_context, "usagePercent": cu.usage_percent}


def context_usage_from_record(d: Any) -> ContextUsage | None:
    if not isinstance(d, dict):
        return None
    try:
        return ContextUsage(
            prompt_tokens=int(d.get("promptTokens") or 0),
            max_context=int(d.get("maxContext") or 0),
            usage_percent=float(d.get("usagePercent") or 0.0),
        )
    except (TypeError, ValueError):
        return None


def _timestamp_from_record(v: Any) -> float:
    if isinstance(v, bool):
        return time.time()
    if isinstance(v, (int, float)):
        # Millisecond epochs come from JS clients.
        return float(v) / 1000.0 if v > 1e11 else float(v)
    if isinstance(v, str) and v.strip():
        try:
            return datetime.fromisoformat(v.strip().replace("Z", "+00:00")).timestamp()
        except ValueError:
            return time.time()
    return time.time()


def message_to_record(msg: Message) -> JsonDict:
    rec: JsonDict = {
        "id": msg.id,
        "type": msg.type,
        "content": msg.content,
        "timestamp": msg.timestamp,
        "isStreaming": bool(msg.is_streaming),
    }
    if msg.agent_id is not None:
        rec["agentId"] = msg.agent_id
    if msg.request_id is not None:
        rec["requestId"] = msg.request_id
    if msg.is_placeholder:
        rec["isPlaceholder"] = True
    cu = _context_usage_to_record(msg.context_usage)
    if cu is not None:
        rec["contextUsage"] = cu
    if isinstance(msg, (ToolCallMessage, ToolResultMessage)) and msg.tool_name:
        rec["toolName"] = msg.tool_name
    if isinstance(msg, ToolResultMessage):
        rec["toolResult"] = msg.tool_result
    return rec


def message_from_record(rec: Any, *, fallback_id: str = "") -> Message:
    """Build a message from a wire/disk record.

    Unknown types and missing fields degrade to a plain response.
    """

    if not isinstance(rec, dict):
        return ResponseMessage(id=fallback_id, content=str(rec or ""), timestamp=time.time())

    mid = str(rec.get("id") or fallback_id)
    content = rec.get("content")
    content = content if isinstance(content, str) else ("" if content is None else str(content))
    ts = _timestamp_from_record(rec.get("timestamp"))
    agent = rec.get("agentId")
    if agent is None and isinstance(rec.get("agent"), dict):
        agent = rec["agent"].get("id")
    agent_id = str(agent) if agent not in (None, "") else None
    req = rec.get("requestId", rec.get("_requestId"))
    request_id = str(req) if req not in (None, "") else None
    cu = context_usage_from_record(rec.get("contextUsage"))
    mtype = rec.get("type")

    if mtype == "prompt":
        return PromptMessage(id=mid, content=content, timestamp=ts, request_id=request_id, agent_id=agent_id, context_usage=cu)
    if mtype == "toolCall":
        tn = rec.get("toolName")
        return ToolCallMessage(
            id=mid,
            content=content,
            timestamp=ts,
            tool_name=str(tn) if tn else None,
            agent_id=agent_id,
            request_id=request_id,
            context_usage=cu,
        )
    if mtype == "toolResult":
        return ToolResultMessage(
            id=mid,
            timestamp=ts,
            tool_name=str(rec.get("toolName") or ""),
            tool_result=rec.get("toolResult"),
            content=content,
            agent_id=agent_id,
            request_id=request_id,
            context_usage=cu,
        )
    if (rec.get("isPlaceholder") or rec.get("_isPlaceholder")) and request_id:
        return PlaceholderMessage(
            id=mid, request_id=request_id, agent_id=agent_id, timestamp=ts, content=content, context_usage=cu
        )
    return ResponseMessage(
        id=mid,
        content=content,
        timestamp=ts,
        agent_id=agent_id,
        request_id=request_id,
        is_streaming=bool(rec.get("isStreaming", False)),
        context_usage=cu,
    )


def messages_from_records(records: Any, *, id_prefix: str = "msg") -> list[Message]:
    if not isinstance(records, list):
        return []
    return [message_from_record(r, fallback_id=f"{id_prefix}-{i}") for i, r in enumerate(records)]
