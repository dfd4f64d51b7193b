"""Chat event protocol definitions and validation.

This module defines the event names and payload shapes exchanged between the
chat panel and its backend, in both directions.

Design goals:
- Keep schema stable and explicit
- Validate early with clear errors
- Keep it testable (pure functions where possible)
"""

from __future__ import annotations

from typing import Any, TypedDict, cast

from .messages import SessionInfo, TokenUsage


# ---- Event names ----

# client -> server
SEND_CHAT_PROMPT = "sendChatPrompt"
ABORT_CHAT_PROMPT = "abortChatPrompt"
GET_AGENT_SESSIONS = "getAgentSessions"
SET_CURRENT_SESSION = "setCurrentSession"
CREATE_NEW_SESSION = "createNewSession"
LOAD_SESSION_HISTORY = "loadSessionHistory"
CLEAR_AGENT_HISTORY = "clearAgentHistory"
AGENT_STATUS_MESSAGE = "agentStatusMessage"

# server -> client
CHAT_RESPONSE_CHUNK = "chatResponseChunk"
CHAT_RESPONSE = "chatResponse"
CHAT_ERROR = "chatError"
CHAT_ABORTED = "chatAborted"
TOKEN_USAGE = "tokenUsage"
FIRST_CHUNK_TIME = "firstChunkTime"
AGENT_SESSIONS = "agentSessions"
SESSION_HISTORY = "sessionHistory"
NEW_SESSION_CREATED = "newSessionCreated"
CURRENT_SESSION_SET = "currentSessionSet"
AGENT_HISTORY_CLEARED = "agentHistoryCleared"

CLIENT_EVENTS = frozenset(
    {
        SEND_CHAT_PROMPT,
        ABORT_CHAT_PROMPT,
        GET_AGENT_SESSIONS,
        SET_CURRENT_SESSION,
        CREATE_NEW_SESSION,
        LOAD_SESSION_HISTORY,
        CLEAR_AGENT_HISTORY,
        AGENT_STATUS_MESSAGE,
    }
)

SERVER_EVENTS = frozenset(
    {
        CHAT_RESPONSE_CHUNK,
        CHAT_RESPONSE,
        CHAT_ERROR,
        CHAT_ABORTED,
        TOKEN_USAGE,
        FIRST_CHUNK_TIME,
        AGENT_SESSIONS,
        SESSION_HISTORY,
        NEW_SESSION_CREATED,
        CURRENT_SESSION_SET,
        AGENT_HISTORY_CLEARED,
    }
)


# ---- Payload types (TypedDicts) ----


class SendChatPromptPayload(TypedDict, total=False):
    requestId: str
    prompt: str
    model: str
    agentId: str
    thinkingTokens: int
    requestedTools: list[str]
    projectPath: str | None
    containerId: str | None
    agentName: str | None
    agentNickname: str | None
    agentJobTitle: str | None


class ChunkEvent(TypedDict):
    id: str
    chunk: str


class ChatResponseEvent(TypedDict, total=False):
    id: str
    requestId: str | None
    content: str
    timestamp: Any
    toolName: str | None
    toolResult: Any


class FirstChunkTimeEvent(TypedDict):
    requestId: str | None
    responseId: str
    timestamp: float


class AgentSessionsEvent(TypedDict):
    agentId: str
    sessions: list[SessionInfo]
    currentSessionId: str | None


class SessionHistoryEvent(TypedDict):
    agentId: str
    sessionId: str | None
    messages: list[Any]


class SessionRefEvent(TypedDict):
    agentId: str
    sessionId: str


# ---- Validation ----


class ProtocolError(ValueError):
    """Raised when an event payload fails validation."""


def _require_obj(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise ProtocolError("Payload must be an object")
    return payload


def _require_id(obj: dict[str, Any], key: str) -> str:
    if key not in obj:
        raise ProtocolError(f"Missing '{key}'")
    v = obj[key]
    if isinstance(v, bool) or not isinstance(v, (str, int)):
        raise ProtocolError(f"'{key}' must be a string")
    s = str(v)
    if not s:
        raise ProtocolError(f"'{key}' must be non-empty")
    return s


def _optional_id(obj: dict[str, Any], key: str) -> str | None:
    v = obj.get(key)
    if v is None or v == "":
        return None
    if isinstance(v, bool) or not isinstance(v, (str, int)):
        raise ProtocolError(f"'{key}' must be a string")
    return str(v)


def _require_number(obj: dict[str, Any], key: str) -> float:
    if key not in obj:
        raise ProtocolError(f"Missing '{key}'")
    v = obj[key]
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise ProtocolError(f"'{key}' must be a number")
    return float(v)


def _optional_int(obj: dict[str, Any], key: str) -> int:
    v = obj.get(key)
    if v is None:
        return 0
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise ProtocolError(f"'{key}' must be a number")
    return int(v)


def validate_chunk(payload: Any) -> ChunkEvent:
    obj = _require_obj(payload)
    rid = _require_id(obj, "id")
    chunk = obj.get("chunk", "")
    if chunk is None:
        chunk = ""
    if not isinstance(chunk, str):
        raise ProtocolError("'chunk' must be a string")
    return {"id": rid, "chunk": chunk}


def validate_chat_response(payload: Any) -> ChatResponseEvent:
    obj = _require_obj(payload)
    rid = _require_id(obj, "id")
    content = obj.get("content", "")
    if content is None:
        content = ""
    if not isinstance(content, str):
        raise ProtocolError("'content' must be a string")
    tool_name = obj.get("toolName")
    if tool_name is not None and not isinstance(tool_name, str):
        raise ProtocolError("'toolName' must be a string")
    return {
        "id": rid,
        "requestId": _optional_id(obj, "requestId"),
        "content": content,
        "timestamp": obj.get("timestamp"),
        "toolName": tool_name or None,
        "toolResult": obj.get("toolResult"),
    }


def validate_token_usage(payload: Any) -> tuple[str | None, TokenUsage]:
    """Validate a `tokenUsage` event.

    Returns:
        (request id if present, parsed usage)
    """

    obj = _require_obj(payload)
    timings = obj.get("timings")
    if timings is not None and not isinstance(timings, dict):
        raise ProtocolError("'timings' must be an object")
    usage = TokenUsage(
        prompt_tokens=int(_require_number(obj, "promptTokens")),
        max_context=int(_require_number(obj, "maxContext")),
        usage_percent=_require_number(obj, "usagePercent"),
        completion_tokens=_optional_int(obj, "completionTokens"),
        total_tokens=_optional_int(obj, "totalTokens"),
        timings=timings,
    )
    return _optional_id(obj, "requestId"), usage


def validate_first_chunk_time(payload: Any) -> FirstChunkTimeEvent:
    obj = _require_obj(payload)
    return {
        "requestId": _optional_id(obj, "requestId"),
        "responseId": _require_id(obj, "responseId"),
        "timestamp": _require_number(obj, "timestamp"),
    }


def chat_error_text(payload: Any) -> str:
    """`chatError` carries a bare string; objects with a `message`/`error` are tolerated."""

    if isinstance(payload, str):
        return payload
    if isinstance(payload, dict):
        for key in ("message", "error"):
            v = payload.get(key)
            if isinstance(v, str) and v:
                return v
    if payload is None:
        return "Unknown error"
    return str(payload)


def _session_info(raw: Any) -> SessionInfo:
    if isinstance(raw, SessionInfo):
        return raw
    if not isinstance(raw, dict):
        raise ProtocolError("Session entries must be objects")
    sid = _require_id(raw, "id")
    count = raw.get("messageCount", 0)
    if isinstance(count, bool) or not isinstance(count, int):
        count = 0
    return SessionInfo(
        id=sid,
        title=str(raw.get("title") or raw.get("name") or ""),
        message_count=count,
        updated_at=str(raw.get("updatedAt") or raw.get("lastUpdated") or ""),
    )


def session_info_to_record(info: SessionInfo) -> dict[str, Any]:
    return {"id": info.id, "title": info.title, "messageCount": info.message_count, "updatedAt": info.updated_at}


def validate_agent_sessions(payload: Any) -> AgentSessionsEvent:
    obj = _require_obj(payload)
    sessions = obj.get("sessions", [])
    if sessions is None:
        sessions = []
    if not isinstance(sessions, list):
        raise ProtocolError("'sessions' must be a list")
    return {
        "agentId": _require_id(obj, "agentId"),
        "sessions": [_session_info(s) for s in sessions],
        "currentSessionId": _optional_id(obj, "currentSessionId"),
    }


def validate_session_history(payload: Any) -> SessionHistoryEvent:
    obj = _require_obj(payload)
    messages = obj.get("messages", [])
    if messages is None:
        messages = []
    if not isinstance(messages, list):
        raise ProtocolError("'messages' must be a list")
    return {
        "agentId": _require_id(obj, "agentId"),
        "sessionId": _optional_id(obj, "sessionId"),
        "messages": messages,
    }


def validate_session_ref(payload: Any) -> SessionRefEvent:
    obj = _require_obj(payload)
    return cast(SessionRefEvent, {"agentId": _require_id(obj, "agentId"), "sessionId": _require_id(obj, "sessionId")})


def validate_agent_ref(payload: Any) -> str:
    return _require_id(_require_obj(payload), "agentId")


def validate_send_chat_prompt(payload: Any) -> SendChatPromptPayload:
    """Server side check of an incoming prompt submission."""

    obj = _require_obj(payload)
    _require_id(obj, "requestId")
    _require_id(obj, "agentId")
    prompt = obj.get("prompt")
    if not isinstance(prompt, str):
        raise ProtocolError("'prompt' must be a string")
    tools = obj.get("requestedTools", [])
    if tools is not None and (not isinstance(tools, list) or not all(isinstance(t, str) for t in tools)):
        raise ProtocolError("'requestedTools' must be a list of strings")
    tt = obj.get("thinkingTokens")
    if tt is not None and (isinstance(tt, bool) or not isinstance(tt, int)):
        raise ProtocolError("'thinkingTokens' must be an int")
    return cast(SendChatPromptPayload, obj)
