"""agent_panel.reducer

The chat panel's single source of truth and its per-event transitions.

`PanelState` is immutable. Each handler takes the current state plus the event
data and returns the next state; nothing here talks to the transport, the
clock or the disk. Routing between agents (Idle / Active / Switching) is part
of the state so that a reader can tell from one value which agent owns the
visible list and whether a switch is still waiting for its history.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Sequence, Union

from .content_parser import is_tool_call_only, parse_final_answer, strip_tool_call_markers
from .messages import (
    ContextUsage,
    Message,
    PlaceholderMessage,
    PromptMessage,
    ResponseMessage,
    SessionInfo,
    ToolCallMessage,
    ToolResultMessage,
    TokenUsage,
)
from .stream_accumulator import apply_chunk


ABORTED_TEXT = "(Request aborted)"


# ---- routing states ----


@dataclass(frozen=True)
class Idle:
    name = "idle"


@dataclass(frozen=True)
class Active:
    agent_id: str

    name = "active"


@dataclass(frozen=True)
class Switching:
    from_agent: str | None
    to_agent: str

    name = "switching"


Route = Union[Idle, Active, Switching]


@dataclass(frozen=True)
class PanelState:
    agent_id: str | None = None
    messages: tuple[Message, ...] = ()
    session_id: str | None = None
    current_request_id: str | None = None
    context_usage: ContextUsage | None = None
    route: Route = Idle()
    sessions: tuple[SessionInfo, ...] = ()
    # Project/container scope the visible agent was selected under.
    context_key: str | None = None


def prompt_id(request_id: str) -> str:
    return f"prompt-{request_id}"


def placeholder_id(request_id: str) -> str:
    return f"placeholder-{request_id}"


def persistable(messages: Sequence[Message]) -> list[Message]:
    """Messages worth saving: everything except provisional placeholders."""

    return [m for m in messages if not isinstance(m, PlaceholderMessage)]


def find_prompt(messages: Sequence[Message], request_id: str | None) -> PromptMessage | None:
    if not request_id:
        return None
    for m in messages:
        if isinstance(m, PromptMessage) and m.request_id == request_id:
            return m
    return None


def _without_placeholders(messages: Sequence[Message], request_id: str | None) -> list[Message]:
    if not request_id:
        return list(messages)
    return [m for m in messages if not (isinstance(m, PlaceholderMessage) and m.request_id == request_id)]


def _stop_streaming(messages: Sequence[Message], request_id: str | None) -> list[Message]:
    # Partial text of an interrupted request stays, but stops streaming.
    if not request_id:
        return list(messages)
    return [
        replace(m, is_streaming=False) if isinstance(m, ResponseMessage) and m.request_id == request_id else m
        for m in messages
    ]


def _clear_current(state: PanelState, request_id: str | None) -> str | None:
    if request_id and state.current_request_id == request_id:
        return None
    return state.current_request_id


# ---- transitions ----


def prompt_submitted(state: PanelState, *, request_id: str, prompt: str, agent_id: str, now: float) -> PanelState:
    msgs = list(state.messages)
    msgs.append(PromptMessage(id=prompt_id(request_id), content=prompt, timestamp=now, request_id=request_id, agent_id=agent_id))
    msgs.append(
        PlaceholderMessage(
            id=placeholder_id(request_id),
            request_id=request_id,
            agent_id=agent_id,
            timestamp=now,
            context_usage=state.context_usage,
        )
    )
    return replace(state, messages=tuple(msgs), current_request_id=request_id)


def chunk_received(
    state: PanelState,
    *,
    response_id: str,
    text: str,
    request_id: str | None,
    agent_id: str | None,
    now: float,
) -> PanelState:
    msgs = apply_chunk(state.messages, response_id, text, request_id=request_id, agent_id=agent_id, now=now)
    return replace(state, messages=tuple(msgs))


def _find_target(msgs: Sequence[Message], response_id: str, request_id: str | None) -> int | None:
    for i, m in enumerate(msgs):
        if m.id == response_id and not isinstance(m, (PromptMessage, ToolCallMessage)):
            return i
    if request_id:
        for i, m in enumerate(msgs):
            if isinstance(m, PlaceholderMessage) and m.request_id == request_id:
                return i
    for i, m in enumerate(msgs):
        if m.id == response_id and isinstance(m, ToolCallMessage):
            return i
    return None


def response_finalized(
    state: PanelState,
    *,
    response_id: str,
    request_id: str | None,
    content: str,
    agent_id: str | None,
    now: float,
    tool_name: str | None = None,
    tool_result: Any = None,
) -> PanelState:
    """Turn the streamed (or placeholder) entry for a response into its final form.

    A response that is nothing but a tool-call block becomes a ToolCallMessage.
    Any other response replaces an earlier tool-call message of the same
    request when there is one; otherwise it replaces its own streaming entry
    in place. A tool result carried on the event is appended after it.
    """

    msgs = list(state.messages)
    idx = _find_target(msgs, response_id, request_id)
    target = msgs[idx] if idx is not None else None
    owner = target.agent_id if target is not None and target.agent_id is not None else agent_id
    usage = target.context_usage if target is not None and target.context_usage is not None else None
    timestamp = target.timestamp if target is not None else now

    check = is_tool_call_only(content)
    if check.is_only:
        final: Message = ToolCallMessage(
            id=response_id,
            content=strip_tool_call_markers(content),
            timestamp=timestamp,
            tool_name=check.name,
            agent_id=owner,
            request_id=request_id,
            context_usage=usage,
        )
        if idx is not None:
            msgs[idx] = final
        elif msgs and isinstance(msgs[-1], ToolCallMessage):
            msgs[-1] = final
        else:
            msgs.append(final)
    else:
        answer = parse_final_answer(content) or ""
        tc_idx = None
        if request_id:
            for i in range(len(msgs) - 1, -1, -1):
                m = msgs[i]
                if isinstance(m, ToolCallMessage) and m.request_id == request_id:
                    tc_idx = i
                    break

        if tc_idx is not None:
            prior = msgs[tc_idx]
            msgs[tc_idx] = ResponseMessage(
                id=response_id,
                content=answer,
                timestamp=prior.timestamp,
                agent_id=prior.agent_id if prior.agent_id is not None else owner,
                request_id=request_id,
                context_usage=usage or prior.context_usage,
            )
            if idx is not None and idx != tc_idx:
                del msgs[idx]
        elif idx is not None:
            msgs[idx] = ResponseMessage(
                id=response_id,
                content=answer,
                timestamp=timestamp,
                agent_id=owner,
                request_id=request_id if request_id is not None else target.request_id,
                context_usage=usage,
            )
        elif msgs and isinstance(msgs[-1], ToolCallMessage):
            prior = msgs[-1]
            msgs[-1] = ResponseMessage(
                id=response_id,
                content=answer,
                timestamp=prior.timestamp,
                agent_id=prior.agent_id if prior.agent_id is not None else owner,
                request_id=request_id or prior.request_id,
                context_usage=prior.context_usage,
            )
        else:
            msgs.append(
                ResponseMessage(id=response_id, content=answer, timestamp=now, agent_id=owner, request_id=request_id)
            )

    msgs = _without_placeholders(msgs, request_id)

    result_id = f"{response_id}-tool-result"
    if tool_name and tool_result is not None and all(m.id != result_id for m in msgs):
        msgs.append(
            ToolResultMessage(
                id=result_id,
                timestamp=now,
                tool_name=str(tool_name),
                tool_result=tool_result,
                agent_id=owner,
                request_id=request_id,
            )
        )

    # A lone tool call is not the end of the request; its follow-up answer is still due.
    current = state.current_request_id if check.is_only else _clear_current(state, request_id)
    return replace(state, messages=tuple(msgs), current_request_id=current)


def request_aborted(state: PanelState, *, request_id: str) -> PanelState:
    msgs = _stop_streaming(_without_placeholders(state.messages, request_id), request_id)
    return replace(state, messages=tuple(msgs), current_request_id=_clear_current(state, request_id))


def abort_acknowledged(state: PanelState, *, request_id: str | None, now: float) -> PanelState:
    mid = f"aborted-{request_id}" if request_id else f"aborted-{int(now * 1000)}"
    msgs = _without_placeholders(state.messages, request_id)
    msgs.append(ResponseMessage(id=mid, content=ABORTED_TEXT, timestamp=now, agent_id=state.agent_id, request_id=request_id))
    return replace(state, messages=tuple(msgs), current_request_id=_clear_current(state, request_id))


def error_message(*, error: str, now: float, agent_id: str | None, request_id: str | None) -> ResponseMessage:
    return ResponseMessage(
        id=f"error-{int(now * 1000)}",
        content=f"**Error**\n\n{error}",
        timestamp=now,
        agent_id=agent_id,
        request_id=request_id,
    )


def error_received(state: PanelState, *, error: str, now: float, request_id: str | None = None) -> PanelState:
    rid = request_id or state.current_request_id
    msgs = _stop_streaming(_without_placeholders(state.messages, rid), rid)
    msgs.append(error_message(error=error, now=now, agent_id=state.agent_id, request_id=rid))
    return replace(state, messages=tuple(msgs), current_request_id=_clear_current(state, rid))


def token_usage_received(state: PanelState, *, request_id: str | None, usage: TokenUsage) -> PanelState:
    cu = usage.context_usage()
    msgs = list(state.messages)
    if request_id:
        for i, m in enumerate(msgs):
            if m.request_id == request_id and not isinstance(m, PromptMessage):
                msgs[i] = replace(m, context_usage=cu)
    return replace(state, messages=tuple(msgs), context_usage=cu)


def history_cleared(state: PanelState) -> PanelState:
    return replace(state, messages=(), context_usage=None)
