"""agent_panel.session_router

Which agent (and which of its sessions) owns the visible message list.

Routing states live on `PanelState.route`:

    Idle --select_agent--> Switching(from, to) --sessions_received--> Active(to)

Every switch boundary (another agent, another project/container scope,
another session, a new session) first saves the outgoing list, placeholders
excluded. Responses that belong to an agent that is not on screen never touch
the visible list; `file_foreign` appends them to that agent's saved history.

Transitions return the next state together with the events to send. The
caller commits the state first and emits afterwards, so a backend that answers
synchronously already sees the new state.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, NamedTuple, Sequence

from . import protocol as P
from .history_store import HistoryStore, HistoryStoreError
from .messages import Message, PromptMessage, ResponseMessage, SessionInfo
from .reducer import Active, PanelState, Switching, history_cleared, persistable


_LOG = logging.getLogger("agent_panel.session_router")

Outgoing = tuple[str, dict[str, Any]]


class Routed(NamedTuple):
    state: PanelState
    emits: tuple[Outgoing, ...] = ()


class SessionRouter:
    def __init__(self, *, history: HistoryStore) -> None:
        self._history = history

    @staticmethod
    def is_foreign(state: PanelState, agent_id: str | None) -> bool:
        return agent_id is not None and agent_id != state.agent_id

    def flush(self, state: PanelState) -> str | None:
        """Save the visible list under its agent/session. Returns the session id used."""

        if state.agent_id is None or not persistable(state.messages):
            return state.session_id
        try:
            return self._history.save_session(state.agent_id, state.session_id, state.messages)
        except (HistoryStoreError, OSError):
            _LOG.exception("flush_failed agent_id=%s session_id=%s", state.agent_id, state.session_id)
            return state.session_id

    # ---- agent selection ----

    def select_agent(self, state: PanelState, agent_id: str, *, context_key: str | None = None) -> Routed:
        if agent_id == state.agent_id and context_key == state.context_key:
            return Routed(state)
        self.flush(state)
        _LOG.info("agent_switch from=%s to=%s context=%s", state.agent_id, agent_id, context_key)
        nxt = replace(
            state,
            agent_id=agent_id,
            messages=(),
            session_id=None,
            current_request_id=None,
            context_usage=None,
            sessions=(),
            route=Switching(from_agent=state.agent_id, to_agent=agent_id),
            context_key=context_key,
        )
        return Routed(nxt, ((P.GET_AGENT_SESSIONS, {"agentId": agent_id}),))

    def sessions_received(
        self,
        state: PanelState,
        *,
        agent_id: str,
        sessions: Sequence[SessionInfo],
        current_session_id: str | None,
    ) -> Routed:
        if agent_id != state.agent_id:
            _LOG.debug("sessions_ignored agent_id=%s visible=%s", agent_id, state.agent_id)
            return Routed(state)
        nxt = replace(state, route=Active(agent_id), sessions=tuple(sessions), session_id=current_session_id)
        if current_session_id and sessions:
            return Routed(nxt, ((P.LOAD_SESSION_HISTORY, {"agentId": agent_id, "sessionId": current_session_id}),))
        if not sessions:
            nxt = replace(nxt, messages=_in_flight(state))
        return Routed(nxt)

    def history_received(
        self,
        state: PanelState,
        *,
        agent_id: str,
        session_id: str | None,
        messages: Sequence[Message],
    ) -> Routed:
        """Replace the visible list wholesale; entries of the request still in flight are kept."""

        if agent_id != state.agent_id:
            _LOG.debug("history_ignored agent_id=%s visible=%s", agent_id, state.agent_id)
            return Routed(state)
        loaded = list(messages)
        known = {m.id for m in loaded}
        loaded += [m for m in _in_flight(state) if m.id not in known]
        return Routed(replace(state, messages=tuple(loaded), session_id=session_id, route=Active(agent_id)))

    # ---- sessions of the visible agent ----

    def select_session(self, state: PanelState, session_id: str) -> Routed:
        if state.agent_id is None or session_id == state.session_id:
            return Routed(state)
        self.flush(state)
        return Routed(
            replace(state, session_id=session_id),
            ((P.SET_CURRENT_SESSION, {"agentId": state.agent_id, "sessionId": session_id}),),
        )

    def session_selected(self, state: PanelState, *, agent_id: str, session_id: str) -> Routed:
        if agent_id != state.agent_id:
            return Routed(state)
        return Routed(
            replace(state, session_id=session_id),
            ((P.LOAD_SESSION_HISTORY, {"agentId": agent_id, "sessionId": session_id}),),
        )

    def new_session(self, state: PanelState) -> Routed:
        if state.agent_id is None:
            return Routed(state)
        self.flush(state)
        return Routed(state, ((P.CREATE_NEW_SESSION, {"agentId": state.agent_id}),))

    def session_created(self, state: PanelState, *, agent_id: str, session_id: str) -> Routed:
        if agent_id != state.agent_id:
            return Routed(state)
        return Routed(
            replace(state, messages=_in_flight(state), session_id=session_id, context_usage=None),
            ((P.GET_AGENT_SESSIONS, {"agentId": agent_id}),),
        )

    def clear_history(self, state: PanelState) -> Routed:
        # Nothing is flushed: the backend deletes the current session.
        if state.agent_id is None:
            return Routed(state)
        return Routed(state, ((P.CLEAR_AGENT_HISTORY, {"agentId": state.agent_id}),))

    def agent_history_cleared(self, state: PanelState, *, agent_id: str) -> Routed:
        if agent_id != state.agent_id:
            return Routed(state)
        return Routed(
            replace(history_cleared(state), session_id=None),
            ((P.GET_AGENT_SESSIONS, {"agentId": agent_id}),),
        )

    # ---- cross-agent arrivals ----

    def file_foreign(self, agent_id: str, prompt: PromptMessage | None, response: ResponseMessage) -> str | None:
        """Append a finished exchange to an off-screen agent's current session.

        A prompt that can no longer be located degrades to a response-only entry.
        """

        entries: list[Message] = [prompt, response] if prompt is not None else [response]
        try:
            sid = self._history.append_to_current(agent_id, entries)
        except (HistoryStoreError, OSError):
            _LOG.exception("file_foreign_failed agent_id=%s response_id=%s", agent_id, response.id)
            return None
        _LOG.info(
            "file_foreign agent_id=%s session_id=%s response_id=%s with_prompt=%s",
            agent_id,
            sid,
            response.id,
            prompt is not None,
        )
        return sid


def _in_flight(state: PanelState) -> tuple[Message, ...]:
    rid = state.current_request_id
    if not rid:
        return ()
    return tuple(m for m in state.messages if m.request_id == rid)
