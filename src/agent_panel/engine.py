"""agent_panel.engine

The chat panel engine: binds backend events to request tracking, stream
accumulation, routing, final-answer parsing and metrics.

Key properties:
- One authoritative `PanelState`; every handler reads it, computes the next
  one with a pure reducer/router transition, commits it, then emits.
- A response is always attributed to the agent its request was sent to,
  whichever agent is on screen when it arrives.
- Everything runs on one thread (the Qt UI thread in the app). The transport
  is responsible for delivering events there.
- Wire-level problems (malformed payloads, unknown ids, late chunks) are
  logged and dropped; only misuse of the API raises `EngineError`.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections import deque
from dataclasses import replace
from typing import Any, Callable, Optional

from . import protocol as P
from . import reducer as R
from .agents import AgentRoster, AgentRosterError
from .config import PanelConfig
from .content_parser import is_tool_call_only, parse_final_answer
from .history_store import HistoryStore
from .messages import ResponseMessage, messages_from_records
from .metrics import MetricsCalculator, MetricsJob, MetricsReport
from .prefs import UserProfile, selected_tools, user_prompt_fields
from .reducer import PanelState
from .request_tracker import ExpiringIds, RequestTracker
from .scheduler import Scheduler
from .session_router import Routed, SessionRouter
from .stream_accumulator import StreamAccumulator
from .transport import Transport


JsonDict = dict[str, Any]

_LOG = logging.getLogger("agent_panel.engine")

StateListener = Callable[[PanelState], None]
ReportListener = Callable[[MetricsReport, str], None]


class EngineError(RuntimeError):
    pass


def context_key_for(project_path: str | None, container_id: str | None) -> str | None:
    if not project_path and not container_id:
        return None
    return f"{container_id or ''}|{project_path or ''}"


class ChatEngine:
    def __init__(
        self,
        *,
        transport: Transport,
        history: HistoryStore,
        roster: AgentRoster,
        scheduler: Scheduler,
        config: Optional[PanelConfig] = None,
        clock: Callable[[], float] = time.time,
        user_profile: Optional[UserProfile] = None,
        defaults: Optional[JsonDict] = None,
    ) -> None:
        self._cfg = config or PanelConfig()
        self._transport = transport
        self._history = history
        self._roster = roster
        self._clock = clock
        self._profile = user_profile
        self._defaults: JsonDict = dict(defaults or {})

        self._tracker = RequestTracker(clock=clock, tombstone_ttl_s=self._cfg.tombstone_ttl_s)
        self._accumulator = StreamAccumulator(clock=clock)
        self._metrics = MetricsCalculator(
            scheduler=scheduler,
            tracker=self._tracker,
            accumulator=self._accumulator,
            sink=self._emit_report,
            grace_s=self._cfg.metrics_grace_s,
            weights=self._cfg.confidence,
            clock=clock,
            remember_s=self._cfg.tombstone_ttl_s,
        )
        self._router = SessionRouter(history=history)

        self._state = PanelState()
        self._listeners: list[StateListener] = []
        self._report_listeners: list[ReportListener] = []
        # Terminal responses already handled (duplicate `chatResponse` guard).
        self._finalized = ExpiringIds(clock=clock, ttl_s=self._cfg.tombstone_ttl_s)
        # (request_id, agent_id) per abort we sent, oldest first.
        self._awaiting_abort_ack: deque[tuple[str, Optional[str]]] = deque()
        self._project_path: Optional[str] = None
        self._container_id: Optional[str] = None

        self._bind()

    # ---- read access ----

    @property
    def state(self) -> PanelState:
        return self._state

    @property
    def tracker(self) -> RequestTracker:
        return self._tracker

    @property
    def accumulator(self) -> StreamAccumulator:
        return self._accumulator

    @property
    def metrics(self) -> MetricsCalculator:
        return self._metrics

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def on_report(self, listener: ReportListener) -> None:
        self._report_listeners.append(listener)

    # ---- plumbing ----

    def _bind(self) -> None:
        t = self._transport
        t.on(P.CHAT_RESPONSE_CHUNK, self._on_chunk)
        t.on(P.CHAT_RESPONSE, self._on_response)
        t.on(P.CHAT_ERROR, self._on_error)
        t.on(P.CHAT_ABORTED, self._on_aborted)
        t.on(P.TOKEN_USAGE, self._on_token_usage)
        t.on(P.FIRST_CHUNK_TIME, self._on_first_chunk_time)
        t.on(P.AGENT_SESSIONS, self._on_agent_sessions)
        t.on(P.SESSION_HISTORY, self._on_session_history)
        t.on(P.NEW_SESSION_CREATED, self._on_session_created)
        t.on(P.CURRENT_SESSION_SET, self._on_current_session_set)
        t.on(P.AGENT_HISTORY_CLEARED, self._on_agent_history_cleared)

    def _set_state(self, nxt: PanelState) -> None:
        if nxt is self._state:
            return
        self._state = nxt
        for listener in list(self._listeners):
            try:
                listener(nxt)
            except Exception:
                _LOG.exception("state_listener_failed")

    def _commit(self, routed: Routed) -> None:
        self._set_state(routed.state)
        for event, payload in routed.emits:
            self._transport.emit(event, payload)

    def _emit_report(self, report: MetricsReport, text: str) -> None:
        self._transport.emit(P.AGENT_STATUS_MESSAGE, {"agentId": report.agent_id, "text": text})
        for listener in list(self._report_listeners):
            try:
                listener(report, text)
            except Exception:
                _LOG.exception("report_listener_failed response_id=%s", report.response_id)

    def _owner(self, request_id: Optional[str]) -> Optional[str]:
        agent = self._tracker.resolve(request_id)
        if agent is None:
            rec = self._tracker.record(request_id)
            agent = rec.agent_id if rec is not None else None
        return agent

    def _in_flight_request(self) -> Optional[str]:
        """Request an unattributed event most likely belongs to.

        The visible agent's current request first, then the latest request
        still in flight for any agent (agent switches clear the visible one).
        """

        current = self._state.current_request_id
        if current and self._tracker.is_pending(current):
            return current
        return self._tracker.latest_pending()

    def _new_request_id(self) -> str:
        return f"{int(self._clock() * 1000)}-{secrets.token_hex(3)}"

    # ---- commands ----

    def select_agent(self, agent_id: str, *, project_path: Optional[str] = None, container_id: Optional[str] = None) -> None:
        if agent_id not in self._roster:
            raise EngineError(f"unknown agent: {agent_id}")
        self._project_path = project_path
        self._container_id = container_id
        routed = self._router.select_agent(self._state, agent_id, context_key=context_key_for(project_path, container_id))
        pending = self._tracker.pending_for(agent_id)
        if pending and routed.state.current_request_id is None:
            # Back on an agent whose request is still streaming.
            routed = routed._replace(state=replace(routed.state, current_request_id=pending))
        self._commit(routed)

    def select_session(self, session_id: str) -> None:
        self._commit(self._router.select_session(self._state, session_id))

    def new_session(self) -> None:
        self._commit(self._router.new_session(self._state))

    def clear_history(self) -> None:
        """Ask the backend to delete the visible agent's current session."""

        self._commit(self._router.clear_history(self._state))

    def send_prompt(
        self,
        text: str,
        *,
        request_id: Optional[str] = None,
        requested_tools: Optional[list[str]] = None,
    ) -> Optional[str]:
        """Submit a prompt to the visible agent.

        Returns the request id, or None when there is nothing to send or the
        agent still has a request in flight.
        """

        agent_id = self._state.agent_id
        if agent_id is None:
            raise EngineError("no agent selected")
        try:
            agent = self._roster.get(agent_id)
        except AgentRosterError as e:
            raise EngineError(str(e)) from e

        prompt = str(text or "")
        if not prompt.strip():
            return None
        if self._tracker.has_pending_for(agent_id):
            _LOG.info("prompt_rejected agent_id=%s reason=busy", agent_id)
            return None

        rid = str(request_id) if request_id else self._new_request_id()
        # Mapping first: a chunk for this id may arrive as soon as we emit.
        if not self._tracker.begin(rid, agent_id):
            raise EngineError(f"request id already in use: {rid}")
        self._set_state(R.prompt_submitted(self._state, request_id=rid, prompt=prompt, agent_id=agent_id, now=self._clock()))

        tools = requested_tools if requested_tools is not None else selected_tools(self._defaults, agent_id)
        payload: JsonDict = {
            "requestId": rid,
            "prompt": prompt,
            "model": agent.model,
            # Selecting an agent sets the thinking budget to its context size.
            "thinkingTokens": int(agent.context_size or self._cfg.default_thinking_tokens),
            "projectPath": self._project_path,
            "containerId": self._container_id,
            "agentId": agent_id,
            "requestedTools": list(tools),
            "agentName": agent.name or None,
            "agentNickname": agent.nickname or None,
            "agentJobTitle": agent.job_title or None,
        }
        payload.update(user_prompt_fields(self._profile))
        _LOG.info("prompt_sent request_id=%s agent_id=%s model=%s chars=%d", rid, agent_id, agent.model, len(prompt))
        self._transport.emit(P.SEND_CHAT_PROMPT, payload)
        return rid

    def abort(self, request_id: Optional[str] = None) -> bool:
        """Best-effort cancel. Local tracking and the placeholder go away at once."""

        rid = request_id or self._state.current_request_id
        if not rid or not self._tracker.is_pending(rid):
            return False
        agent = self._tracker.resolve(rid)
        rec = self._tracker.record(rid)

        self._tracker.end(rid)
        self._tracker.tombstone(rid)
        if rec is not None and rec.response_id:
            self._accumulator.discard(rec.response_id)
        self._tracker.discard_record(rid)
        self._set_state(R.request_aborted(self._state, request_id=rid))
        self._awaiting_abort_ack.append((rid, agent))

        _LOG.info("request_aborted request_id=%s agent_id=%s", rid, agent)
        self._transport.emit(P.ABORT_CHAT_PROMPT, {"requestId": rid})
        return True

    # ---- streaming ----

    def _on_chunk(self, payload: Any) -> None:
        try:
            ev = P.validate_chunk(payload)
        except P.ProtocolError as e:
            _LOG.warning("event_dropped event=%s error=%s", P.CHAT_RESPONSE_CHUNK, e)
            return
        response_id, text = ev["id"], ev["chunk"]

        rid = self._tracker.request_for_response(response_id)
        if rid is None:
            rid = self._in_flight_request()
            if rid is None and self._tracker.claim_tombstone(response_id):
                _LOG.info("chunk_dropped response_id=%s reason=tombstoned", response_id)
                return
        if rid is not None and self._tracker.is_tombstoned(rid):
            _LOG.debug("chunk_dropped response_id=%s request_id=%s reason=tombstoned", response_id, rid)
            return

        if rid is not None:
            self._tracker.link_response(response_id, rid)
        marks = self._accumulator.record_chunk(response_id, text)
        rec = self._tracker.record(rid)
        if rec is not None:
            if rec.first_chunk_time is None:
                rec.first_chunk_time = marks.first_chunk_time
            rec.last_chunk_time = marks.last_chunk_time
            rec.bytes_received = marks.bytes_received

        agent = self._owner(rid)
        if self._router.is_foreign(self._state, agent):
            # Off-screen agent: the accumulator keeps the text until the final response.
            return
        self._set_state(
            R.chunk_received(
                self._state,
                response_id=response_id,
                text=text,
                request_id=rid,
                agent_id=agent or self._state.agent_id,
                now=self._clock(),
            )
        )

    def _on_first_chunk_time(self, payload: Any) -> None:
        try:
            ev = P.validate_first_chunk_time(payload)
        except P.ProtocolError as e:
            _LOG.warning("event_dropped event=%s error=%s", P.FIRST_CHUNK_TIME, e)
            return
        rid, response_id = ev["requestId"], ev["responseId"]
        if rid is not None:
            self._tracker.link_response(response_id, rid)
        ts = float(ev["timestamp"])
        # Millisecond epochs come from JS backends.
        ts = ts / 1000.0 if ts > 1e11 else ts
        self._accumulator.note_first_chunk(response_id, ts)
        rec = self._tracker.record(rid or self._tracker.request_for_response(response_id))
        if rec is not None:
            rec.first_chunk_time = ts

    def _on_response(self, payload: Any) -> None:
        try:
            ev = P.validate_chat_response(payload)
        except P.ProtocolError as e:
            _LOG.warning("event_dropped event=%s error=%s", P.CHAT_RESPONSE, e)
            return
        response_id = ev["id"]
        if response_id in self._finalized:
            _LOG.debug("response_duplicate response_id=%s", response_id)
            return

        rid = ev.get("requestId") or self._tracker.request_for_response(response_id)
        if rid is None:
            rid = self._in_flight_request()
        if rid is not None and self._tracker.is_tombstoned(rid):
            _LOG.info("response_dropped response_id=%s request_id=%s reason=tombstoned", response_id, rid)
            return
        if rid is not None:
            self._tracker.link_response(response_id, rid)

        agent = self._owner(rid)
        now = self._clock()
        buffered = self._accumulator.content(response_id)
        content = buffered if buffered else (ev.get("content") or "")
        lone_tool_call = is_tool_call_only(content).is_only

        if self._router.is_foreign(self._state, agent):
            if lone_tool_call:
                # Wait for the follow-up answer before filing anything.
                return
            prompt = R.find_prompt(self._state.messages, rid)
            response = ResponseMessage(
                id=response_id,
                content=parse_final_answer(content) or "",
                timestamp=now,
                agent_id=agent,
                request_id=rid,
            )
            self._router.file_foreign(agent, prompt, response)
        else:
            self._set_state(
                R.response_finalized(
                    self._state,
                    response_id=response_id,
                    request_id=rid,
                    content=content,
                    agent_id=agent or self._state.agent_id,
                    now=now,
                    tool_name=ev.get("toolName"),
                    tool_result=ev.get("toolResult"),
                )
            )
            if lone_tool_call:
                return
            sid = self._router.flush(self._state)
            if sid and sid != self._state.session_id:
                self._set_state(replace(self._state, session_id=sid))

        self._finalized.add(response_id)
        rec = self._tracker.record(rid)
        if rec is not None:
            rec.completed_at = now
            if rec.response_id and rec.response_id != response_id:
                # Text of the tool-call round that preceded this answer.
                self._accumulator.discard(rec.response_id)
        self._metrics.schedule(
            MetricsJob(request_id=rid, response_id=response_id, agent_id=agent, content=content, completed_at=now)
        )
        self._tracker.end(rid)
        _LOG.info("response_final response_id=%s request_id=%s agent_id=%s chars=%d", response_id, rid, agent, len(content))

    # ---- failures ----

    def _on_error(self, payload: Any) -> None:
        err = P.chat_error_text(payload)
        rid = self._in_flight_request()
        agent = self._owner(rid)
        _LOG.warning("chat_error request_id=%s agent_id=%s error=%s", rid, agent, err)
        if rid:
            rec = self._tracker.record(rid)
            self._tracker.end(rid)
            if rec is not None and rec.response_id:
                self._accumulator.discard(rec.response_id)
            self._tracker.discard_record(rid)
        now = self._clock()
        if self._router.is_foreign(self._state, agent):
            # The owner is off screen: its saved history gets the error instead.
            self._router.file_foreign(agent, None, R.error_message(error=err, now=now, agent_id=agent, request_id=rid))
            return
        self._set_state(R.error_received(self._state, error=err, now=now, request_id=rid))

    def _on_aborted(self, payload: Any) -> None:  # noqa: ARG002
        if self._awaiting_abort_ack:
            rid, agent = self._awaiting_abort_ack.popleft()
        else:
            # Backend-initiated abort: it concerns the request in flight.
            rid = self._in_flight_request()
            agent = self._owner(rid)
            if rid:
                rec = self._tracker.record(rid)
                self._tracker.end(rid)
                self._tracker.tombstone(rid)
                if rec is not None and rec.response_id:
                    self._accumulator.discard(rec.response_id)
                self._tracker.discard_record(rid)
        if agent is None or agent == self._state.agent_id:
            self._set_state(R.abort_acknowledged(self._state, request_id=rid, now=self._clock()))
        _LOG.info("abort_acknowledged request_id=%s agent_id=%s", rid, agent)

    # ---- side data ----

    def _on_token_usage(self, payload: Any) -> None:
        try:
            rid, usage = P.validate_token_usage(payload)
        except P.ProtocolError as e:
            _LOG.warning("event_dropped event=%s error=%s", P.TOKEN_USAGE, e)
            return
        if rid is None:
            rid = self._state.current_request_id or self._tracker.latest_request_id()
        if not self._tracker.set_token_usage(rid, usage):
            _LOG.debug("token_usage_unmatched request_id=%s", rid)
        agent = self._owner(rid)
        if agent is None or agent == self._state.agent_id:
            self._set_state(R.token_usage_received(self._state, request_id=rid, usage=usage))

    # ---- sessions ----

    def _on_agent_sessions(self, payload: Any) -> None:
        try:
            ev = P.validate_agent_sessions(payload)
        except P.ProtocolError as e:
            _LOG.warning("event_dropped event=%s error=%s", P.AGENT_SESSIONS, e)
            return
        self._commit(
            self._router.sessions_received(
                self._state,
                agent_id=ev["agentId"],
                sessions=ev["sessions"],
                current_session_id=ev["currentSessionId"],
            )
        )

    def _on_session_history(self, payload: Any) -> None:
        try:
            ev = P.validate_session_history(payload)
        except P.ProtocolError as e:
            _LOG.warning("event_dropped event=%s error=%s", P.SESSION_HISTORY, e)
            return
        msgs = messages_from_records(ev["messages"], id_prefix=ev["sessionId"] or "history")
        self._commit(
            self._router.history_received(self._state, agent_id=ev["agentId"], session_id=ev["sessionId"], messages=msgs)
        )

    def _on_session_created(self, payload: Any) -> None:
        try:
            ev = P.validate_session_ref(payload)
        except P.ProtocolError as e:
            _LOG.warning("event_dropped event=%s error=%s", P.NEW_SESSION_CREATED, e)
            return
        self._commit(self._router.session_created(self._state, agent_id=ev["agentId"], session_id=ev["sessionId"]))

    def _on_current_session_set(self, payload: Any) -> None:
        try:
            ev = P.validate_session_ref(payload)
        except P.ProtocolError as e:
            _LOG.warning("event_dropped event=%s error=%s", P.CURRENT_SESSION_SET, e)
            return
        self._commit(self._router.session_selected(self._state, agent_id=ev["agentId"], session_id=ev["sessionId"]))

    def _on_agent_history_cleared(self, payload: Any) -> None:
        try:
            agent_id = P.validate_agent_ref(payload)
        except P.ProtocolError as e:
            _LOG.warning("event_dropped event=%s error=%s", P.AGENT_HISTORY_CLEARED, e)
            return
        self._commit(self._router.agent_history_cleared(self._state, agent_id=agent_id))
