"""agent_panel.local_backend

In-process backend serving the chat event contract from the OpenAI Responses
streaming API.

Each prompt runs in its own QThread worker; the worker only produces raw text
deltas and usage numbers and hands them to the backend QObject through queued
signals. The backend then dispatches the same events a remote server would
send (`chatResponseChunk`, `firstChunkTime`, `tokenUsage`, `chatResponse`, ...),
always on the UI thread.

Without an API key the backend runs against `FakeStreamClient` (FAKE MODE).
"""

from __future__ import annotations

import logging
import time
import traceback
from typing import Any, Iterator, Optional, Sequence

from PySide6 import QtCore

from . import protocol as P
from .agents import AgentRoster, AgentRosterError
from .config import PanelConfig
from .history_store import HistoryStoreError, JsonHistoryStore
from .messages import Message, PromptMessage, ResponseMessage, message_to_record
from .request_tracker import RESPONSE_ID_PREFIX
from .transport import Handler, HandlerRegistry


JsonDict = dict[str, Any]

_LOG = logging.getLogger("agent_panel.local_backend")

DEFAULT_INSTRUCTIONS = (
    "You are a helpful assistant inside a developer control panel. "
    "Think briefly first, then write a line containing only `--`, then the final answer."
)


# ---- Qt-free streaming ----


def _as_event_dict(evt: Any) -> JsonDict:
    if isinstance(evt, dict):
        return evt
    if hasattr(evt, "model_dump"):
        try:
            d = evt.model_dump()
            if isinstance(d, dict):
                return d
        except Exception:
            pass
    return {"_repr": repr(evt)}


def _extract_usage(resp: Any) -> dict[str, int]:
    usage = getattr(resp, "usage", None)
    if usage is None and isinstance(resp, dict):
        usage = resp.get("usage")
    if usage is None:
        return {"input_tokens": 0, "output_tokens": 0, "total_tokens": 0}

    def get_int(obj: Any, key: str) -> int:
        v = obj.get(key) if isinstance(obj, dict) else getattr(obj, key, None)
        try:
            return int(v)
        except (TypeError, ValueError):
            return 0

    input_tokens = get_int(usage, "input_tokens")
    output_tokens = get_int(usage, "output_tokens")
    total_tokens = get_int(usage, "total_tokens")
    if total_tokens <= 0:
        total_tokens = input_tokens + output_tokens
    return {"input_tokens": input_tokens, "output_tokens": output_tokens, "total_tokens": total_tokens}


def _input_text(role: str, text: str) -> JsonDict:
    part = "output_text" if role == "assistant" else "input_text"
    return {"role": role, "content": [{"type": part, "text": text}]}


def conversation_items(history: Sequence[Message], prompt: str) -> list[JsonDict]:
    """Responses API input for `prompt`, preceded by the saved prompts and answers."""

    items: list[JsonDict] = []
    for m in history:
        if isinstance(m, PromptMessage) and m.content.strip():
            items.append(_input_text("user", m.content))
        elif isinstance(m, ResponseMessage) and m.content.strip():
            items.append(_input_text("assistant", m.content))
    items.append(_input_text("user", prompt))
    return items


def stream_reply(
    client: Any,
    *,
    model: str,
    input_items: list[JsonDict],
    instructions: Optional[str] = None,
    **create_kwargs: Any,
) -> Iterator[JsonDict]:
    """Stream one model reply.

    Yields events:
    - {"type": "text_delta", "delta": "..."}
    - {"type": "done", "usage": {...}} once, at the end
    """

    stream = client.responses.create(
        model=model,
        input=input_items,
        instructions=instructions,
        stream=True,
        **create_kwargs,
    )
    completed: Any = None
    for evt in stream:
        ed = _as_event_dict(evt)
        etype = str(ed.get("type") or "")
        delta = ed.get("delta")
        if isinstance(delta, str) and delta and "output_text" in etype:
            yield {"type": "text_delta", "delta": delta}
        if isinstance(ed.get("response"), dict):
            completed = ed["response"]
        elif completed is None and getattr(evt, "response", None) is not None:
            completed = getattr(evt, "response")
    yield {"type": "done", "usage": _extract_usage(completed)}


class _FakeResponses:
    def __init__(self, parts: Sequence[str]) -> None:
        self._parts = list(parts)

    def create(self, *, model: str, input: Any, stream: bool = False, **kwargs: Any) -> Iterator[JsonDict]:  # noqa: ARG002
        prompt = ""
        for msg in reversed(input or []):
            if isinstance(msg, dict) and msg.get("role") == "user":
                prompt = str((msg.get("content") or [{}])[0].get("text", ""))
                break
        parts = self._parts or ["(FAKE MODE) thinking", "\n--\n", f"You said: {prompt}"]
        for p in parts:
            yield {"type": "response.output_text.delta", "delta": p}
        n_in = sum(len(str(m)) for m in (input or [])) // 4
        n_out = sum(len(p) for p in parts) // 4
        yield {
            "type": "response.completed",
            "response": {"usage": {"input_tokens": n_in, "output_tokens": n_out, "total_tokens": n_in + n_out}},
        }


class FakeStreamClient:
    """Offline stand-in for `openai.OpenAI` with a canned streamed reply."""

    def __init__(self, parts: Sequence[str] = ()) -> None:
        self.responses = _FakeResponses(parts)


def make_openai_client(api_key: Optional[str]) -> Any:
    if not api_key:
        return FakeStreamClient()
    from openai import OpenAI  # imported lazily

    return OpenAI(api_key=api_key)


# ---- Qt worker ----


class _WorkerSignals(QtCore.QObject):
    first_chunk = QtCore.Signal(str, float)
    delta = QtCore.Signal(str, str)
    finished = QtCore.Signal(str, object)
    error = QtCore.Signal(str, str)


class _StreamWorker(QtCore.QThread):
    def __init__(
        self,
        *,
        client: Any,
        request_id: str,
        model: str,
        input_items: list[JsonDict],
        instructions: str,
        parent: Optional[QtCore.QObject],
    ) -> None:
        super().__init__(parent)
        self.client = client
        self.request_id = request_id
        self.model = model
        self.input_items = input_items
        self.instructions = instructions
        self.signals = _WorkerSignals()

    def run(self) -> None:  # type: ignore[override]
        rid = self.request_id
        try:
            first = True
            for ev in stream_reply(self.client, model=self.model, input_items=self.input_items, instructions=self.instructions):
                if self.isInterruptionRequested():
                    return
                if ev.get("type") == "text_delta":
                    if first:
                        self.signals.first_chunk.emit(rid, time.time() * 1000.0)
                        first = False
                    self.signals.delta.emit(rid, str(ev.get("delta") or ""))
                elif ev.get("type") == "done":
                    self.signals.finished.emit(rid, ev.get("usage") or {})
        except Exception as e:
            if self.isInterruptionRequested():
                return
            _LOG.error(
                "worker_exception request_id=%s model=%s error=%s\ntraceback:\n%s",
                rid,
                self.model,
                f"{type(e).__name__}: {e}",
                traceback.format_exc(),
            )
            self.signals.error.emit(rid, f"{type(e).__name__}: {e}")


# ---- backend ----


class LocalBackend(QtCore.QObject):
    """A `Transport` whose far end is this process."""

    def __init__(
        self,
        *,
        store: JsonHistoryStore,
        roster: AgentRoster,
        config: PanelConfig,
        client: Any = None,
        parent: Optional[QtCore.QObject] = None,
    ) -> None:
        super().__init__(parent)
        self._store = store
        self._roster = roster
        self._cfg = config
        self._client = client if client is not None else make_openai_client(config.openai_api_key)
        self._registry = HandlerRegistry()
        self._workers: dict[str, _StreamWorker] = {}
        # request_id -> agent_id, for usage numbers
        self._agents: dict[str, str] = {}
        if isinstance(self._client, FakeStreamClient):
            _LOG.info("local_backend FAKE MODE (no OPENAI_API_KEY)")

    # ---- Transport ----

    def on(self, event: str, handler: Handler) -> None:
        self._registry.on(event, handler)

    def emit(self, event: str, payload: Any = None) -> None:
        try:
            if event == P.SEND_CHAT_PROMPT:
                self._start(P.validate_send_chat_prompt(payload))
            elif event == P.ABORT_CHAT_PROMPT:
                self._abort(payload)
            elif event == P.GET_AGENT_SESSIONS:
                self._send_sessions(P.validate_agent_ref(payload))
            elif event == P.SET_CURRENT_SESSION:
                ref = P.validate_session_ref(payload)
                self._store.set_current(ref["agentId"], ref["sessionId"])
                self._dispatch(P.CURRENT_SESSION_SET, dict(ref))
            elif event == P.CREATE_NEW_SESSION:
                agent_id = P.validate_agent_ref(payload)
                sid = self._store.create_session(agent_id)
                self._dispatch(P.NEW_SESSION_CREATED, {"agentId": agent_id, "sessionId": sid})
            elif event == P.LOAD_SESSION_HISTORY:
                ref = P.validate_session_ref(payload)
                msgs = self._store.load_session(ref["agentId"], ref["sessionId"])
                self._dispatch(
                    P.SESSION_HISTORY,
                    {"agentId": ref["agentId"], "sessionId": ref["sessionId"], "messages": [message_to_record(m) for m in msgs]},
                )
            elif event == P.CLEAR_AGENT_HISTORY:
                agent_id = P.validate_agent_ref(payload)
                self._store.clear_current(agent_id)
                self._dispatch(P.AGENT_HISTORY_CLEARED, {"agentId": agent_id})
            elif event == P.AGENT_STATUS_MESSAGE:
                text = payload.get("text") if isinstance(payload, dict) else None
                _LOG.info("agent_status agent_id=%s\n%s", (payload or {}).get("agentId"), text or "")
            else:
                _LOG.warning("unknown_client_event event=%s", event)
        except (P.ProtocolError, HistoryStoreError) as e:
            _LOG.warning("client_event_rejected event=%s error=%s", event, e)
            if event == P.SEND_CHAT_PROMPT:
                self._dispatch(P.CHAT_ERROR, str(e))

    def _dispatch(self, event: str, payload: Any = None) -> None:
        self._registry.dispatch(event, payload)

    # ---- sessions ----

    def _send_sessions(self, agent_id: str) -> None:
        sessions = self._store.list_sessions(agent_id)
        self._dispatch(
            P.AGENT_SESSIONS,
            {
                "agentId": agent_id,
                "sessions": [P.session_info_to_record(s) for s in sessions],
                "currentSessionId": self._store.current_session_id(agent_id),
            },
        )

    # ---- prompts ----

    def _start(self, payload: P.SendChatPromptPayload) -> None:
        rid = str(payload["requestId"])
        agent_id = str(payload["agentId"])
        try:
            agent = self._roster.get(agent_id)
        except AgentRosterError as e:
            self._dispatch(P.CHAT_ERROR, str(e))
            return
        sid = self._store.current_session_id(agent_id)
        history = self._store.load_session(agent_id, sid) if sid else []
        items = conversation_items(history, str(payload.get("prompt") or ""))
        worker = _StreamWorker(
            client=self._client,
            request_id=rid,
            model=str(payload.get("model") or agent.model or self._cfg.openai_model),
            input_items=items,
            instructions=agent.system_prompt or DEFAULT_INSTRUCTIONS,
            parent=self,
        )
        worker.signals.first_chunk.connect(self._on_first_chunk)
        worker.signals.delta.connect(self._on_delta)
        worker.signals.finished.connect(self._on_finished)
        worker.signals.error.connect(self._on_error)
        worker.finished.connect(self._reap_workers)
        self._workers[rid] = worker
        self._agents[rid] = agent_id
        _LOG.info("local_prompt request_id=%s agent_id=%s model=%s", rid, agent_id, worker.model)
        worker.start()

    def _abort(self, payload: Any) -> None:
        rid = payload.get("requestId") if isinstance(payload, dict) else None
        w = self._workers.get(str(rid)) if rid else None
        if w is not None:
            w.requestInterruption()
        self._agents.pop(str(rid), None)
        self._dispatch(P.CHAT_ABORTED)

    @QtCore.Slot(str, float)
    def _on_first_chunk(self, rid: str, ts_ms: float) -> None:
        self._dispatch(P.FIRST_CHUNK_TIME, {"requestId": rid, "responseId": RESPONSE_ID_PREFIX + rid, "timestamp": ts_ms})

    @QtCore.Slot(str, str)
    def _on_delta(self, rid: str, delta: str) -> None:
        if rid not in self._agents:
            return
        self._dispatch(P.CHAT_RESPONSE_CHUNK, {"id": RESPONSE_ID_PREFIX + rid, "chunk": delta})

    @QtCore.Slot(str, object)
    def _on_finished(self, rid: str, usage: Any) -> None:
        agent_id = self._agents.pop(rid, None)
        if agent_id is None:
            return
        u = usage if isinstance(usage, dict) else {}
        try:
            max_ctx = int(self._roster.get(agent_id).context_size)
        except AgentRosterError:
            max_ctx = int(self._cfg.default_thinking_tokens)
        prompt_tokens = int(u.get("input_tokens") or 0)
        self._dispatch(
            P.CHAT_RESPONSE,
            {"id": RESPONSE_ID_PREFIX + rid, "requestId": rid, "content": "", "timestamp": time.time() * 1000.0},
        )
        self._dispatch(
            P.TOKEN_USAGE,
            {
                "requestId": rid,
                "promptTokens": prompt_tokens,
                "completionTokens": int(u.get("output_tokens") or 0),
                "totalTokens": int(u.get("total_tokens") or 0),
                "maxContext": max_ctx,
                "usagePercent": (prompt_tokens / max_ctx * 100.0) if max_ctx > 0 else 0.0,
            },
        )

    @QtCore.Slot()
    def _reap_workers(self) -> None:
        for rid, w in list(self._workers.items()):
            if w.isFinished():
                self._workers.pop(rid, None)

    @QtCore.Slot(str, str)
    def _on_error(self, rid: str, err: str) -> None:
        if self._agents.pop(rid, None) is None:
            return
        self._dispatch(P.CHAT_ERROR, err)

    def shutdown(self, *, wait_ms: int = 2000) -> None:
        # Best-effort shutdown of background threads to avoid "QThread destroyed" warnings.
        for w in list(self._workers.values()):
            w.requestInterruption()
            w.wait(wait_ms)
        self._workers.clear()
