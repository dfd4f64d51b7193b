"""agent_panel.history_store

Persistent per-agent, multi-session chat history.

Layout under `<root>/chat_history/agents/<agent_id>/`:
- `<session_id>.json`: one saved session (`messages` are camelCase records)
- `current.json`: `{"current_session_id": ...}` pointer to the agent's current session
"""

from __future__ import annotations

import json
import logging
import re
import secrets
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol, Sequence

from .messages import Message, PromptMessage, Session, SessionInfo, message_to_record, messages_from_records
from .reducer import persistable


JsonDict = dict[str, Any]

_LOG = logging.getLogger("agent_panel.history_store")

_SAFE_AGENT_RE = re.compile(r"^[a-zA-Z0-9_.-]{1,80}$")
_SAFE_SESSION_RE = re.compile(r"^[a-zA-Z0-9_-]{1,80}$")
_POINTER = "current.json"
_TITLE_MAX = 60


class HistoryStoreError(ValueError):
    """Raised for invalid agent/session ids."""


class HistoryStore(Protocol):
    """Minimal surface the engine and router need."""

    def list_sessions(self, agent_id: str) -> list[SessionInfo]: ...

    def current_session_id(self, agent_id: str) -> str | None: ...

    def set_current(self, agent_id: str, session_id: str) -> None: ...

    def create_session(self, agent_id: str) -> str: ...

    def load_session(self, agent_id: str, session_id: str) -> list[Message]: ...

    def save_session(self, agent_id: str, session_id: str | None, messages: Sequence[Message]) -> str | None: ...

    def append_to_current(self, agent_id: str, messages: Sequence[Message]) -> str: ...

    def clear_current(self, agent_id: str) -> str | None: ...


def _utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def new_session_id() -> str:
    # e.g. 20260206T012233Z_ab12cd34
    ts = datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"{ts}_{secrets.token_hex(4)}"


def _validate_agent_id(agent_id: str) -> str:
    if not isinstance(agent_id, str) or not _SAFE_AGENT_RE.match(agent_id) or agent_id in {".", ".."}:
        raise HistoryStoreError("Invalid agent_id")
    return agent_id


def _validate_session_id(session_id: str) -> str:
    if not isinstance(session_id, str) or not _SAFE_SESSION_RE.match(session_id) or session_id == "current":
        raise HistoryStoreError("Invalid session_id")
    return session_id


def _title_for(messages: Sequence[Message]) -> str:
    for m in messages:
        if isinstance(m, PromptMessage) and m.content.strip():
            line = m.content.strip().splitlines()[0]
            return line if len(line) <= _TITLE_MAX else line[: _TITLE_MAX - 3] + "..."
    return "New session"


def _write_json(path: Path, data: JsonDict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    tmp.replace(path)


def _read_json(path: Path) -> JsonDict | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


class JsonHistoryStore:
    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    @property
    def base_dir(self) -> Path:
        return (self._root / "chat_history" / "agents").resolve()

    def agent_dir(self, agent_id: str) -> Path:
        d = self.base_dir / _validate_agent_id(agent_id)
        d.mkdir(parents=True, exist_ok=True)
        return d

    def session_path(self, agent_id: str, session_id: str) -> Path:
        return self.agent_dir(agent_id) / f"{_validate_session_id(session_id)}.json"

    # ---- listing / pointer ----

    def list_sessions(self, agent_id: str) -> list[SessionInfo]:
        d = self.agent_dir(agent_id)
        out: list[SessionInfo] = []
        paths = [p for p in d.glob("*.json") if p.name != _POINTER]
        for p in sorted(paths, key=lambda x: x.stat().st_mtime, reverse=True):
            data = _read_json(p)
            if data is None:
                # Skip unreadable entries.
                continue
            msgs = data.get("messages")
            updated_at = str(data.get("updated_at") or "")
            if not updated_at:
                updated_at = datetime.fromtimestamp(p.stat().st_mtime, tz=timezone.utc).isoformat()
            out.append(
                SessionInfo(
                    id=str(data.get("session_id") or p.stem),
                    title=str(data.get("title") or "New session"),
                    message_count=len(msgs) if isinstance(msgs, list) else 0,
                    updated_at=updated_at,
                )
            )
        return out

    def current_session_id(self, agent_id: str) -> str | None:
        data = _read_json(self.agent_dir(agent_id) / _POINTER)
        sid = data.get("current_session_id") if data else None
        if not isinstance(sid, str) or not sid:
            return None
        if not (self.agent_dir(agent_id) / f"{sid}.json").exists():
            return None
        return sid

    def set_current(self, agent_id: str, session_id: str) -> None:
        _validate_session_id(session_id)
        _write_json(self.agent_dir(agent_id) / _POINTER, {"current_session_id": session_id})

    # ---- sessions ----

    def create_session(self, agent_id: str) -> str:
        sid = new_session_id()
        now = _utc_now_iso()
        _write_json(
            self.session_path(agent_id, sid),
            {"session_id": sid, "agent_id": agent_id, "title": "New session", "created_at": now, "updated_at": now, "messages": []},
        )
        self.set_current(agent_id, sid)
        _LOG.info("session_created agent_id=%s session_id=%s", agent_id, sid)
        return sid

    def get_session(self, agent_id: str, session_id: str) -> Session | None:
        p = self.session_path(agent_id, session_id)
        data = _read_json(p)
        if data is None:
            return None
        try:
            last_updated = datetime.fromisoformat(str(data.get("updated_at") or "")).timestamp()
        except ValueError:
            last_updated = p.stat().st_mtime
        return Session(
            id=session_id,
            agent_id=agent_id,
            messages=messages_from_records(data.get("messages"), id_prefix=session_id),
            last_updated=last_updated,
        )

    def load_session(self, agent_id: str, session_id: str) -> list[Message]:
        session = self.get_session(agent_id, session_id)
        return session.messages if session is not None else []

    def save_session(self, agent_id: str, session_id: str | None, messages: Sequence[Message]) -> str | None:
        """Write `messages` (placeholders dropped) as the full content of a session.

        With no session id, a new session is created and made current; an empty
        list then saves nothing and returns None.
        """

        msgs = persistable(messages)
        if session_id is None:
            if not msgs:
                return None
            session_id = self.create_session(agent_id)
        p = self.session_path(agent_id, session_id)
        prev = _read_json(p) or {}
        _write_json(
            p,
            {
                "session_id": session_id,
                "agent_id": agent_id,
                "title": _title_for(msgs) if msgs else str(prev.get("title") or "New session"),
                "created_at": str(prev.get("created_at") or _utc_now_iso()),
                "updated_at": _utc_now_iso(),
                "messages": [message_to_record(m) for m in msgs],
            },
        )
        _LOG.debug("session_saved agent_id=%s session_id=%s messages=%d", agent_id, session_id, len(msgs))
        return session_id

    def append_to_current(self, agent_id: str, messages: Sequence[Message]) -> str:
        """Append to the agent's current session (created if missing).

        Messages whose id is already saved there are skipped.
        """

        sid = self.current_session_id(agent_id)
        if sid is None:
            sid = self.create_session(agent_id)
        existing = self.load_session(agent_id, sid)
        known = {m.id for m in existing}
        fresh = [m for m in messages if m.id not in known]
        self.save_session(agent_id, sid, [*existing, *fresh])
        return sid

    def delete_session(self, agent_id: str, session_id: str) -> None:
        p = self.session_path(agent_id, session_id)
        if p.exists():
            p.unlink()

    def clear_current(self, agent_id: str) -> str | None:
        """Delete the agent's current session and drop the pointer.

        No session is created here; the next saved exchange starts a fresh one.
        Returns the deleted session id, if there was one.
        """

        sid = self.current_session_id(agent_id)
        if sid is not None:
            self.delete_session(agent_id, sid)
        (self.agent_dir(agent_id) / _POINTER).unlink(missing_ok=True)
        _LOG.info("history_cleared agent_id=%s session_id=%s", agent_id, sid)
        return sid
