from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import DEFAULT_MODEL, DEFAULT_THINKING_TOKENS


JsonDict = dict[str, Any]


class AgentRosterError(RuntimeError):
    pass


@dataclass
class Agent:
    agent_id: str
    name: str
    model: str = DEFAULT_MODEL
    context_size: int = DEFAULT_THINKING_TOKENS
    nickname: str | None = None
    job_title: str | None = None
    system_prompt: str = ""


def _norm_name(name: str) -> str:
    return " ".join(str(name or "").strip().split()).casefold()


def agent_to_record(a: Agent) -> JsonDict:
    return {
        "id": a.agent_id,
        "name": a.name,
        "model": a.model,
        "contextSize": a.context_size,
        "nickname": a.nickname,
        "jobTitle": a.job_title,
        "systemPrompt": a.system_prompt,
    }


def agent_from_record(rec: Any) -> Agent:
    if not isinstance(rec, dict):
        raise AgentRosterError("agent entry must be a JSON object")
    aid = str(rec.get("id") or rec.get("agent_id") or "").strip()
    name = str(rec.get("name") or "").strip()
    if not aid or not name:
        raise AgentRosterError("agent entry needs 'id' and 'name'")
    ctx = rec.get("contextSize", rec.get("context_size"))
    try:
        context_size = int(ctx) if ctx not in (None, "") else DEFAULT_THINKING_TOKENS
    except (TypeError, ValueError):
        context_size = DEFAULT_THINKING_TOKENS
    nick = rec.get("nickname")
    job = rec.get("jobTitle", rec.get("job_title"))
    return Agent(
        agent_id=aid,
        name=name,
        model=str(rec.get("model") or DEFAULT_MODEL),
        context_size=max(1, context_size),
        nickname=str(nick) if nick else None,
        job_title=str(job) if job else None,
        system_prompt=str(rec.get("systemPrompt") or rec.get("system_prompt") or ""),
    )


class AgentRoster:
    """The set of agents a chat panel can talk to.

    Names are unique (case- and whitespace-insensitive). The engine only reads
    from the roster; edits come from the settings side of the app.
    """

    def __init__(self, agents: list[Agent] | None = None) -> None:
        self._lock = threading.Lock()
        self._agents: dict[str, Agent] = {}
        for a in agents or []:
            self.add(a)

    def list_agents(self) -> list[Agent]:
        with self._lock:
            return sorted(self._agents.values(), key=lambda a: _norm_name(a.name))

    def get(self, agent_id: str) -> Agent:
        with self._lock:
            a = self._agents.get(str(agent_id))
            if a is None:
                raise AgentRosterError(f"unknown agent_id: {agent_id}")
            return a

    def find(self, key: str) -> Agent | None:
        """Look an agent up by id, then by name."""

        k = str(key or "")
        with self._lock:
            if k in self._agents:
                return self._agents[k]
            nk = _norm_name(k)
            for a in self._agents.values():
                if _norm_name(a.name) == nk:
                    return a
        return None

    def __contains__(self, agent_id: object) -> bool:
        with self._lock:
            return str(agent_id) in self._agents

    def _assert_unique_name(self, *, name: str) -> None:
        nn = _norm_name(name)
        if not nn:
            raise AgentRosterError("agent name must be non-empty")
        with self._lock:
            for a in self._agents.values():
                if _norm_name(a.name) == nn:
                    raise AgentRosterError(f"agent name already exists: {a.name}")

    def add(self, agent: Agent) -> Agent:
        if agent.agent_id in self:
            raise AgentRosterError(f"agent_id already exists: {agent.agent_id}")
        self._assert_unique_name(name=agent.name)
        with self._lock:
            self._agents[agent.agent_id] = agent
        return agent

    def export_config(self) -> JsonDict:
        return {"agents": [agent_to_record(a) for a in self.list_agents()]}

    def load_config(self, data: JsonDict) -> None:
        entries = data.get("agents") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise AgentRosterError("agents config needs an 'agents' list")
        parsed = [agent_from_record(rec) for rec in entries]
        with self._lock:
            self._agents = {}
        for a in parsed:
            self.add(a)


def save_agents(path: Path, roster: AgentRoster) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(roster.export_config(), indent=2, ensure_ascii=False) + "\n", encoding="utf-8")


def load_agents(path: Path) -> AgentRoster:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except ValueError as e:
        raise AgentRosterError(f"agents file is not valid JSON: {path}") from e
    if not isinstance(data, dict):
        raise AgentRosterError("agents config must be a JSON object")
    roster = AgentRoster()
    roster.load_config(data)
    return roster
