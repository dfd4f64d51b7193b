from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import pytest


class FakeTransport:
    """Records outgoing events; `deliver` plays the backend side synchronously."""

    def __init__(self) -> None:
        self.emitted: list[tuple[str, Any]] = []
        self._handlers: dict[str, list[Callable[[Any], None]]] = {}

    def emit(self, event: str, payload: Any = None) -> None:
        self.emitted.append((event, payload))

    def on(self, event: str, handler: Callable[[Any], None]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def deliver(self, event: str, payload: Any = None) -> None:
        for h in self._handlers.get(event, []):
            h(payload)

    def sent(self, event: str) -> list[Any]:
        return [p for e, p in self.emitted if e == event]


@dataclass
class Panel:
    engine: Any
    transport: FakeTransport
    store: Any
    scheduler: Any
    roster: Any

    def open_agent(self, agent_id: str, *, sessions: list[dict] | None = None, current: str | None = None) -> None:
        self.engine.select_agent(agent_id)
        self.transport.deliver(
            "agentSessions",
            {"agentId": agent_id, "sessions": sessions or [], "currentSessionId": current},
        )

    def chunk(self, response_id: str, text: str) -> None:
        self.transport.deliver("chatResponseChunk", {"id": response_id, "chunk": text})

    def final(self, response_id: str, content: str = "", **extra: Any) -> None:
        self.transport.deliver("chatResponse", {"id": response_id, "content": content, **extra})

    def reports(self) -> list[Any]:
        return self.transport.sent("agentStatusMessage")


@pytest.fixture
def panel(tmp_path: Path) -> Panel:
    from agent_panel.agents import Agent, AgentRoster
    from agent_panel.config import PanelConfig
    from agent_panel.engine import ChatEngine
    from agent_panel.history_store import JsonHistoryStore
    from agent_panel.scheduler import ManualScheduler

    scheduler = ManualScheduler()
    roster = AgentRoster(
        [
            Agent(agent_id="a1", name="Alpha", model="m-alpha", context_size=4096, nickname="Al"),
            Agent(agent_id="a2", name="Beta", model="m-beta", context_size=8192),
        ]
    )
    transport = FakeTransport()
    store = JsonHistoryStore(tmp_path)
    engine = ChatEngine(
        transport=transport,
        history=store,
        roster=roster,
        scheduler=scheduler,
        config=PanelConfig(metrics_grace_s=0.5, tombstone_ttl_s=30.0),
        clock=lambda: 1_000.0 + scheduler.now,
    )
    return Panel(engine=engine, transport=transport, store=store, scheduler=scheduler, roster=roster)
