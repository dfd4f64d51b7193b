from __future__ import annotations

import json
from pathlib import Path

import pytest


def test_roster_unique_names_and_lookup() -> None:
    from agent_panel.agents import Agent, AgentRoster, AgentRosterError

    friend = Agent(agent_id="a2", name="Friend", model="m1", context_size=2048, job_title="Reviewer")
    roster = AgentRoster([Agent(agent_id="a1", name="Main"), friend])
    assert roster.find("friend") is friend
    assert roster.find("  FRIEND ") is friend
    assert roster.find("a2") is friend
    assert roster.find("nobody") is None
    assert "a1" in roster
    assert [a.name for a in roster.list_agents()] == ["Friend", "Main"]

    with pytest.raises(AgentRosterError):
        roster.add(Agent(agent_id="a3", name="main"))
    with pytest.raises(AgentRosterError):
        roster.add(Agent(agent_id="a1", name="Another"))
    with pytest.raises(AgentRosterError):
        roster.get("missing")


def test_agents_file_roundtrip(tmp_path: Path) -> None:
    from agent_panel.agents import Agent, AgentRoster, load_agents, save_agents

    roster = AgentRoster([Agent(agent_id="a1", name="Main", model="m", context_size=1000, nickname="Boss", system_prompt="SP")])
    path = tmp_path / "agents.json"
    save_agents(path, roster)

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["agents"][0]["id"] == "a1"
    assert raw["agents"][0]["contextSize"] == 1000

    loaded = load_agents(path)
    a = loaded.get("a1")
    assert (a.name, a.model, a.context_size, a.nickname, a.system_prompt) == ("Main", "m", 1000, "Boss", "SP")


def test_load_agents_rejects_bad_files(tmp_path: Path) -> None:
    from agent_panel.agents import AgentRosterError, load_agents

    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    with pytest.raises(AgentRosterError):
        load_agents(bad)
    bad.write_text(json.dumps({"agents": "nope"}), encoding="utf-8")
    with pytest.raises(AgentRosterError):
        load_agents(bad)
