from __future__ import annotations


def test_load_config_defaults(monkeypatch) -> None:
    from agent_panel.config import DEFAULT_SERVER_URL, load_config

    for key in (
        "AGENT_PANEL_SERVER_URL",
        "AGENT_PANEL_METRICS_GRACE_MS",
        "AGENT_PANEL_TOMBSTONE_TTL_S",
        "AGENT_PANEL_THINKING_TOKENS",
    ):
        monkeypatch.delenv(key, raising=False)

    cfg = load_config()
    assert cfg.server_url == DEFAULT_SERVER_URL
    assert cfg.metrics_grace_s == 0.5
    assert cfg.tombstone_ttl_s == 30.0
    assert cfg.confidence.base == 50


def test_load_config_env_overrides(monkeypatch) -> None:
    from agent_panel.config import load_config

    monkeypatch.setenv("AGENT_PANEL_SERVER_URL", "http://backend:9000")
    monkeypatch.setenv("AGENT_PANEL_METRICS_GRACE_MS", "250")
    monkeypatch.setenv("AGENT_PANEL_TOMBSTONE_TTL_S", "-5")
    monkeypatch.setenv("AGENT_PANEL_THINKING_TOKENS", "not a number")

    cfg = load_config()
    assert cfg.server_url == "http://backend:9000"
    assert cfg.metrics_grace_s == 0.25
    assert cfg.tombstone_ttl_s == 0.0
    assert cfg.default_thinking_tokens == 8192
