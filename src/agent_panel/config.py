"""agent_panel.config

Central configuration for the chat panel engine.

Keep it simple: read environment variables with sane defaults.

This module also supports loading a local `.env` file for developer
convenience. `.env` is git-ignored.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _load_dotenv_best_effort() -> None:
    """Best-effort `.env` loader.

    We avoid adding a hard dependency on `python-dotenv`.

    Supported format: `KEY=VALUE` per line, with optional quotes.
    Lines starting with `#` are ignored.

    Only sets keys that are not already present in `os.environ`.
    """

    try:
        from pathlib import Path

        env_path = Path.cwd() / ".env"
        if not env_path.exists() or not env_path.is_file():
            return

        for raw in env_path.read_text(encoding="utf-8").splitlines():
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            k, v = line.split("=", 1)
            key = k.strip()
            val = v.strip().strip('"').strip("'")
            if not key:
                continue
            os.environ.setdefault(key, val)
    except Exception:
        # Never fail app startup due to dotenv parsing.
        return


# Load `.env` once at import time.
_load_dotenv_best_effort()

DEFAULT_SERVER_URL: str = "http://localhost:3002"
DEFAULT_MODEL: str = "gpt-5-nano"
DEFAULT_THINKING_TOKENS: int = 8192

UNCERTAINTY_MARKERS: tuple[str, ...] = (
    "maybe",
    "perhaps",
    "might",
    "could",
    "possibly",
    "uncertain",
    "not sure",
)


@dataclass(frozen=True)
class ConfidenceWeights:
    """Heuristic constants for the response confidence score."""

    base: int = 50
    long_chars: int = 500
    long_bonus: int = 15
    medium_chars: int = 200
    medium_bonus: int = 10
    short_chars: int = 50
    short_penalty: int = 10
    healthy_usage_below: float = 80.0
    healthy_usage_bonus: int = 10
    full_usage_from: float = 90.0
    full_usage_penalty: int = 5
    uncertainty_penalty: int = 3
    uncertainty_markers: tuple[str, ...] = UNCERTAINTY_MARKERS


@dataclass(frozen=True)
class PanelConfig:
    server_url: str = DEFAULT_SERVER_URL
    # Wait this long after a final response so a late `tokenUsage` can land.
    metrics_grace_s: float = 0.5
    # Late chunks for aborted requests are dropped for this long.
    tombstone_ttl_s: float = 30.0
    default_thinking_tokens: int = DEFAULT_THINKING_TOKENS
    openai_api_key: str | None = None
    openai_model: str = DEFAULT_MODEL
    confidence: ConfidenceWeights = field(default_factory=ConfidenceWeights)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_config() -> PanelConfig:
    grace_ms = _env_float("AGENT_PANEL_METRICS_GRACE_MS", 500.0)
    return PanelConfig(
        server_url=os.environ.get("AGENT_PANEL_SERVER_URL", DEFAULT_SERVER_URL),
        metrics_grace_s=max(0.0, grace_ms / 1000.0),
        tombstone_ttl_s=max(0.0, _env_float("AGENT_PANEL_TOMBSTONE_TTL_S", 30.0)),
        default_thinking_tokens=max(1, _env_int("AGENT_PANEL_THINKING_TOKENS", DEFAULT_THINKING_TOKENS)),
        openai_api_key=os.environ.get("OPENAI_API_KEY"),
        openai_model=os.environ.get("OPENAI_MODEL", DEFAULT_MODEL),
    )
