"""agent_panel.prefs

Persistence for chat panel defaults across app restarts.

We keep this separate from per-agent saved sessions:
- Sessions live in `chat_history/agents/<agent_id>/<session_id>.json`
- Panel defaults live in `chat_history/panel_defaults.json`

Defaults hold the tools selected per agent and the user profile whose
attributes travel with each prompt.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any


JsonDict = dict[str, Any]


@dataclass
class UserProfile:
    name: str | None = None
    email: str | None = None
    allow_use_name: bool = False
    allow_use_email: bool = False
    nickname: str | None = None
    language: str | None = None
    age: str | None = None
    gender: str | None = None
    orientation: str | None = None
    job_title: str | None = None
    employer: str | None = None
    education_level: str | None = None
    political_ideology: str | None = None
    religion: str | None = None
    interests: str | None = None
    country: str | None = None
    state: str | None = None
    zipcode: str | None = None


# profile attribute -> `sendChatPrompt` field
_PROMPT_FIELDS = {
    "nickname": "userNickname",
    "language": "userLanguage",
    "age": "userAge",
    "gender": "userGender",
    "orientation": "userOrientation",
    "job_title": "userJobTitle",
    "employer": "userEmployer",
    "education_level": "userEducationLevel",
    "political_ideology": "userPoliticalIdeology",
    "religion": "userReligion",
    "interests": "userInterests",
    "country": "userCountry",
    "state": "userState",
    "zipcode": "userZipcode",
}


def user_prompt_fields(profile: UserProfile | None) -> JsonDict:
    """User attribute fields for a `sendChatPrompt` payload (unset -> None)."""

    p = profile or UserProfile()
    out: JsonDict = {
        "userName": p.name if p.allow_use_name and p.name else None,
        "userEmail": p.email if p.allow_use_email and p.email else None,
    }
    for attr, key in _PROMPT_FIELDS.items():
        out[key] = getattr(p, attr) or None
    return out


def defaults_path(repo_root: Path) -> Path:
    return (repo_root / "chat_history" / "panel_defaults.json").resolve()


def load_defaults(repo_root: Path) -> JsonDict:
    p = defaults_path(repo_root)
    try:
        if not p.exists():
            return {}
        d = json.loads(p.read_text(encoding="utf-8"))
        return d if isinstance(d, dict) else {}
    except (OSError, ValueError):
        return {}


def save_defaults(repo_root: Path, data: JsonDict) -> None:
    p = defaults_path(repo_root)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    tmp.replace(p)


def apply_overrides(target: Any, overrides: JsonDict) -> None:
    """Best-effort: assign `overrides` keys onto `target` attrs if they exist."""

    if not isinstance(overrides, dict):
        return
    for k, v in overrides.items():
        if not isinstance(k, str):
            continue
        if not hasattr(target, k):
            continue
        setattr(target, k, v)


def selected_tools(defaults: JsonDict, agent_id: str) -> list[str]:
    tools = defaults.get("selected_tools")
    if not isinstance(tools, dict):
        return []
    picked = tools.get(agent_id)
    if not isinstance(picked, list):
        return []
    return [t for t in picked if isinstance(t, str) and t]


def set_selected_tools(defaults: JsonDict, agent_id: str, tools: list[str]) -> JsonDict:
    out = dict(defaults)
    per_agent = dict(out.get("selected_tools") or {})
    per_agent[str(agent_id)] = [str(t) for t in tools if str(t)]
    out["selected_tools"] = per_agent
    return out


def load_user_profile(repo_root: Path) -> UserProfile:
    profile = UserProfile()
    apply_overrides(profile, load_defaults(repo_root).get("user_profile") or {})
    return profile
