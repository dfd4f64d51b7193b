"""agent_panel.content_parser

Pure helpers for streamed assistant text.

The backend embeds machine directives in free-form text as fenced JSON:

    ```json
    {"tool_call": {"name": "list_containers", "arguments": {}}}
    ```

and separates reasoning from the answer with loose markers (`\\n--\\n`,
`Answer:`). Nothing here raises on malformed input: a block that does not
parse is plain text.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, NamedTuple, Optional


_CODE_BLOCK_RE = re.compile(r"```(?:json)?\s*\n(\{.*?\})\s*\n```", re.DOTALL)
_SOLE_BLOCK_RE = re.compile(r"```(?:json)?\s*\n(\{.*\})\s*\n```", re.DOTALL)

# Checked in order; the first match wins.
_ANSWER_SEPARATORS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\n--\n"),
    re.compile(r"\nAnswer:\s*\n", re.IGNORECASE),
    re.compile(r"Answer:\s*", re.IGNORECASE),
    re.compile(r"Final\s+Answer:\s*", re.IGNORECASE),
)


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: Any = field(default_factory=dict)


class ThinkingSplit(NamedTuple):
    thinking: str
    answer: str


class ToolCallCheck(NamedTuple):
    is_only: bool
    name: Optional[str] = None


def _parse_tool_call(body: str) -> ToolCall | None:
    try:
        parsed = json.loads(body)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    tc = parsed.get("tool_call")
    if not isinstance(tc, dict):
        return None
    name = tc.get("name")
    if not isinstance(name, str) or not name:
        return None
    args = tc.get("arguments")
    return ToolCall(name=name, arguments=args if args is not None else {})


def _remove_tool_call_blocks(text: str) -> str:
    def repl(m: re.Match[str]) -> str:
        return "" if '"tool_call"' in m.group(1) else m.group(0)

    return _CODE_BLOCK_RE.sub(repl, text)


def extract_tool_calls(text: str) -> list[ToolCall]:
    """Return every well-formed tool call found in fenced JSON blocks."""

    out: list[ToolCall] = []
    for m in _CODE_BLOCK_RE.finditer(text or ""):
        tc = _parse_tool_call(m.group(1))
        if tc is not None:
            out.append(tc)
    return out


def count_tool_calls(calls: list[ToolCall]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for c in calls:
        counts[c.name] = counts.get(c.name, 0) + 1
    return counts


def is_tool_call_only(text: str) -> ToolCallCheck:
    """True only if the whole (trimmed) text is a single tool-call block."""

    t = (text or "").strip()
    if not t:
        return ToolCallCheck(False)
    m = _SOLE_BLOCK_RE.fullmatch(t)
    if m is None:
        return ToolCallCheck(False)
    tc = _parse_tool_call(m.group(1))
    if tc is None:
        return ToolCallCheck(False)
    return ToolCallCheck(True, tc.name)


def strip_tool_call_markers(text: str) -> str:
    """Replace each tool-call block with a short `Tool call: <name>` line."""

    def repl(m: re.Match[str]) -> str:
        tc = _parse_tool_call(m.group(1))
        if tc is None:
            return m.group(0)
        return f"Tool call: {tc.name}"

    return _CODE_BLOCK_RE.sub(repl, text or "")


def separate_thinking_and_answer(text: str) -> ThinkingSplit:
    if not text or not text.strip():
        return ThinkingSplit("", "")
    cleaned = _remove_tool_call_blocks(text).strip()
    if not cleaned:
        return ThinkingSplit("", "")
    for pattern in _ANSWER_SEPARATORS:
        m = pattern.search(cleaned)
        if m is not None:
            return ThinkingSplit(cleaned[: m.start()].strip(), cleaned[m.end() :].strip())
    return ThinkingSplit("", cleaned)


def parse_final_answer(text: str) -> str:
    """Return the answer portion of a response, tool-call blocks removed.

    A separator with nothing after it does not count; the next pattern is tried.
    Without any separator the whole cleaned text is the answer.
    """

    if not text or not text.strip():
        return text
    cleaned = _remove_tool_call_blocks(text).strip()
    if not cleaned:
        return cleaned
    for pattern in _ANSWER_SEPARATORS:
        m = pattern.search(cleaned)
        if m is None:
            continue
        answer = cleaned[m.end() :].strip()
        if answer:
            return answer
    return cleaned
