from __future__ import annotations

from agent_panel.content_parser import (
    ToolCall,
    count_tool_calls,
    extract_tool_calls,
    is_tool_call_only,
    parse_final_answer,
    separate_thinking_and_answer,
    strip_tool_call_markers,
)


def _block(name: str, args: str = "{}") -> str:
    return '```json\n{"tool_call": {"name": "%s", "arguments": %s}}\n```' % (name, args)


def test_extract_tool_calls_finds_every_block() -> None:
    text = "first\n" + _block("list_containers") + "\nthen\n" + _block("read_file", '{"path": "a.txt"}')
    calls = extract_tool_calls(text)
    assert calls == [ToolCall("list_containers", {}), ToolCall("read_file", {"path": "a.txt"})]
    assert count_tool_calls(calls + [ToolCall("read_file")]) == {"list_containers": 1, "read_file": 2}


def test_malformed_tool_json_is_plain_text() -> None:
    bad = '```json\n{"tool_call": {"name": "x", }\n```'
    assert extract_tool_calls(bad) == []
    assert is_tool_call_only(bad).is_only is False
    assert strip_tool_call_markers(bad) == bad


def test_tool_call_without_name_is_ignored() -> None:
    text = '```json\n{"tool_call": {"arguments": {}}}\n```'
    assert extract_tool_calls(text) == []
    assert is_tool_call_only(text).is_only is False


def test_is_tool_call_only() -> None:
    check = is_tool_call_only("  \n" + _block("list_containers") + "\n ")
    assert check.is_only is True
    assert check.name == "list_containers"
    assert is_tool_call_only("before\n" + _block("x")).is_only is False
    assert is_tool_call_only("").is_only is False
    assert is_tool_call_only('```json\n{"answer": 1}\n```').is_only is False


def test_strip_tool_call_markers() -> None:
    assert strip_tool_call_markers("Now:\n" + _block("list_containers")) == "Now:\nTool call: list_containers"


def test_separate_thinking_and_answer() -> None:
    split = separate_thinking_and_answer("Hello\n--\nWorld")
    assert split.thinking == "Hello"
    assert split.answer == "World"
    assert separate_thinking_and_answer("just text") == ("", "just text")
    assert separate_thinking_and_answer("   ") == ("", "")


def test_parse_final_answer_separators() -> None:
    assert parse_final_answer("think\n--\nanswer") == "answer"
    assert parse_final_answer("think\nAnswer:\n42") == "42"
    assert parse_final_answer("Reasoning... Final Answer: yes") == "yes"
    assert parse_final_answer("no separator here") == "no separator here"


def test_parse_final_answer_skips_empty_tail() -> None:
    assert parse_final_answer("thinking\nAnswer:\n") == "thinking\nAnswer:"


def test_parse_final_answer_removes_tool_blocks() -> None:
    text = _block("list_containers") + "\n--\nTwo running."
    assert parse_final_answer(text) == "--\nTwo running."
    assert parse_final_answer("pre\n" + _block("x") + "\n--\nDone") == "Done"


def test_parse_final_answer_blank() -> None:
    assert parse_final_answer("") == ""
    assert parse_final_answer(_block("x")) == ""
