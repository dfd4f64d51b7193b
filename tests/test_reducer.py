from __future__ import annotations

from agent_panel import reducer as R
from agent_panel.messages import PlaceholderMessage, ResponseMessage, ToolCallMessage, TokenUsage


TOOL = '```json\n{"tool_call": {"name": "ls", "arguments": {}}}\n```'


def _submitted() -> R.PanelState:
    return R.prompt_submitted(R.PanelState(agent_id="a1"), request_id="r1", prompt="Hi", agent_id="a1", now=1.0)


def test_prompt_submitted_adds_prompt_and_placeholder() -> None:
    st = _submitted()
    assert [m.id for m in st.messages] == ["prompt-r1", "placeholder-r1"]
    assert isinstance(st.messages[1], PlaceholderMessage)
    assert st.current_request_id == "r1"
    assert R.find_prompt(st.messages, "r1").content == "Hi"
    assert R.find_prompt(st.messages, "r2") is None
    assert [m.id for m in R.persistable(st.messages)] == ["prompt-r1"]


def test_tool_call_over_placeholder_keeps_request_open() -> None:
    st = R.response_finalized(_submitted(), response_id="resp1", request_id="r1", content=TOOL, agent_id="a1", now=2.0)
    assert isinstance(st.messages[-1], ToolCallMessage)
    assert st.messages[-1].timestamp == 1.0
    assert st.current_request_id == "r1"

    st = R.response_finalized(st, response_id="resp2", request_id="r1", content="done", agent_id="a1", now=3.0)
    assert [type(m).__name__ for m in st.messages] == ["PromptMessage", "ResponseMessage"]
    assert st.messages[-1].content == "done"
    assert st.current_request_id is None


def test_finalizing_twice_does_not_duplicate() -> None:
    st = R.response_finalized(_submitted(), response_id="resp1", request_id="r1", content="a", agent_id="a1", now=2.0)
    st = R.response_finalized(st, response_id="resp1", request_id="r1", content="a", agent_id="a1", now=2.0)
    assert [m.id for m in st.messages] == ["prompt-r1", "resp1"]


def test_request_aborted_then_acknowledged() -> None:
    st = R.chunk_received(_submitted(), response_id="resp1", text="par", request_id="r1", agent_id="a1", now=2.0)
    st = R.request_aborted(st, request_id="r1")
    assert st.current_request_id is None
    assert st.messages[-1].is_streaming is False
    assert st.messages[-1].content == "par"

    st = R.abort_acknowledged(st, request_id="r1", now=3.0)
    assert st.messages[-1].id == "aborted-r1"
    assert st.messages[-1].content == R.ABORTED_TEXT


def test_error_received() -> None:
    st = R.error_received(_submitted(), error="boom", now=2.5)
    assert [m.id for m in st.messages] == ["prompt-r1", "error-2500"]
    assert st.messages[-1].content == "**Error**\n\nboom"
    assert st.current_request_id is None


def test_token_usage_marks_request_messages() -> None:
    st = R.chunk_received(_submitted(), response_id="resp1", text="x", request_id="r1", agent_id="a1", now=2.0)
    usage = TokenUsage(prompt_tokens=5, max_context=50, usage_percent=10.0)
    st = R.token_usage_received(st, request_id="r1", usage=usage)
    assert st.context_usage == usage.context_usage()
    assert st.messages[0].context_usage is None
    assert isinstance(st.messages[1], ResponseMessage)
    assert st.messages[1].context_usage.usage_percent == 10.0


def test_history_cleared() -> None:
    st = R.history_cleared(_submitted())
    assert st.messages == ()
    assert st.context_usage is None
