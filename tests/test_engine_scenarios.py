from __future__ import annotations

import pytest

from agent_panel.content_parser import parse_final_answer
from agent_panel.engine import EngineError
from agent_panel.messages import PlaceholderMessage, PromptMessage, ResponseMessage, ToolCallMessage


TOOL_CALL = '```json\n{"tool_call": {"name": "list_containers", "arguments": {}}}\n```'


def _ids(state) -> list[str]:
    return [m.id for m in state.messages]


def _collect_reports(panel) -> list:
    out: list = []
    panel.engine.on_report(lambda report, text: out.append(report))
    return out


def test_hello_world_scenario(panel) -> None:
    reports = _collect_reports(panel)
    panel.open_agent("a1")
    assert panel.engine.send_prompt("Hi", request_id="r1") == "r1"

    panel.chunk("resp1", "Hel")
    panel.chunk("resp1", "lo\n--\n")
    panel.chunk("resp1", "World")
    panel.final("resp1", "")

    st = panel.engine.state
    assert _ids(st) == ["prompt-r1", "resp1"]
    final = st.messages[-1]
    assert isinstance(final, ResponseMessage)
    assert final.content == "World"
    assert final.is_streaming is False
    assert final.agent_id == "a1"
    assert st.current_request_id is None
    assert panel.engine.tracker.pending_ids() == set()

    assert panel.scheduler.advance(0.5) == 1
    assert len(reports) == 1
    assert reports[0].thinking_bytes == len("Hello")
    assert reports[0].answer_bytes == len("World")
    assert panel.reports()[0]["agentId"] == "a1"
    assert "Agent Response Status:" in panel.reports()[0]["text"]
    # Bookkeeping is gone once the report is out.
    assert panel.engine.tracker.record("r1") is None
    assert panel.engine.accumulator.tracked_ids() == set()


def test_final_response_is_persisted(panel) -> None:
    panel.open_agent("a1")
    panel.engine.send_prompt("Hi", request_id="r1")
    panel.chunk("resp1", "Hello")
    panel.final("resp1")

    sid = panel.engine.state.session_id
    assert sid is not None
    saved = panel.store.load_session("a1", sid)
    assert [type(m) for m in saved] == [PromptMessage, ResponseMessage]
    assert saved[1].content == "Hello"


def test_duplicate_chat_response_is_ignored(panel) -> None:
    reports = _collect_reports(panel)
    panel.open_agent("a1")
    panel.engine.send_prompt("Hi", request_id="r1")
    panel.chunk("resp1", "Answer")
    panel.final("resp1")
    before = panel.engine.state.messages
    panel.final("resp1")
    panel.final("resp1", "something else")

    assert panel.engine.state.messages == before
    panel.scheduler.run_all()
    assert len(reports) == 1
    assert len(panel.reports()) == 1


@pytest.mark.parametrize(
    "chunks",
    [
        ["plain answer"],
        ["think", "ing\n--\n", "the ", "answer"],
        ["reasoning\nAnswer:\n", "forty two"],
        [TOOL_CALL, "\n--\n", "after the tool"],
    ],
)
def test_final_content_is_parsed_from_all_chunks(panel, chunks) -> None:
    panel.open_agent("a1")
    panel.engine.send_prompt("q", request_id="r1")
    for c in chunks:
        panel.chunk("resp1", c)
    panel.final("resp1", "")

    final = panel.engine.state.messages[-1]
    assert isinstance(final, ResponseMessage)
    assert final.content == parse_final_answer("".join(chunks))


def test_abort_before_any_chunk(panel) -> None:
    panel.open_agent("a1")
    panel.engine.send_prompt("Hi", request_id="r1")

    assert panel.engine.abort() is True
    assert panel.engine.tracker.pending_ids() == set()
    assert not any(isinstance(m, PlaceholderMessage) for m in panel.engine.state.messages)
    assert panel.transport.sent("abortChatPrompt") == [{"requestId": "r1"}]

    # The backend keeps streaming for a moment before it notices.
    panel.chunk("resp1", "late")
    panel.final("resp1", "late")
    assert "resp1" not in _ids(panel.engine.state)

    panel.transport.deliver("chatAborted")
    st = panel.engine.state
    assert _ids(st) == ["prompt-r1", "aborted-r1"]
    assert st.messages[-1].content == "(Request aborted)"
    assert panel.scheduler.pending == 0


def test_abort_mid_stream_drops_later_chunks(panel) -> None:
    panel.open_agent("a1")
    panel.engine.send_prompt("Hi", request_id="r1")
    panel.chunk("response-r1", "par")
    panel.engine.abort("r1")
    panel.chunk("response-r1", "tial")

    streamed = [m for m in panel.engine.state.messages if m.id == "response-r1"]
    assert len(streamed) == 1
    assert streamed[0].content == "par"
    assert "response-r1" not in panel.engine.accumulator.tracked_ids()


def test_abort_without_pending_request(panel) -> None:
    panel.open_agent("a1")
    assert panel.engine.abort() is False
    assert panel.transport.sent("abortChatPrompt") == []


def test_unsolicited_chat_aborted_ends_current_request(panel) -> None:
    panel.open_agent("a1")
    panel.engine.send_prompt("Hi", request_id="r1")
    panel.transport.deliver("chatAborted", None)

    assert panel.engine.tracker.pending_ids() == set()
    assert _ids(panel.engine.state) == ["prompt-r1", "aborted-r1"]
    assert panel.engine.state.current_request_id is None


def test_cross_agent_isolation(panel) -> None:
    reports = _collect_reports(panel)
    panel.open_agent("a1")
    panel.engine.send_prompt("question for alpha", request_id="r1")

    panel.open_agent("a2")
    visible_before = panel.engine.state.messages
    a1_sid = panel.store.current_session_id("a1")
    assert a1_sid is not None
    saved_before = panel.store.load_session("a1", a1_sid)

    panel.chunk("response-r1", "alpha ")
    panel.chunk("response-r1", "says hi")
    panel.final("response-r1", "", requestId="r1")

    assert panel.engine.state.messages == visible_before
    saved_after = panel.store.load_session("a1", a1_sid)
    assert len(saved_after) == len(saved_before) + 1
    assert isinstance(saved_after[-1], ResponseMessage)
    assert saved_after[-1].content == "alpha says hi"
    assert panel.engine.tracker.pending_ids() == set()

    panel.scheduler.advance(0.5)
    assert [r.agent_id for r in reports] == ["a1"]


def test_two_agents_in_flight(panel) -> None:
    panel.open_agent("a1")
    panel.engine.send_prompt("one", request_id="r1")
    panel.open_agent("a2")
    assert panel.engine.send_prompt("two", request_id="r2") == "r2"

    panel.chunk("response-r2", "B-")
    panel.chunk("response-r1", "A answer")
    panel.chunk("response-r2", "answer")
    panel.final("response-r1", requestId="r1")
    panel.final("response-r2", requestId="r2")

    st = panel.engine.state
    assert st.agent_id == "a2"
    assert [m.content for m in st.messages] == ["two", "B-answer"]
    a1_saved = panel.store.load_session("a1", panel.store.current_session_id("a1"))
    assert [m.content for m in a1_saved] == ["one", "A answer"]

    panel.scheduler.advance(0.5)
    assert sorted(p["agentId"] for p in panel.reports()) == ["a1", "a2"]


def test_tool_call_only_response_is_replaced_by_followup(panel) -> None:
    panel.open_agent("a1")
    panel.engine.send_prompt("list containers", request_id="r1")
    panel.chunk("resp1", TOOL_CALL)
    panel.final("resp1")

    st = panel.engine.state
    tool_msg = st.messages[-1]
    assert isinstance(tool_msg, ToolCallMessage)
    assert tool_msg.tool_name == "list_containers"
    assert tool_msg.content == "Tool call: list_containers"
    # Still waiting for the real answer.
    assert st.current_request_id == "r1"
    assert panel.engine.tracker.is_pending("r1")
    assert panel.scheduler.pending == 0

    panel.chunk("resp2", "Two ")
    st = panel.engine.state
    assert not any(isinstance(m, ToolCallMessage) for m in st.messages)
    assert isinstance(st.messages[-1], ResponseMessage)
    assert st.messages[-1].is_streaming is True

    panel.chunk("resp2", "containers running.")
    panel.final("resp2")
    st = panel.engine.state
    assert _ids(st) == ["prompt-r1", "resp2"]
    assert st.messages[-1].content == "Two containers running."
    assert st.current_request_id is None
    assert panel.scheduler.pending == 1


def test_tool_result_is_appended_once(panel) -> None:
    panel.open_agent("a1")
    panel.engine.send_prompt("list", request_id="r1")
    result = {"containers": ["web", "db"]}
    panel.final("resp1", "Found two.", toolName="list_containers", toolResult=result)

    st = panel.engine.state
    assert _ids(st) == ["prompt-r1", "resp1", "resp1-tool-result"]
    assert st.messages[-1].tool_result == result


def test_zero_content_response(panel) -> None:
    panel.open_agent("a1")
    panel.engine.send_prompt("Hi", request_id="r1")
    panel.final("resp1", "")

    st = panel.engine.state
    assert not any(isinstance(m, PlaceholderMessage) for m in st.messages)
    final = st.messages[-1]
    assert isinstance(final, ResponseMessage)
    assert final.content == ""
    assert final.request_id == "r1"


def test_chat_error_clears_request(panel) -> None:
    panel.open_agent("a1")
    panel.engine.send_prompt("Hi", request_id="r1")
    panel.chunk("resp1", "partial")
    panel.transport.deliver("chatError", "model overloaded")

    st = panel.engine.state
    assert st.messages[-1].content == "**Error**\n\nmodel overloaded"
    assert st.current_request_id is None
    assert panel.engine.tracker.pending_ids() == set()
    assert panel.engine.tracker.record("r1") is None
    # The agent is free again.
    assert panel.engine.send_prompt("retry", request_id="r2") == "r2"


def test_token_usage_before_and_after_final(panel) -> None:
    reports = _collect_reports(panel)
    panel.open_agent("a1")
    panel.engine.send_prompt("Hi", request_id="r1")
    panel.chunk("resp1", "World")
    usage = {"requestId": "r1", "promptTokens": 100, "maxContext": 4096, "usagePercent": 2.5}
    panel.transport.deliver("tokenUsage", usage)
    assert panel.engine.state.context_usage is not None
    assert panel.engine.state.messages[-1].context_usage.prompt_tokens == 100

    panel.final("resp1")
    late = {"requestId": "r1", "promptTokens": 120, "maxContext": 4096, "usagePercent": 3.0, "completionTokens": 7}
    panel.transport.deliver("tokenUsage", late)
    panel.scheduler.advance(0.5)

    assert len(reports) == 1
    assert reports[0].token_usage.prompt_tokens == 120
    assert reports[0].token_usage.completion_tokens == 7
    # base 50, short answer -10, healthy context +10
    assert reports[0].confidence == 50


def test_first_chunk_time_drives_latency(panel) -> None:
    reports = _collect_reports(panel)
    panel.open_agent("a1")
    panel.engine.send_prompt("Hi", request_id="r1")
    panel.transport.deliver("firstChunkTime", {"requestId": "r1", "responseId": "resp1", "timestamp": 1000.25})
    panel.scheduler.advance(1.0)
    panel.chunk("resp1", "Answer")
    panel.final("resp1")
    panel.scheduler.advance(0.5)

    r = reports[0]
    assert r.latency_s == pytest.approx(0.25)
    assert r.answering_s == pytest.approx(0.75)
    assert r.total_s == pytest.approx(1.0)


def test_first_chunk_time_in_milliseconds(panel) -> None:
    panel.open_agent("a1")
    panel.engine.send_prompt("Hi", request_id="r1")
    panel.transport.deliver("firstChunkTime", {"requestId": "r1", "responseId": "resp1", "timestamp": 1.7e12})
    assert panel.engine.accumulator.marks("resp1").first_chunk_time == pytest.approx(1.7e9)
    assert panel.engine.tracker.record("r1").response_id == "resp1"


def test_malformed_events_are_dropped(panel) -> None:
    panel.open_agent("a1")
    panel.engine.send_prompt("Hi", request_id="r1")
    before = panel.engine.state

    panel.transport.deliver("chatResponseChunk", {"chunk": "no id"})
    panel.transport.deliver("chatResponse", "not an object")
    panel.transport.deliver("tokenUsage", {"requestId": "r1"})
    panel.transport.deliver("agentSessions", {"sessions": []})

    assert panel.engine.state is before
    assert panel.engine.tracker.is_pending("r1")


def test_send_payload_carries_agent_and_user_fields(panel) -> None:
    panel.open_agent("a1")
    panel.engine.send_prompt("Hi", request_id="r1", requested_tools=["web_search"])

    (payload,) = panel.transport.sent("sendChatPrompt")
    assert payload["requestId"] == "r1"
    assert payload["prompt"] == "Hi"
    assert payload["agentId"] == "a1"
    assert payload["model"] == "m-alpha"
    assert payload["thinkingTokens"] == 4096
    assert payload["requestedTools"] == ["web_search"]
    assert payload["agentName"] == "Alpha"
    assert payload["agentNickname"] == "Al"
    assert payload["userName"] is None
    assert "userLanguage" in payload


def test_second_prompt_rejected_while_pending(panel) -> None:
    panel.open_agent("a1")
    assert panel.engine.send_prompt("one", request_id="r1") == "r1"
    assert panel.engine.send_prompt("two") is None
    assert panel.engine.send_prompt("   ") is None
    assert len(panel.transport.sent("sendChatPrompt")) == 1


def test_generated_request_ids_are_unique(panel) -> None:
    panel.open_agent("a1")
    rid = panel.engine.send_prompt("one")
    panel.final(f"response-{rid}", "done")
    rid2 = panel.engine.send_prompt("two")
    assert rid and rid2 and rid != rid2


def test_send_requires_known_agent(panel) -> None:
    with pytest.raises(EngineError):
        panel.engine.send_prompt("Hi")
    with pytest.raises(EngineError):
        panel.engine.select_agent("nope")


def test_history_load_keeps_in_flight_request(panel) -> None:
    panel.open_agent("a1", sessions=[{"id": "s1", "title": "Earlier"}], current="s1")
    assert panel.transport.sent("loadSessionHistory") == [{"agentId": "a1", "sessionId": "s1"}]
    panel.engine.send_prompt("new question", request_id="r1")

    panel.transport.deliver(
        "sessionHistory",
        {
            "agentId": "a1",
            "sessionId": "s1",
            "messages": [
                {"id": "old1", "type": "prompt", "content": "earlier", "timestamp": 1},
                {"id": "old2", "type": "response", "content": "reply", "timestamp": 2},
            ],
        },
    )
    assert _ids(panel.engine.state) == ["old1", "old2", "prompt-r1", "placeholder-r1"]
    assert panel.engine.state.session_id == "s1"


def test_state_listeners_see_every_commit(panel) -> None:
    seen: list = []
    unsubscribe = panel.engine.subscribe(seen.append)
    panel.open_agent("a1")
    panel.engine.send_prompt("Hi", request_id="r1")
    assert seen[-1].current_request_id == "r1"
    unsubscribe()
    panel.final("resp1", "done")
    assert seen[-1].current_request_id == "r1"


def test_unprefixed_response_for_off_screen_agent(panel) -> None:
    panel.open_agent("a1")
    panel.engine.send_prompt("question for alpha", request_id="r1")
    panel.open_agent("a2")

    panel.chunk("resp1", "alpha text")
    assert panel.engine.state.messages == ()
    panel.final("resp1", requestId="r1")

    assert panel.engine.state.messages == ()
    assert panel.engine.tracker.pending_ids() == set()
    saved = panel.store.load_session("a1", panel.store.current_session_id("a1"))
    assert [m.content for m in saved] == ["question for alpha", "alpha text"]
    assert saved[-1].agent_id == "a1"
    assert panel.store.current_session_id("a2") is None


def test_chat_error_for_off_screen_agent_frees_it(panel) -> None:
    panel.open_agent("a1")
    panel.engine.send_prompt("Hi", request_id="r1")
    panel.open_agent("a2")

    panel.transport.deliver("chatError", "model overloaded")

    assert panel.engine.state.messages == ()
    assert panel.engine.tracker.pending_ids() == set()
    assert panel.engine.tracker.record("r1") is None
    saved = panel.store.load_session("a1", panel.store.current_session_id("a1"))
    assert saved[-1].content == "**Error**\n\nmodel overloaded"
    assert saved[-1].agent_id == "a1"

    panel.open_agent("a1")
    assert panel.engine.send_prompt("retry", request_id="r2") == "r2"


def test_returning_to_agent_resumes_its_request(panel) -> None:
    panel.open_agent("a1")
    panel.engine.send_prompt("long one", request_id="r1")
    panel.open_agent("a2")
    panel.open_agent("a1")

    assert panel.engine.state.current_request_id == "r1"
    panel.chunk("resp1", "done")
    panel.final("resp1")
    st = panel.engine.state
    assert st.messages[-1].content == "done"
    assert st.messages[-1].agent_id == "a1"
    assert st.current_request_id is None
    assert panel.engine.abort() is False


def test_clear_history_deletes_current_session(panel) -> None:
    panel.open_agent("a1")
    panel.engine.send_prompt("Hi", request_id="r1")
    panel.final("resp1", "Hello")
    assert panel.store.current_session_id("a1") is not None

    panel.engine.clear_history()
    assert panel.transport.sent("clearAgentHistory") == [{"agentId": "a1"}]

    panel.store.clear_current("a1")
    panel.transport.deliver("agentHistoryCleared", {"agentId": "a1"})
    assert panel.engine.state.messages == ()
    assert panel.engine.state.session_id is None
    assert panel.transport.sent("getAgentSessions")[-1] == {"agentId": "a1"}
