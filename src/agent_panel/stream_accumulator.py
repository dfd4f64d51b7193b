"""agent_panel.stream_accumulator

Chunk placement and per-response timing marks.

`apply_chunk` is a pure function over a message list. `StreamAccumulator`
keeps what has to outlive the visible list: the text received so far for each
response id (agents that are not on screen still accumulate), its UTF-8 size,
and the first/last arrival times used for latency math.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Sequence

from .messages import Message, PlaceholderMessage, ResponseMessage, ToolCallMessage


_LOG = logging.getLogger("agent_panel.stream_accumulator")


@dataclass
class ChunkMarks:
    first_chunk_time: float | None = None
    last_chunk_time: float | None = None
    bytes_received: int = 0
    chunks: int = 0


def utf8_len(text: str) -> int:
    return len((text or "").encode("utf-8"))


def apply_chunk(
    messages: Sequence[Message],
    response_id: str,
    text: str,
    *,
    request_id: str | None,
    agent_id: str | None,
    now: float,
) -> list[Message]:
    """Place one streamed fragment into a message list.

    Target lookup order:
    1. a non-tool-call message whose id is `response_id`
    2. the placeholder of `request_id`
    3. a trailing tool-call message, replaced by a new streaming response
    4. otherwise a new streaming response is appended
    """

    msgs = list(messages)

    for i, m in enumerate(msgs):
        if m.id == response_id and not isinstance(m, ToolCallMessage):
            msgs[i] = _as_streaming(m, response_id, m.content + text)
            return msgs

    if request_id:
        for i, m in enumerate(msgs):
            if isinstance(m, PlaceholderMessage) and m.request_id == request_id:
                msgs[i] = _as_streaming(m, response_id, m.content + text)
                return msgs

    if msgs and isinstance(msgs[-1], ToolCallMessage):
        last = msgs[-1]
        msgs[-1] = ResponseMessage(
            id=response_id,
            content=text,
            timestamp=last.timestamp,
            agent_id=last.agent_id if last.agent_id is not None else agent_id,
            request_id=last.request_id or request_id,
            is_streaming=True,
            context_usage=last.context_usage,
        )
        return msgs

    _LOG.debug("chunk_fallback_new_message response_id=%s request_id=%s", response_id, request_id)
    msgs.append(
        ResponseMessage(
            id=response_id,
            content=text,
            timestamp=now,
            agent_id=agent_id,
            request_id=request_id,
            is_streaming=True,
        )
    )
    return msgs


def _as_streaming(m: Message, response_id: str, content: str) -> Message:
    if isinstance(m, PlaceholderMessage):
        return ResponseMessage(
            id=response_id,
            content=content,
            timestamp=m.timestamp,
            agent_id=m.agent_id,
            request_id=m.request_id,
            is_streaming=True,
            context_usage=m.context_usage,
        )
    if isinstance(m, ResponseMessage):
        return replace(m, content=content, is_streaming=True)
    return replace(m, content=content)


class StreamAccumulator:
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._marks: dict[str, ChunkMarks] = {}
        self._buffers: dict[str, list[str]] = {}

    def record_chunk(self, response_id: str, text: str) -> ChunkMarks:
        now = self._clock()
        marks = self._marks.setdefault(response_id, ChunkMarks())
        if marks.first_chunk_time is None:
            marks.first_chunk_time = now
        marks.last_chunk_time = now
        marks.bytes_received += utf8_len(text)
        marks.chunks += 1
        self._buffers.setdefault(response_id, []).append(text)
        return marks

    def note_first_chunk(self, response_id: str, timestamp: float) -> None:
        marks = self._marks.setdefault(response_id, ChunkMarks())
        marks.first_chunk_time = float(timestamp)

    def marks(self, response_id: str) -> ChunkMarks | None:
        return self._marks.get(response_id)

    def content(self, response_id: str) -> str:
        return "".join(self._buffers.get(response_id, ()))

    def discard(self, response_id: str | None) -> None:
        if not response_id:
            return
        self._marks.pop(response_id, None)
        self._buffers.pop(response_id, None)

    def tracked_ids(self) -> set[str]:
        return set(self._marks) | set(self._buffers)
