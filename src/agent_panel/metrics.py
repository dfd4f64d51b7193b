"""agent_panel.metrics

One-shot timing/quality report per streamed response.

A report is scheduled when a response is finalized and computed after a short
grace window, so a `tokenUsage` event that trails the response still counts.
Both the on-screen and the cross-agent paths may try to schedule the same
response; only the first attempt per response id goes through.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from .config import ConfidenceWeights
from .content_parser import count_tool_calls, extract_tool_calls, parse_final_answer, separate_thinking_and_answer
from .messages import RequestRecord, TokenUsage
from .request_tracker import ExpiringIds, RequestTracker
from .scheduler import Scheduler
from .stream_accumulator import ChunkMarks, StreamAccumulator, utf8_len


_LOG = logging.getLogger("agent_panel.metrics")

ANSI_RESET = "\x1b[0m"
ANSI_YELLOW = "\x1b[33m"
ANSI_ORANGE = "\x1b[38;5;208m"
ANSI_RED = "\x1b[31m"
ANSI_GREEN = "\x1b[32m"
ANSI_BOLD = "\x1b[1m"

_RULE = "━" * 52


@dataclass(frozen=True)
class MetricsJob:
    request_id: str | None
    response_id: str
    agent_id: str | None
    content: str
    completed_at: float


@dataclass(frozen=True)
class MetricsReport:
    request_id: str
    response_id: str
    agent_id: str
    latency_s: float
    answering_s: float
    total_s: float
    thinking_bytes: int
    answer_bytes: int
    bytes_received: int
    confidence: int
    tool_calls: dict[str, int] = field(default_factory=dict)
    token_usage: TokenUsage | None = None


def confidence_score(answer: str, usage: TokenUsage | None, weights: ConfidenceWeights | None = None) -> int:
    w = weights or ConfidenceWeights()
    if not answer or not answer.strip():
        return 0

    score = w.base
    n = len(answer)
    if n > w.long_chars:
        score += w.long_bonus
    elif n > w.medium_chars:
        score += w.medium_bonus
    elif n < w.short_chars:
        score -= w.short_penalty

    if usage is not None:
        pct = float(usage.usage_percent)
        if 0 < pct < w.healthy_usage_below:
            score += w.healthy_usage_bonus
        elif pct >= w.full_usage_from:
            score -= w.full_usage_penalty

    low = answer.lower()
    hits = sum(1 for marker in w.uncertainty_markers if marker in low)
    score -= hits * w.uncertainty_penalty

    return max(0, min(100, int(round(score))))


def compute_report(
    job: MetricsJob,
    record: RequestRecord,
    marks: ChunkMarks | None,
    *,
    weights: ConfidenceWeights | None = None,
) -> MetricsReport:
    start = record.start_time
    first = marks.first_chunk_time if marks and marks.first_chunk_time is not None else record.first_chunk_time
    last = marks.last_chunk_time if marks and marks.last_chunk_time is not None else record.last_chunk_time

    total = max(0.0, job.completed_at - start)
    latency = max(0.0, first - start) if first is not None else 0.0
    if first is not None and last is not None:
        answering = max(0.0, last - first)
    else:
        answering = total

    split = separate_thinking_and_answer(job.content)
    final_answer = parse_final_answer(job.content)
    received = marks.bytes_received if marks is not None else record.bytes_received

    return MetricsReport(
        request_id=record.request_id,
        response_id=job.response_id,
        agent_id=record.agent_id,
        latency_s=latency,
        answering_s=answering,
        total_s=total,
        thinking_bytes=utf8_len(split.thinking),
        answer_bytes=utf8_len(split.answer),
        bytes_received=received,
        confidence=confidence_score(final_answer, record.token_usage, weights),
        tool_calls=count_tool_calls(extract_tool_calls(job.content)),
        token_usage=record.token_usage,
    )


# ---- terminal formatting ----


def _fmt_duration(seconds: float) -> str:
    s = f"{seconds:.2f}s"
    if seconds > 12:
        return f"{ANSI_BOLD}{ANSI_RED}{s}{ANSI_RESET}"
    if seconds > 6:
        return f"{ANSI_ORANGE}{s}{ANSI_RESET}"
    if seconds > 1:
        return f"{ANSI_YELLOW}{s}{ANSI_RESET}"
    return s


def _fmt_size(size: int) -> str:
    txt = f"{size} bytes" if size < 1024 else f"{size / 1024:.2f} KB"
    kb = size / 1024
    if kb > 15:
        return f"{ANSI_ORANGE}{txt}{ANSI_RESET}"
    if kb > 5:
        return f"{ANSI_YELLOW}{txt}{ANSI_RESET}"
    return txt


def _fmt_rate(tokens_per_s: float) -> str:
    txt = f"{tokens_per_s:.1f} tokens/s"
    if tokens_per_s < 10:
        return f"{ANSI_RED}{txt}{ANSI_RESET}"
    if tokens_per_s < 20:
        return f"{ANSI_ORANGE}{txt}{ANSI_RESET}"
    if tokens_per_s < 50:
        return f"{ANSI_YELLOW}{txt}{ANSI_RESET}"
    if tokens_per_s > 100:
        return f"{ANSI_GREEN}{txt}{ANSI_RESET}"
    return txt


def _num(d: dict, key: str) -> float:
    try:
        return float(d.get(key) or 0)
    except (TypeError, ValueError):
        return 0.0


def format_report(report: MetricsReport) -> str:
    lines = [
        "",
        "",
        _RULE,
        "Agent Response Status:",
        "   Duration:",
        f"      Latency: {_fmt_duration(report.latency_s)}",
        f"      Answering: {_fmt_duration(report.answering_s)}",
        f"      Total: {_fmt_duration(report.total_s)}",
        "   Response Size:",
        f"      Thinking: {_fmt_size(report.thinking_bytes)}",
        f"      Answer: {_fmt_size(report.answer_bytes)}",
    ]
    timings = report.token_usage.timings if report.token_usage else None
    if isinstance(timings, dict) and timings:
        lines += [
            "   Model Performance:",
            f"      Prompt Tokens: {int(_num(timings, 'prompt_n')):,}",
            f"      Cached Tokens: {int(_num(timings, 'cache_n')):,}",
            f"      Prompt Processing: {_num(timings, 'prompt_ms'):.2f}ms "
            f"({_num(timings, 'prompt_per_token_ms'):.2f}ms/token, {_fmt_rate(_num(timings, 'prompt_per_second'))})",
            f"      Completion Tokens: {int(_num(timings, 'predicted_n')):,}",
            f"      Completion Time: {_num(timings, 'predicted_ms'):.2f}ms "
            f"({_num(timings, 'predicted_per_token_ms'):.2f}ms/token, {_fmt_rate(_num(timings, 'predicted_per_second'))})",
        ]
    if report.tool_calls:
        lines.append(f"   Tool Calls: {sum(report.tool_calls.values())} total")
        for name, count in report.tool_calls.items():
            lines.append(f"      {name}" + (f" ({count}x)" if count > 1 else ""))
    lines += [f"   Confidence: {report.confidence}%", _RULE, ""]
    return "\n".join(lines)


ReportSink = Callable[[MetricsReport, str], None]


class MetricsCalculator:
    def __init__(
        self,
        *,
        scheduler: Scheduler,
        tracker: RequestTracker,
        accumulator: StreamAccumulator,
        sink: ReportSink,
        grace_s: float = 0.5,
        weights: ConfidenceWeights | None = None,
        clock: Callable[[], float] = time.time,
        remember_s: float = 30.0,
    ) -> None:
        self._scheduler = scheduler
        self._tracker = tracker
        self._accumulator = accumulator
        self._sink = sink
        self._grace_s = float(grace_s)
        self._weights = weights or ConfidenceWeights()
        # Response ids stay guarded for a while after their report was queued.
        self._reported = ExpiringIds(clock=clock, ttl_s=max(float(remember_s), self._grace_s))

    def already_scheduled(self, response_id: str) -> bool:
        return response_id in self._reported

    def schedule(self, job: MetricsJob) -> bool:
        """Queue the report for `job.response_id`; False if one was already queued."""

        if job.response_id in self._reported:
            _LOG.debug("metrics_duplicate response_id=%s", job.response_id)
            return False
        self._reported.add(job.response_id)
        self._scheduler.call_later(self._grace_s, lambda: self._fire(job))
        return True

    def _fire(self, job: MetricsJob) -> None:
        record = self._tracker.record(job.request_id)
        marks = self._accumulator.marks(job.response_id)
        try:
            if record is None or job.agent_id is None:
                _LOG.info(
                    "metrics_skipped response_id=%s request_id=%s reason=%s",
                    job.response_id,
                    job.request_id,
                    "no_record" if record is None else "no_agent",
                )
                return
            report = compute_report(job, record, marks, weights=self._weights)
            text = format_report(report)
            _LOG.info(
                "metrics agent_id=%s request_id=%s response_id=%s latency_s=%.2f answering_s=%.2f total_s=%.2f confidence=%d",
                report.agent_id,
                report.request_id,
                report.response_id,
                report.latency_s,
                report.answering_s,
                report.total_s,
                report.confidence,
            )
            try:
                self._sink(report, text)
            except Exception:
                _LOG.exception("metrics_sink_failed response_id=%s", job.response_id)
        finally:
            self._tracker.discard_record(job.request_id)
            self._accumulator.discard(job.response_id)
