"""History compaction: token estimates, windowing and map-reduce summaries."""

from __future__ import annotations

import abc
import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Protocol

from caelis.session import Event, Message, ModelRequest, ModelResponse, Role

META_KIND = "kind"
META_KIND_COMPACTION = "compaction"
META_COMPACTION = "compaction"
TRIGGER_AUTO = "auto"
TRIGGER_MANUAL = "manual"
TRIGGER_OVERFLOW_RECOVERY = "overflow_recovery"

DEFAULT_CONTEXT_WINDOW_TOKENS = 65536

DEFAULT_COMPACTION_SYSTEM_PROMPT = (
    "You are a conversation compactor. Produce a concise structured summary covering goals, "
    "constraints, key facts, completed actions, pending tasks, and important artifacts."
)
DEFAULT_COMPACTION_USER_PREFIX = (
    "Summarize the following conversation history. Preserve critical tool outcomes and "
    "unresolved issues. Return only the summary body:\n\n"
)
DEFAULT_COMPACTION_MERGE_PREFIX = "Merge the following chunk summaries into one coherent final summary:\n\n"

_ZERO_TIME = "0001-01-01T00:00:00Z"
_FALLBACK_TAIL = 24
_OVERFLOW_KEYWORDS = (
    "context length",
    "context window",
    "prompt is too long",
    "too many tokens",
    "maximum context",
    "input is too long",
    "token limit",
    "max context",
)


class _LLM(Protocol):
    def generate(self, request: ModelRequest) -> Iterable[ModelResponse | None]: ...


@dataclass
class CompactionSummarizeInput:
    """Events to summarize and the budgets that apply."""

    events: list[Event] = field(default_factory=list)
    input_budget: int = 0
    summary_chunk_tokens: int = 0
    max_model_summary_retries: int = 0


@dataclass
class CompactionSummarizeResult:
    """A compaction summary and how many events it covers."""

    text: str = ""
    summarized_events: int = 0


class CompactionStrategy(abc.ABC):
    """How history is summarized during compaction."""

    @abc.abstractmethod
    def summarize(self, llm: _LLM, summarize_input: CompactionSummarizeInput) -> CompactionSummarizeResult:
        """Summarize the given events."""


@dataclass
class CompactionConfig:
    """History compaction settings; zero values mean defaults."""

    enabled: bool = True
    watermark_ratio: float = 0.0
    min_watermark_ratio: float = 0.0
    max_watermark_ratio: float = 0.0
    default_context_window_tokens: int = 0
    reserve_output_tokens: int = 0
    safety_margin_tokens: int = 0
    preserve_recent_turns: int = 0
    summary_chunk_tokens: int = 0
    max_model_summary_retries: int = 0
    strategy: CompactionStrategy | None = None

    def normalized(self) -> CompactionConfig:
        """Return a copy with defaults filled in and the watermark clamped."""
        min_ratio = self.min_watermark_ratio if self.min_watermark_ratio > 0 else 0.5
        max_ratio = self.max_watermark_ratio if self.max_watermark_ratio > 0 else 0.9
        ratio = self.watermark_ratio if self.watermark_ratio > 0 else 0.7
        return replace(
            self,
            min_watermark_ratio=min_ratio,
            max_watermark_ratio=max_ratio,
            watermark_ratio=max(min_ratio, min(ratio, max_ratio)),
            default_context_window_tokens=self.default_context_window_tokens
            if self.default_context_window_tokens > 0
            else DEFAULT_CONTEXT_WINDOW_TOKENS,
            reserve_output_tokens=self.reserve_output_tokens if self.reserve_output_tokens > 0 else 4096,
            safety_margin_tokens=self.safety_margin_tokens if self.safety_margin_tokens > 0 else 1024,
            preserve_recent_turns=self.preserve_recent_turns if self.preserve_recent_turns > 0 else 2,
            summary_chunk_tokens=self.summary_chunk_tokens if self.summary_chunk_tokens > 0 else 6000,
            max_model_summary_retries=self.max_model_summary_retries
            if self.max_model_summary_retries > 0
            else 3,
            enabled=True,
        )


def _to_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def _rfc3339(moment: datetime | None) -> str:
    if moment is None:
        return _ZERO_TIME
    if moment.tzinfo is None:
        moment = moment.astimezone()
    text = moment.replace(microsecond=0).isoformat()
    return text[:-6] + "Z" if text.endswith("+00:00") else text


def event_to_text(event: Event | None) -> str:
    """Render an event as plain text for summaries and token estimates."""
    if event is None:
        return ""
    message = event.message
    if message.tool_response is not None:
        response = message.tool_response
        return f"tool_response name={response.name} result={_to_json(response.result)}"
    if message.tool_calls:
        calls = [{"ID": call.id, "Name": call.name, "Args": call.args} for call in message.tool_calls]
        return f"tool_calls={_to_json(calls)} text={message.text}"
    return message.text


def _events_to_transcript(events: Iterable[Event | None]) -> str:
    return "".join(
        f"[{_rfc3339(event.time)}] {event.message.role}: {event_to_text(event)}\n"
        for event in events
        if event is not None
    )


def estimate_text_tokens(text: str) -> int:
    """Estimate tokens as one per four characters, rounded up."""
    if not (text or "").strip():
        return 0
    return max(1, -(-len(text) // 4))


def estimate_event_tokens(event: Event | None) -> int:
    """Estimate the tokens of one event, including a fixed overhead."""
    if event is None:
        return 0
    return estimate_text_tokens(event_to_text(event)) + 10


def estimate_events_tokens(events: Iterable[Event | None]) -> int:
    """Estimate the tokens of a sequence of events."""
    return sum(estimate_event_tokens(event) for event in events)


def is_compaction_event(event: Event | None) -> bool:
    """Report whether an event is a compaction summary."""
    if event is None or not event.meta:
        return False
    kind = event.meta.get(META_KIND)
    return isinstance(kind, str) and kind == META_KIND_COMPACTION


def context_window_events(events: Sequence[Event | None]) -> list[Event | None]:
    """Return the events from the latest compaction event onward."""
    for index in range(len(events) - 1, -1, -1):
        if is_compaction_event(events[index]):
            return list(events[index:])
    return list(events)


def split_compaction_target(
    window: Sequence[Event | None], preserve_recent_turns: int
) -> tuple[list[Event | None], list[Event | None]]:
    """Split a window into events to summarize and recent turns to keep."""
    if not window:
        return [], []
    user_indices = [
        index
        for index, event in enumerate(window)
        if event is not None and event.message.role == Role.USER
    ]
    if not user_indices:
        return list(window), []
    preserve = max(1, preserve_recent_turns)
    if len(user_indices) <= preserve:
        return [], list(window)
    cutoff = user_indices[len(user_indices) - preserve]
    if cutoff <= 0 or cutoff >= len(window):
        return [], list(window)
    return list(window[:cutoff]), list(window[cutoff:])


def split_by_token_budget(events: Iterable[Event | None], budget: int) -> list[list[Event]]:
    """Group events into consecutive chunks that fit a token budget."""
    if budget <= 0:
        budget = 1200
    chunks: list[list[Event]] = []
    current: list[Event] = []
    current_tokens = 0
    for event in events:
        if event is None:
            continue
        tokens = estimate_event_tokens(event)
        if current and current_tokens + tokens > budget:
            chunks.append(current)
            current, current_tokens = [], 0
        current.append(event)
        current_tokens += tokens
    if current:
        chunks.append(current)
    return chunks


def clip_text(text: str, max_runes: int) -> str:
    """Cut text to at most max_runes characters, marking the cut."""
    if max_runes <= 0:
        return ""
    if len(text) <= max_runes:
        return text
    return text[:max_runes] + " ..."


def heuristic_fallback_summary(events: Sequence[Event | None], input_budget: int) -> str:
    """Build a summary without a model from the last events."""
    if not events:
        return "Fallback summary: no events available."
    lines = ["Fallback summary (heuristic, model compaction degraded):"]
    for event in events[-_FALLBACK_TAIL:]:
        if event is None:
            continue
        lines.append(f"- {event.message.role}: {clip_text(event_to_text(event), 240)}")
    lines.append(f"Estimated context budget={input_budget} tokens.")
    return "\n".join(lines).strip()


def is_context_overflow_error(err: BaseException | None) -> bool:
    """Report whether an error looks like a model context overflow."""
    if err is None:
        return False
    text = str(err).lower()
    return any(keyword in text for keyword in _OVERFLOW_KEYWORDS)


def resolve_context_window_tokens(override: int, llm: Any, fallback: int) -> int:
    """Pick the context window size: override, then the model's, then fallback."""
    if override > 0:
        return override
    capability = getattr(llm, "context_window_tokens", None)
    if callable(capability):
        tokens = capability()
        if isinstance(tokens, int) and tokens > 0:
            return tokens
    if fallback > 0:
        return fallback
    return DEFAULT_CONTEXT_WINDOW_TOKENS


class MapReduceCompactionStrategy(CompactionStrategy):
    """Summarizes token-budgeted chunks, then merges the chunk summaries."""

    def __init__(self, system_prompt: str = "", user_prefix: str = "", merge_prefix: str = "") -> None:
        self.system_prompt = (system_prompt or "").strip() or DEFAULT_COMPACTION_SYSTEM_PROMPT
        self.user_prefix = (user_prefix or "").strip() or DEFAULT_COMPACTION_USER_PREFIX
        self.merge_prefix = (merge_prefix or "").strip() or DEFAULT_COMPACTION_MERGE_PREFIX

    def summarize(self, llm: _LLM, summarize_input: CompactionSummarizeInput) -> CompactionSummarizeResult:
        if not summarize_input.events:
            return CompactionSummarizeResult()
        retries = max(1, summarize_input.max_model_summary_retries)
        working = list(summarize_input.events)
        for attempt in range(retries):
            chunk_budget = max(800, summarize_input.summary_chunk_tokens // (attempt + 1))
            try:
                summary = self._summarize_by_map_reduce(llm, working, chunk_budget)
            except Exception as exc:  # noqa: BLE001 - any model failure falls back
                if not is_context_overflow_error(exc) or len(working) <= 4:
                    break
                working = working[len(working) // 2:]
                continue
            if summary.strip():
                return CompactionSummarizeResult(text=summary.strip(), summarized_events=len(working))
            break
        return CompactionSummarizeResult(
            text=heuristic_fallback_summary(working, summarize_input.input_budget),
            summarized_events=len(working),
        )

    def _summarize_by_map_reduce(self, llm: _LLM, events: list[Event], chunk_budget: int) -> str:
        summaries = [
            self._call_model(llm, self.user_prefix + _events_to_transcript(chunk))
            for chunk in split_by_token_budget(events, chunk_budget)
        ]
        if not summaries:
            return ""
        if len(summaries) == 1:
            return summaries[0]
        return self._call_model(llm, self.merge_prefix + "\n\n".join(summaries))

    def _call_model(self, llm: _LLM, user_prompt: str) -> str:
        request = ModelRequest(
            messages=[
                Message(role=Role.SYSTEM, text=self.system_prompt),
                Message(role=Role.USER, text=user_prompt),
            ],
            stream=False,
        )
        last: ModelResponse | None = None
        for response in llm.generate(request):
            if response is not None:
                last = response
        if last is None:
            raise RuntimeError("runtime: compaction got empty model response")
        return last.message.text.strip()


def default_compaction_strategy() -> CompactionStrategy:
    """Return the default map-reduce compaction strategy."""
    return MapReduceCompactionStrategy()