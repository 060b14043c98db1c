"""Line-delimited JSON event stream emitted by agent processes."""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any

from storyloop.orchestrator.usage import DEFAULT_CONTEXT_WINDOW, AgentUsage, live_context_tokens

logger = logging.getLogger(__name__)


class EventStream:
    """Finite, single-pass sequence of parsed events built from byte chunks.

    Chunks may split lines, and multi-byte characters, at any position. The
    undelimited remainder is carried over to the next chunk and a final line
    without a trailing newline is parsed at end of input. Blank lines and
    lines that are not JSON objects are skipped.
    """

    def __init__(self, chunks: Iterable[bytes]) -> None:
        self._chunks = chunks
        self._consumed = False
        self._parts: list[str] = []

    @property
    def text(self) -> str:
        """Decoded text read so far."""

        return "".join(self._parts)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        if self._consumed:
            raise RuntimeError("EventStream can only be iterated once")
        self._consumed = True
        return self._events()

    def _events(self) -> Iterator[dict[str, Any]]:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        for chunk in self._chunks:
            decoded = decoder.decode(chunk)
            if not decoded:
                continue
            self._parts.append(decoded)
            buffer += decoded
            *lines, buffer = buffer.split("\n")
            for line in lines:
                event = _parse_line(line)
                if event is not None:
                    yield event
        tail = decoder.decode(b"", final=True)
        if tail:
            self._parts.append(tail)
            buffer += tail
        event = _parse_line(buffer)
        if event is not None:
            yield event


def _parse_line(line: str) -> dict[str, Any] | None:
    stripped = line.strip()
    if not stripped:
        return None
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON stream line: %.120s", stripped)
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


@dataclass(slots=True)
class StreamSummary:
    """Signals collected from one agent event stream."""

    usage: AgentUsage | None = None
    context_signal: Any = None
    structured_result: dict[str, Any] | None = None
    live_context_tokens: int = 0
    event_count: int = 0
    initialized: bool = False


def consume_events(
    events: Iterable[dict[str, Any]],
    *,
    default_context_window: int = DEFAULT_CONTEXT_WINDOW,
) -> StreamSummary:
    """Apply the agent event protocol to a sequence of parsed events."""

    summary = StreamSummary()
    for event in events:
        summary.event_count += 1
        event_type = event.get("type")
        if event_type == "system":
            if event.get("subtype") == "init":
                summary.initialized = True
                logger.debug("Agent session initialized: %s", event.get("session_id"))
            continue
        if event_type == "assistant":
            _apply_assistant_event(summary, event)
            continue
        if event_type == "result":
            _apply_result_event(summary, event, default_context_window=default_context_window)
    return summary


def _apply_assistant_event(summary: StreamSummary, event: dict[str, Any]) -> None:
    message = event.get("message")
    if not isinstance(message, dict):
        return
    usage = message.get("usage")
    if isinstance(usage, dict):
        summary.live_context_tokens = live_context_tokens(usage)
    context_management = message.get("context_management")
    if context_management:
        summary.context_signal = context_management
        logger.warning("Agent reported context management: %s", context_management)


def _apply_result_event(
    summary: StreamSummary,
    event: dict[str, Any],
    *,
    default_context_window: int,
) -> None:
    structured = event.get("structured_output")
    if isinstance(structured, dict) and structured:
        summary.structured_result = structured
    usage = AgentUsage.from_result_event(event, default_context_window=default_context_window)
    if usage is not None:
        summary.usage = usage
        summary.live_context_tokens = usage.context_tokens
