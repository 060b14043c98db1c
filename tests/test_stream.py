from __future__ import annotations

import json

import allure
import pytest

from storyloop.orchestrator.backend.stream import EventStream, consume_events
from storyloop.orchestrator.usage import AgentUsage, UsageAccumulator

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Event Stream"),
]


def _events_bytes() -> bytes:
    lines = [
        {"type": "system", "subtype": "init", "session_id": "s-1"},
        {
            "type": "assistant",
            "message": {
                "content": [{"type": "text", "text": "Привет"}],
                "usage": {"input_tokens": 50, "cache_creation_input_tokens": 5},
            },
        },
        {
            "type": "result",
            "usage": {
                "input_tokens": 100,
                "output_tokens": 20,
                "cache_read_input_tokens": 7,
                "cache_creation_input_tokens": 3,
            },
            "total_cost_usd": 0.02,
            "modelUsage": {"m": {"contextWindow": 1000}},
            "structured_output": {"id": "US-001", "passes": True},
        },
    ]
    return ("\n".join(json.dumps(line, ensure_ascii=False) for line in lines)).encode("utf-8")


def _split(payload: bytes, size: int) -> list[bytes]:
    return [payload[index : index + size] for index in range(0, len(payload), size)]


@pytest.mark.parametrize("chunk_size", [1, 3, 7, 4096])
def test_chunk_boundaries_do_not_change_events(chunk_size: int) -> None:
    payload = _events_bytes()
    stream = EventStream(_split(payload, chunk_size))

    events = list(stream)

    assert [event["type"] for event in events] == ["system", "assistant", "result"]
    assert events[1]["message"]["content"][0]["text"] == "Привет"
    assert stream.text == payload.decode("utf-8")


def test_blank_and_non_json_lines_are_skipped() -> None:
    stream = EventStream([b'\n\nnot json\n[1, 2]\n{"type": "system"}\n', b"  \n"])

    assert list(stream) == [{"type": "system"}]


def test_stream_is_single_pass() -> None:
    stream = EventStream([b'{"type": "system"}\n'])
    list(stream)

    with pytest.raises(RuntimeError, match="only be iterated once"):
        iter(stream)


def test_consume_events_collects_usage_and_structured_result() -> None:
    summary = consume_events(EventStream([_events_bytes()]), default_context_window=5000)

    assert summary.initialized is True
    assert summary.event_count == 3
    assert summary.structured_result == {"id": "US-001", "passes": True}
    assert summary.usage == AgentUsage(
        input_tokens=100,
        output_tokens=20,
        cache_read=7,
        cache_creation=3,
        cost_usd=0.02,
        context_window=1000,
    )
    assert summary.live_context_tokens == 103
    assert summary.usage.context_percentage == 10


def test_consume_events_reports_context_management_signal() -> None:
    events = [
        {
            "type": "assistant",
            "message": {
                "usage": {"input_tokens": 10},
                "context_management": {"applied_edits": [{"type": "compact"}]},
            },
        },
        {"type": "result", "usage": {"input_tokens": 1}},
    ]

    summary = consume_events(events, default_context_window=5000)

    assert summary.context_signal == {"applied_edits": [{"type": "compact"}]}
    assert summary.structured_result is None
    assert summary.usage.context_window == 5000


def test_usage_accumulator_sums_invocations() -> None:
    usage = UsageAccumulator()
    usage.add(AgentUsage(input_tokens=10, output_tokens=2, cost_usd=0.5))
    usage.add(None)
    usage.add(AgentUsage(input_tokens=5, output_tokens=1, cost_usd=0.25))
    total = UsageAccumulator()
    total.merge(usage)

    assert total.invocation_count == 2
    assert total.input_tokens == 15
    assert total.describe() == (
        "invocations=2 input_tokens=15 output_tokens=3 cache_read=0 "
        "cache_creation=0 cost_usd=0.7500"
    )
