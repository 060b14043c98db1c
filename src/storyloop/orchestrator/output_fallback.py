"""Best-effort structured result recovery from raw agent stdout."""

from __future__ import annotations

import json
import re
from typing import Any

from storyloop.orchestrator.errors import ParseError

_FENCED_BLOCK = re.compile(r"```[^\n`]*\n?(.*?)```", re.DOTALL)
_DECODER = json.JSONDecoder()


def extract_structured_result(raw_text: str) -> dict[str, Any]:
    """Recover a JSON object from agent output captured without a structured result.

    Stream output (several lines, the first one JSON) is reduced to the last
    assistant text message. A fenced code block is unwrapped when present and
    the first decodable top-level object is returned.
    """

    text = raw_text.strip()
    if not text:
        raise ParseError("Agent output is empty")

    candidate = text
    if _looks_like_event_stream(text):
        messages = _assistant_texts(text)
        if messages:
            candidate = messages[-1]

    fenced = _FENCED_BLOCK.search(candidate)
    if fenced is not None:
        candidate = fenced.group(1)

    payload = _first_object(candidate)
    if payload is None:
        preview = candidate.strip()[:200]
        raise ParseError(f"No JSON object found in agent output: {preview!r}")
    return payload


def _looks_like_event_stream(text: str) -> bool:
    lines = text.splitlines()
    if len(lines) < 2:  # noqa: PLR2004
        return False
    return _try_load(lines[0]) is not None


def _assistant_texts(text: str) -> list[str]:
    messages: list[str] = []
    for line in text.splitlines():
        event = _try_load(line)
        if not isinstance(event, dict) or event.get("type") != "assistant":
            continue
        message = event.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            continue
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text" and part.get("text"):
                messages.append(str(part["text"]))
                break
    return messages


def _first_object(text: str) -> dict[str, Any] | None:
    start = text.find("{")
    while start != -1:
        try:
            parsed, _ = _DECODER.raw_decode(text, start)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed
        start = text.find("{", start + 1)
    return None


def _try_load(raw: str) -> object | None:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None
