from __future__ import annotations

import codecs
import json

from codex_pool.core.types import JsonValue

COMPLETION_EVENT_TYPES = frozenset({"response.done", "response.completed"})


class StreamTextDecoder:
    """UTF-8 decoder for chunked bodies; multi-byte characters may straddle chunks."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._parts: list[str] = []

    def feed(self, chunk: bytes) -> None:
        if chunk:
            self._parts.append(self._decoder.decode(chunk))

    def finish(self) -> str:
        self._parts.append(self._decoder.decode(b"", final=True))
        return "".join(self._parts)


def extract_sse_data(event_block: str) -> str | None:
    data_lines = _extract_sse_data_lines(event_block)
    if data_lines is None:
        return None
    data = "\n".join(data_lines)
    if not data.strip():
        return None
    if data.strip() == "[DONE]":
        return None
    return data


def find_completed_response(text: str) -> JsonValue | None:
    """Return the ``response`` payload of the first completion event in an SSE body."""
    normalized = text.replace("\r\n", "\n")
    for block in normalized.split("\n\n"):
        response = _completed_response(extract_sse_data(block))
        if response is not None:
            return response
    # Unframed bodies: one payload per line.
    for line in normalized.split("\n"):
        response = _completed_response(extract_sse_data(line))
        if response is not None:
            return response
    return None


def _completed_response(data: str | None) -> JsonValue | None:
    if data is None:
        return None
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    if payload.get("type") not in COMPLETION_EVENT_TYPES:
        return None
    return payload.get("response")


def _extract_sse_data_lines(event_block: str) -> list[str] | None:
    data_lines: list[str] = []
    for raw_line in event_block.splitlines():
        if not raw_line:
            continue
        if raw_line.startswith(":"):
            continue

        field, value = _parse_sse_field(raw_line)
        if field == "data":
            data_lines.append(value)

    if not data_lines:
        return None
    return data_lines


def _parse_sse_field(line: str) -> tuple[str, str]:
    if ":" not in line:
        return line, ""
    field, value = line.split(":", 1)
    if value.startswith(" "):
        value = value[1:]
    return field, value
