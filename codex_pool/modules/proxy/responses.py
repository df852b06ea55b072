from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Mapping

from codex_pool.core.clients.codex import UpstreamResponse
from codex_pool.core.errors import (
    OpenAIErrorEnvelope,
    UpstreamErrorShape,
    openai_error,
    parse_error_shape,
)
from codex_pool.core.metrics import get_metrics
from codex_pool.core.types import JsonValue
from codex_pool.core.utils.sse import StreamTextDecoder, find_completed_response
from codex_pool.modules.proxy.types import ProxyResponse

logger = logging.getLogger(__name__)

JSON_MEDIA_TYPE = "application/json; charset=utf-8"
EVENT_STREAM_MEDIA_TYPE = "text/event-stream; charset=utf-8"

# aiohttp has already de-chunked and decompressed the body.
_DROP_RESPONSE_HEADERS = {"content-length", "content-encoding", "transfer-encoding", "connection"}


def copy_response_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {key: value for key, value in headers.items() if key.lower() not in _DROP_RESPONSE_HEADERS}


def _set_content_type(headers: dict[str, str], value: str) -> None:
    for key in [key for key in headers if key.lower() == "content-type"]:
        del headers[key]
    headers["content-type"] = value


def _has_content_type(headers: Mapping[str, str]) -> bool:
    return any(key.lower() == "content-type" and value for key, value in headers.items())


def decode_json(raw: bytes) -> JsonValue:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, ValueError):
        return None


def json_response(status_code: int, payload: JsonValue, headers: Mapping[str, str] | None = None) -> ProxyResponse:
    merged = dict(headers or {})
    _set_content_type(merged, JSON_MEDIA_TYPE)
    return ProxyResponse(
        status_code=status_code,
        headers=merged,
        body=json.dumps(payload, separators=(",", ":")).encode("utf-8"),
    )


def error_response(status_code: int, envelope: OpenAIErrorEnvelope) -> ProxyResponse:
    return json_response(status_code, envelope)


def normalize_error_response(
    status_code: int,
    headers: Mapping[str, str],
    raw: bytes,
    error: UpstreamErrorShape | None = None,
) -> ProxyResponse:
    """Surface a non-success upstream response as an OpenAI-style error envelope.

    A 404 carrying ``usage_limit_reached`` is reported as 429 so callers only need to
    understand one "try later" status.
    """
    shape = error if error is not None else parse_error_shape(decode_json(raw))
    if status_code == 404 and shape.is_usage_limit_reached:
        status_code = 429
    fallback_message = f"Upstream error: HTTP {status_code}"
    if shape.is_unknown:
        text = raw.decode("utf-8", errors="replace").strip()
        envelope = openai_error("upstream_error", text or fallback_message)
    else:
        envelope = shape.to_envelope(fallback_message)
    return json_response(status_code, envelope, copy_response_headers(headers))


def passthrough_stream(upstream: UpstreamResponse) -> ProxyResponse:
    headers = copy_response_headers(upstream.headers)
    if not _has_content_type(headers):
        headers["content-type"] = EVENT_STREAM_MEDIA_TYPE
    return ProxyResponse(status_code=upstream.status, headers=headers, stream=_release_after(upstream))


async def _release_after(upstream: UpstreamResponse) -> AsyncIterator[bytes]:
    try:
        async for chunk in upstream.iter_chunks():
            yield chunk
    finally:
        upstream.release()


async def collect_stream_document(upstream: UpstreamResponse) -> ProxyResponse:
    """Reduce an event stream to the terminal response document.

    When the stream carries no completion event the raw text is returned with the
    upstream status and headers untouched.
    """
    decoder = StreamTextDecoder()
    try:
        async for chunk in upstream.iter_chunks():
            decoder.feed(chunk)
    finally:
        upstream.release()
    text = decoder.finish()

    headers = copy_response_headers(upstream.headers)
    response = find_completed_response(text)
    if response is None:
        logger.error("stream_adapter_no_completion status=%s bytes=%s", upstream.status, len(text))
        get_metrics().observe_stream_adapter_failure()
        return ProxyResponse(status_code=upstream.status, headers=headers, body=text.encode("utf-8"))
    return json_response(upstream.status, response, headers)
