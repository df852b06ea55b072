from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from typing import Protocol
from urllib.parse import urlparse

import aiohttp

from codex_pool.core.clients.http import get_http_client
from codex_pool.core.config.settings import get_settings
from codex_pool.core.errors import InvalidBackendUrl

logger = logging.getLogger(__name__)

TRUSTED_BACKEND_SCHEME = "https"
TRUSTED_BACKEND_HOST = "chatgpt.com"
TRUSTED_BACKEND_PATH_PREFIX = "/backend-api/codex/"

OPENAI_BETA_HEADER = "responses=experimental"
EVENT_STREAM_MEDIA_TYPE = "text/event-stream"

IGNORE_INBOUND_HEADERS = {
    "accept",
    "accept-encoding",
    "authorization",
    "chatgpt-account-id",
    "connection",
    "content-length",
    "content-type",
    "host",
    "openai-beta",
    "transfer-encoding",
    "x-api-key",
}

_SSE_READ_CHUNK_SIZE = 8 * 1024


def rewrite_url(url: str) -> str:
    """Route the generic responses endpoint to the Codex variant (first occurrence only)."""
    return url.replace("/responses", "/codex/responses", 1)


def validate_backend_url(url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme != TRUSTED_BACKEND_SCHEME:
        raise InvalidBackendUrl(url)
    if (parsed.hostname or "").lower() != TRUSTED_BACKEND_HOST or parsed.username or parsed.password:
        raise InvalidBackendUrl(url)
    try:
        port = parsed.port
    except ValueError as exc:
        raise InvalidBackendUrl(url) from exc
    if port not in (None, 443):
        raise InvalidBackendUrl(url)
    if not parsed.path.startswith(TRUSTED_BACKEND_PATH_PREFIX):
        raise InvalidBackendUrl(url)
    return url


def filter_inbound_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {key: value for key, value in headers.items() if key.lower() not in IGNORE_INBOUND_HEADERS}


def build_codex_headers(
    inbound: Mapping[str, str],
    *,
    access_token: str,
    account_id: str,
    prompt_cache_key: str | None = None,
) -> dict[str, str]:
    headers = filter_inbound_headers(inbound)
    headers["Authorization"] = f"Bearer {access_token}"
    headers["chatgpt-account-id"] = account_id
    headers["OpenAI-Beta"] = OPENAI_BETA_HEADER
    headers["accept"] = EVENT_STREAM_MEDIA_TYPE
    headers["content-type"] = "application/json"
    lower_keys = {key.lower() for key in headers}
    if prompt_cache_key:
        if "session_id" not in lower_keys:
            headers["session_id"] = prompt_cache_key
        if "conversation_id" not in lower_keys:
            headers["conversation_id"] = prompt_cache_key
    return headers


class UpstreamResponse(Protocol):
    status: int
    headers: Mapping[str, str]

    def iter_chunks(self) -> AsyncIterator[bytes]: ...

    async def read(self) -> bytes: ...

    def release(self) -> None: ...


class UpstreamTransport(Protocol):
    async def send(self, url: str, headers: Mapping[str, str], body: bytes) -> UpstreamResponse: ...


class AiohttpUpstreamResponse:
    def __init__(self, response: aiohttp.ClientResponse) -> None:
        self._response = response
        self.status = response.status
        self.headers: Mapping[str, str] = response.headers

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        async for chunk in self._response.content.iter_chunked(_SSE_READ_CHUNK_SIZE):
            if chunk:
                yield chunk

    async def read(self) -> bytes:
        return await self._response.read()

    def release(self) -> None:
        self._response.release()


class AiohttpTransport:
    def __init__(self, session: aiohttp.ClientSession | None = None) -> None:
        self._session = session

    async def send(self, url: str, headers: Mapping[str, str], body: bytes) -> UpstreamResponse:
        settings = get_settings()
        session = self._session or get_http_client().session
        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=settings.upstream_connect_timeout_seconds,
            sock_read=settings.stream_idle_timeout_seconds,
        )
        response = await session.post(url, data=body, headers=dict(headers), timeout=timeout)
        return AiohttpUpstreamResponse(response)


async def fetch_models(access_token: str, account_id: str) -> list[str]:
    """Best-effort model catalog lookup; failures are logged and yield an empty list."""
    settings = get_settings()
    url = f"{settings.upstream_base_url.rstrip('/')}/codex/models"
    headers = {
        "Authorization": f"Bearer {access_token}",
        "chatgpt-account-id": account_id,
        "accept": "application/json",
    }
    timeout = aiohttp.ClientTimeout(total=settings.models_prefetch_timeout_seconds)
    try:
        async with get_http_client().retry_client.get(url, headers=headers, timeout=timeout) as resp:
            if resp.status >= 400:
                logger.debug("models_prefetch_failed status=%s", resp.status)
                return []
            data = await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError):
        logger.debug("models_prefetch_failed", exc_info=True)
        return []
    models = data.get("models") if isinstance(data, dict) else None
    if not isinstance(models, list):
        return []
    slugs: list[str] = []
    for entry in models:
        if isinstance(entry, dict):
            slug = entry.get("slug") or entry.get("id")
            if isinstance(slug, str) and slug:
                slugs.append(slug)
        elif isinstance(entry, str) and entry:
            slugs.append(entry)
    return slugs
