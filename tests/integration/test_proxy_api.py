from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator, Mapping

import aiohttp
import pytest
from httpx import ASGITransport, AsyncClient

from codex_pool.core.config.settings import get_settings
from codex_pool.modules.accounts.auth_manager import AuthManager
from codex_pool.modules.accounts.pool import AccountPool
from codex_pool.modules.proxy.notifier import AccountNotifier
from codex_pool.modules.proxy.service import ProxyService
from codex_pool.modules.proxy.session_bindings import SessionBindingStore

pytestmark = pytest.mark.integration

_SSE_BODY = (
    'event: response.created\ndata: {"type":"response.created","response":{"id":"resp_1"}}\n\n'
    'event: response.done\ndata: {"type":"response.done","response":{"id":"resp_1","status":"completed"}}\n\n'
).encode("utf-8")


class _FakeUpstream:
    def __init__(self, status: int, body: bytes, headers: dict[str, str]) -> None:
        self.status = status
        self.headers = headers
        self._body = body

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        yield self._body[:20]
        yield self._body[20:]

    async def read(self) -> bytes:
        return self._body

    def release(self) -> None:
        return None


class _FakeTransport:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.urls: list[str] = []

    async def send(self, url: str, headers: Mapping[str, str], body: bytes) -> _FakeUpstream:
        self.urls.append(url)
        if self.fail:
            raise aiohttp.ClientConnectionError("connection reset")
        return _FakeUpstream(200, _SSE_BODY, {"content-type": "text/event-stream"})


async def _install_service(app, *, accounts: int = 1, fail: bool = False) -> _FakeTransport:
    pool = AccountPool()
    for i in range(accounts):
        await pool.add_account(f"user{i}@example.com", f"rt-{i}", f"at-{i}", time.time() + 3600, account_id=f"acct-{i}")
    transport = _FakeTransport(fail=fail)
    app.state.proxy_service = ProxyService(
        pool,
        SessionBindingStore(pool),
        AuthManager(pool),
        transport=transport,
        notifier=AccountNotifier(quiet=True),
        prefetch_models=False,
    )
    return transport


@pytest.mark.asyncio
async def test_responses_returns_reduced_json(app_instance, async_client):
    transport = await _install_service(app_instance)

    response = await async_client.post("/backend-api/responses", json={"model": "gpt-5", "input": "hi"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/json")
    assert response.json() == {"id": "resp_1", "status": "completed"}
    assert response.headers["x-request-id"]
    assert transport.urls == ["https://chatgpt.com/backend-api/codex/responses"]


@pytest.mark.asyncio
async def test_codex_responses_streams_events(app_instance, async_client):
    await _install_service(app_instance)

    response = await async_client.post(
        "/backend-api/codex/responses",
        json={"model": "gpt-5", "stream": True},
        headers={"x-request-id": "req-123"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.content == _SSE_BODY
    assert response.headers["x-request-id"] == "req-123"


@pytest.mark.asyncio
async def test_transport_failure_maps_to_502(app_instance, async_client):
    await _install_service(app_instance, fail=True)

    response = await async_client.post("/backend-api/responses", json={"model": "gpt-5"})

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "upstream_unavailable"


@pytest.mark.asyncio
async def test_empty_pool_returns_503(async_client):
    response = await async_client.post("/backend-api/responses", json={"model": "gpt-5"})

    assert response.status_code == 503
    body = response.json()
    assert body["error"]["code"] == "no_accounts"
    assert body["error"]["message"] == "No available OpenAI accounts"


@pytest.mark.asyncio
async def test_status_lists_accounts(app_instance, async_client):
    await _install_service(app_instance, accounts=2)

    response = await async_client.get("/api/status")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert response.text.startswith("OpenAI Codex Status")
    assert "user0@example.com" in response.text
    assert "user1@example.com" in response.text


@pytest.mark.asyncio
async def test_status_without_accounts(async_client):
    response = await async_client.get("/api/status")

    assert response.status_code == 200
    assert "Accounts: 0" in response.text


@pytest.mark.asyncio
async def test_metrics_exposes_pool_gauge(app_instance, async_client):
    await _install_service(app_instance, accounts=2)
    await async_client.post("/backend-api/responses", json={"model": "gpt-5"})

    response = await async_client.get("/metrics")

    assert response.status_code == 200
    assert 'codex_pool_accounts{state="available"} 2.0' in response.text
    assert "codex_pool_proxy_requests_total" in response.text


@pytest.mark.asyncio
async def test_lifespan_imports_codex_auth_file(app_instance, isolated_home, monkeypatch):
    (isolated_home / "codex-auth.json").write_text(
        json.dumps({"tokens": {"refresh_token": "rt-file", "access_token": "at-file", "account_id": "acct-file"}}),
        encoding="utf-8",
    )
    monkeypatch.setenv("CODEX_POOL_IMPORT_CODEX_AUTH", "true")
    get_settings.cache_clear()

    async with app_instance.router.lifespan_context(app_instance):
        async with AsyncClient(transport=ASGITransport(app=app_instance), base_url="http://testserver") as client:
            response = await client.get("/api/status")

    assert "1. ACTIVE Account 1 [Unknown]" in response.text
    assert len(app_instance.state.proxy_service.pool) == 1
