from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from codex_pool.modules.accounts.auth_manager import AuthManager
from codex_pool.modules.accounts.credential_store import CodexAuthFileStore
from codex_pool.modules.accounts.pool import AccountPool
from codex_pool.modules.proxy.service import ProxyService
from codex_pool.modules.proxy.session_bindings import SessionBindingStore


@dataclass(slots=True)
class ProxyContext:
    service: ProxyService


@dataclass(slots=True)
class StatusContext:
    pool: AccountPool


def build_proxy_service(pool: AccountPool | None = None) -> ProxyService:
    """Wire the pool, binding store and token manager from settings; stores are loaded from disk."""
    if pool is None:
        pool = AccountPool()
        pool.load()
    bindings = SessionBindingStore(pool)
    bindings.load()
    auth_manager = AuthManager(pool, CodexAuthFileStore())
    return ProxyService(pool, bindings, auth_manager)


def get_proxy_service(request: Request) -> ProxyService:
    service = getattr(request.app.state, "proxy_service", None)
    if service is None:
        service = build_proxy_service()
        request.app.state.proxy_service = service
    return service


def get_proxy_context(request: Request) -> ProxyContext:
    return ProxyContext(service=get_proxy_service(request))


def get_status_context(request: Request) -> StatusContext:
    return StatusContext(pool=get_proxy_service(request).pool)
