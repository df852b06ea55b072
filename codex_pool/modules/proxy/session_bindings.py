from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import anyio

from codex_pool.core.balancer import ManagedAccount
from codex_pool.core.config.settings import get_settings
from codex_pool.core.metrics import get_metrics
from codex_pool.core.utils.files import read_json_file, write_json_atomic
from codex_pool.modules.accounts.pool import AccountPool

logger = logging.getLogger(__name__)

BINDINGS_FILE_VERSION = 1


class SessionBindingStore:
    """Durable session key -> account index affinity.

    Failover inside one request never rewrites a binding; a binding is only replaced when
    its account index no longer exists, or explicitly through ``rebind``.
    """

    def __init__(self, pool: AccountPool, path: Path | None = None) -> None:
        self._pool = pool
        self._path = path or get_settings().session_bindings_file
        self._bindings: dict[str, int] = {}
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def __len__(self) -> int:
        return len(self._bindings)

    def get(self, session_key: str) -> int | None:
        return self._bindings.get(session_key)

    def load(self) -> None:
        self._bindings = {}
        if not self._path.exists():
            return
        try:
            data = read_json_file(self._path)
        except (OSError, ValueError):
            logger.warning("session_bindings_load_failed path=%s", self._path, exc_info=True)
            return
        if not isinstance(data, dict) or data.get("version") != BINDINGS_FILE_VERSION:
            logger.warning("session_bindings_load_skipped path=%s reason=unknown_format", self._path)
            return
        raw = data.get("bindings")
        if not isinstance(raw, dict):
            return
        for key, value in raw.items():
            if not key or isinstance(value, bool) or not isinstance(value, int) or value < 0:
                continue
            self._bindings[key] = value

    async def set(self, session_key: str, index: int) -> None:
        async with self._lock:
            self._bindings[session_key] = index
        await self._save()

    async def delete(self, session_key: str) -> None:
        async with self._lock:
            if self._bindings.pop(session_key, None) is None:
                return
        await self._save()

    async def rebind(self, session_key: str, index: int) -> None:
        await self.set(session_key, index)

    async def resolve(self, session_key: str | None = None, model: str | None = None) -> ManagedAccount | None:
        if not session_key:
            return (await self._pool.select(model=model)).account

        bound_index = self._bindings.get(session_key)
        if bound_index is not None:
            bound = self._pool.get(bound_index)
            if bound is not None:
                return bound
            logger.info("session_binding_stale key=%s index=%s", _key_hint(session_key), bound_index)
            await self.delete(session_key)

        selection = await self._pool.select(model=model, new_session=True)
        if selection.account is None:
            return None
        await self.set(session_key, selection.account.index)
        return selection.account

    async def _save(self) -> None:
        async with self._lock:
            payload = {"version": BINDINGS_FILE_VERSION, "bindings": dict(self._bindings)}
        try:
            await anyio.to_thread.run_sync(write_json_atomic, self._path, payload)
        except OSError:
            logger.error("session_bindings_save_failed path=%s", self._path, exc_info=True)
            get_metrics().observe_persistence_failure(store="session_bindings")


def _key_hint(session_key: str) -> str:
    if len(session_key) <= 8:
        return session_key
    return f"{session_key[:8]}..."
