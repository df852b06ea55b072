from __future__ import annotations

import asyncio
import logging
import time

from codex_pool.core.auth.refresh import RefreshError, refresh_access_token
from codex_pool.core.balancer import ManagedAccount
from codex_pool.core.config.settings import get_settings
from codex_pool.modules.accounts.credential_store import CredentialStore
from codex_pool.modules.accounts.pool import AccountPool

logger = logging.getLogger(__name__)


class AuthManager:
    def __init__(self, pool: AccountPool, credential_store: CredentialStore | None = None) -> None:
        self._pool = pool
        self._credential_store = credential_store
        self._skew_seconds = get_settings().token_expiry_skew_seconds
        self._locks: dict[int, asyncio.Lock] = {}

    def is_fresh(self, account: ManagedAccount, now: float | None = None) -> bool:
        if not account.access_token or account.expires_at is None:
            return False
        current = now if now is not None else time.time()
        return account.expires_at - self._skew_seconds > current

    async def ensure_valid(self, account: ManagedAccount) -> bool:
        if self.is_fresh(account):
            return True
        lock = self._locks.setdefault(account.index, asyncio.Lock())
        async with lock:
            # Another request may have refreshed while we waited.
            if self.is_fresh(account):
                return True
            return await self._refresh(account)

    async def _refresh(self, account: ManagedAccount) -> bool:
        if not account.refresh_token:
            await self._pool.mark_refresh_failed(account, "Missing refresh token")
            return False
        try:
            result = await refresh_access_token(account.refresh_token)
        except RefreshError as exc:
            logger.warning(
                "token_refresh_failed account=%s[%s] code=%s permanent=%s",
                account.index,
                account.label,
                exc.code,
                exc.is_permanent,
            )
            await self._pool.mark_refresh_failed(account, exc.message)
            return False

        await self._pool.apply_refresh(account, result)
        logger.info("token_refreshed account=%s[%s]", account.index, account.label)
        if self._credential_store is not None:
            await self._credential_store.save(account, result.id_token)
        return True
