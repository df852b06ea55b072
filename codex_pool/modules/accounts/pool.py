from __future__ import annotations

import asyncio
import logging
import math
import os
import time
from collections.abc import Collection
from pathlib import Path
from typing import Mapping

import anyio
from cryptography.fernet import InvalidToken

from codex_pool.core.auth import resolve_claims
from codex_pool.core.auth.refresh import TokenRefreshResult
from codex_pool.core.balancer import (
    ManagedAccount,
    SelectionCursor,
    SelectionResult,
    is_available,
    mark_rate_limited,
    mark_refresh_failed,
    prune_expired_rate_limits,
    select_account,
)
from codex_pool.core.config.settings import SelectionStrategy, get_settings
from codex_pool.core.crypto import TokenEncryptor
from codex_pool.core.metrics import get_metrics
from codex_pool.core.types import JsonObject, JsonValue
from codex_pool.core.usage import usage_from_headers
from codex_pool.core.utils.files import read_json_file, write_json_atomic

logger = logging.getLogger(__name__)

POOL_FILE_VERSION = 1
_UNREADABLE_CREDENTIAL = "Stored credential could not be decrypted"


class AccountPool:
    """Ordered, disk-backed collection of managed accounts.

    Accounts are only appended; ``index`` is the position in the pool and is never reused.
    Selection state (the sticky account and the rotation cursor) is persisted alongside the
    accounts so that several processes sharing one file spread new sessions.
    """

    def __init__(
        self,
        path: Path | None = None,
        *,
        strategy: SelectionStrategy | None = None,
        encryptor: TokenEncryptor | None = None,
        pid_offset_enabled: bool | None = None,
    ) -> None:
        settings = get_settings()
        self._path = path or settings.accounts_file
        self._strategy: SelectionStrategy = strategy or settings.strategy
        self._encryptor = encryptor or TokenEncryptor()
        self._pid_offset_enabled = (
            settings.pid_offset_enabled if pid_offset_enabled is None else pid_offset_enabled
        )
        self._pid_offset_applied = False
        self._accounts: list[ManagedAccount] = []
        self._cursor = SelectionCursor()
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def strategy(self) -> SelectionStrategy:
        return self._strategy

    @property
    def cursor(self) -> SelectionCursor:
        return self._cursor

    @property
    def accounts(self) -> tuple[ManagedAccount, ...]:
        return tuple(self._accounts)

    def __len__(self) -> int:
        return len(self._accounts)

    def get(self, index: int) -> ManagedAccount | None:
        if 0 <= index < len(self._accounts):
            return self._accounts[index]
        return None

    @property
    def active_account(self) -> ManagedAccount | None:
        if self._cursor.active_index is None:
            return None
        return self.get(self._cursor.active_index)

    def load(self) -> None:
        """Load the pool from disk; a missing or malformed file leaves the pool empty."""
        if not self._path.exists():
            return
        try:
            data = read_json_file(self._path)
        except (OSError, ValueError):
            logger.warning("account_pool_load_failed path=%s", self._path, exc_info=True)
            return
        if not isinstance(data, dict) or data.get("version") != POOL_FILE_VERSION:
            logger.warning("account_pool_load_skipped path=%s reason=unknown_format", self._path)
            return
        raw_accounts = data.get("accounts")
        if not isinstance(raw_accounts, list):
            return
        # Malformed entries become unusable placeholders; later indexes must not shift.
        accounts: list[ManagedAccount] = []
        for position, raw in enumerate(raw_accounts):
            if not isinstance(raw, dict):
                logger.warning("account_entry_malformed index=%s", position)
                raw = {}
            accounts.append(self._account_from_json(raw, index=position))
        self._accounts = accounts
        active = data.get("active_index")
        rotation = data.get("rotation_cursor")
        self._cursor = SelectionCursor(
            active_index=active if isinstance(active, int) and self.get(active) is not None else None,
            rotation=rotation if isinstance(rotation, int) and rotation >= 0 else 0,
        )
        logger.info("account_pool_loaded path=%s accounts=%s strategy=%s", self._path, len(accounts), self._strategy)

    async def add_account(
        self,
        label: str | None,
        refresh_token: str,
        access_token: str | None = None,
        expires_at: float | None = None,
        *,
        account_id: str | None = None,
        plan_type: str | None = None,
        id_token: str | None = None,
    ) -> int:
        claims = resolve_claims(id_token=id_token, access_token=access_token, account_id=account_id)
        email = label or claims.email
        if expires_at is None:
            expires_at = claims.expires_at
        async with self._lock:
            existing = self._find_existing(refresh_token, claims.account_id, email)
            if existing is not None:
                existing.refresh_token = refresh_token
                existing.access_token = access_token
                existing.expires_at = expires_at
                existing.account_id = claims.account_id or existing.account_id
                existing.email = email or existing.email
                existing.plan_type = plan_type or claims.plan_type or existing.plan_type
                existing.last_refresh_failure_reason = None
                logger.info("account_merged index=%s label=%s", existing.index, existing.label)
                index = existing.index
            else:
                account = ManagedAccount(
                    index=len(self._accounts),
                    refresh_token=refresh_token,
                    access_token=access_token,
                    expires_at=expires_at,
                    email=email,
                    plan_type=plan_type or claims.plan_type,
                    account_id=claims.account_id,
                    added_at=time.time(),
                )
                self._accounts.append(account)
                logger.info("account_added index=%s label=%s", account.index, account.label)
                index = account.index
        await self.save()
        return index

    async def select(
        self,
        *,
        model: str | None = None,
        exclude: Collection[int] = (),
        new_session: bool = False,
    ) -> SelectionResult:
        async with self._lock:
            cursor = self._apply_pid_offset(self._cursor)
            result = select_account(
                self._accounts,
                self._strategy,
                cursor,
                model=model,
                exclude=exclude,
                new_session=new_session,
            )
            changed = result.cursor != self._cursor
            self._cursor = result.cursor
        get_metrics().observe_select(
            strategy=self._strategy,
            outcome="selected" if result.account is not None else (result.reason_code or "none"),
        )
        if changed:
            await self.save()
        return result

    async def mark_rate_limited(self, account: ManagedAccount, seconds: float, model: str | None = None) -> float:
        async with self._lock:
            reset_at = mark_rate_limited(account, seconds, model)
        logger.warning(
            "pool_mark event=rate_limit account=%s[%s] model=%s seconds=%.0f",
            account.index,
            account.label,
            model or "*",
            seconds,
        )
        get_metrics().observe_mark(event="rate_limit", account_index=account.index)
        await self.save()
        return reset_at

    async def mark_refresh_failed(self, account: ManagedAccount, reason: str) -> None:
        async with self._lock:
            mark_refresh_failed(account, reason)
        logger.warning("pool_mark event=refresh_failed account=%s[%s] reason=%s", account.index, account.label, reason)
        get_metrics().observe_mark(event="refresh_failed", account_index=account.index)
        await self.save()

    async def apply_refresh(self, account: ManagedAccount, result: TokenRefreshResult) -> None:
        async with self._lock:
            account.access_token = result.access_token
            account.refresh_token = result.refresh_token
            account.expires_at = result.expires_at
            account.account_id = result.account_id or account.account_id
            account.plan_type = result.plan_type or account.plan_type
            account.email = account.email or result.email
            account.last_refresh_failure_reason = None
        get_metrics().observe_mark(event="refreshed", account_index=account.index)
        await self.save()

    def record_usage(self, account: ManagedAccount, headers: Mapping[str, str]) -> None:
        now = time.time()
        account.last_used_at = now
        snapshot = usage_from_headers(headers, now)
        if snapshot is not None:
            account.usage = snapshot

    def availability_counts(self, model: str | None = None) -> tuple[int, int]:
        available = sum(1 for account in self._accounts if is_available(account, model))
        return available, len(self._accounts) - available

    async def save(self) -> bool:
        async with self._lock:
            payload = self._to_json()
        try:
            await anyio.to_thread.run_sync(write_json_atomic, self._path, payload)
        except OSError:
            logger.error("account_pool_save_failed path=%s", self._path, exc_info=True)
            get_metrics().observe_persistence_failure(store="accounts")
            return False
        return True

    def _apply_pid_offset(self, cursor: SelectionCursor) -> SelectionCursor:
        if not self._pid_offset_enabled or self._pid_offset_applied or not self._accounts:
            return cursor
        self._pid_offset_applied = True
        offset = os.getpid() % len(self._accounts)
        return SelectionCursor(active_index=cursor.active_index, rotation=cursor.rotation + offset)

    def _find_existing(self, refresh_token: str, account_id: str | None, email: str | None) -> ManagedAccount | None:
        for account in self._accounts:
            if account.refresh_token == refresh_token:
                return account
        if account_id and email:
            for account in self._accounts:
                if account.account_id == account_id and account.email == email:
                    return account
        return None

    def _to_json(self) -> JsonObject:
        accounts: list[JsonValue] = []
        for account in self._accounts:
            prune_expired_rate_limits(account)
            accounts.append(
                {
                    "index": account.index,
                    "email": account.email,
                    "plan_type": account.plan_type,
                    "account_id": account.account_id,
                    "refresh_token": self._encryptor.encrypt(account.refresh_token),
                    "access_token": self._encryptor.encrypt(account.access_token) if account.access_token else None,
                    "expires_at": account.expires_at,
                    "rate_limit_resets": dict(account.rate_limit_resets),
                    "last_refresh_failure_reason": account.last_refresh_failure_reason,
                    "added_at": account.added_at,
                    "last_used_at": account.last_used_at,
                }
            )
        return {
            "version": POOL_FILE_VERSION,
            "active_index": self._cursor.active_index,
            "rotation_cursor": self._cursor.rotation,
            "accounts": accounts,
        }

    def _account_from_json(self, raw: JsonObject, *, index: int) -> ManagedAccount:
        failure = raw.get("last_refresh_failure_reason")
        refresh_token = self._decrypt(raw.get("refresh_token"))
        access_token = self._decrypt(raw.get("access_token"))
        if refresh_token is None:
            logger.warning("account_credential_unreadable index=%s", index)
            failure = _UNREADABLE_CREDENTIAL
        resets = raw.get("rate_limit_resets")
        return ManagedAccount(
            index=index,
            refresh_token=refresh_token or "",
            access_token=access_token,
            expires_at=_optional_float(raw.get("expires_at")),
            email=_optional_str(raw.get("email")),
            plan_type=_optional_str(raw.get("plan_type")),
            account_id=_optional_str(raw.get("account_id")),
            rate_limit_resets=(
                {str(scope): float(value) for scope, value in resets.items() if _optional_float(value) is not None}
                if isinstance(resets, dict)
                else {}
            ),
            last_refresh_failure_reason=failure if isinstance(failure, str) else None,
            added_at=_optional_float(raw.get("added_at")) or 0.0,
            last_used_at=_optional_float(raw.get("last_used_at")),
        )

    def _decrypt(self, value: JsonValue) -> str | None:
        if not isinstance(value, str) or not value:
            return None
        try:
            return self._encryptor.decrypt(value)
        except (InvalidToken, ValueError):
            return None


def _optional_str(value: JsonValue) -> str | None:
    return value if isinstance(value, str) and value else None


def _optional_float(value: JsonValue) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    return None
