from __future__ import annotations

import time
from collections.abc import Collection, Sequence
from dataclasses import dataclass

from codex_pool.core.balancer.types import GLOBAL_SCOPE, ManagedAccount
from codex_pool.core.config.settings import SelectionStrategy


@dataclass(frozen=True, slots=True)
class SelectionCursor:
    active_index: int | None = None
    rotation: int = 0


@dataclass
class SelectionResult:
    account: ManagedAccount | None
    cursor: SelectionCursor
    error_message: str | None = None
    reason_code: str | None = None


def mark_rate_limited(
    account: ManagedAccount,
    seconds: float,
    model: str | None = None,
    now: float | None = None,
) -> float:
    current = now if now is not None else time.time()
    reset_at = current + max(0.0, seconds)
    account.rate_limit_resets[model or GLOBAL_SCOPE] = reset_at
    return reset_at


def mark_refresh_failed(account: ManagedAccount, reason: str) -> None:
    account.last_refresh_failure_reason = reason or "refresh failed"


def rate_limit_wait(account: ManagedAccount, model: str | None = None, now: float | None = None) -> float | None:
    """Seconds until the account may be used for ``model``, or None when it is not cooling down."""
    current = now if now is not None else time.time()
    scopes = [GLOBAL_SCOPE] if model is None else [GLOBAL_SCOPE, model]
    waits = [
        reset_at - current
        for scope in scopes
        if (reset_at := account.rate_limit_resets.get(scope)) is not None and reset_at > current
    ]
    return max(waits) if waits else None


def is_available(account: ManagedAccount, model: str | None = None, now: float | None = None) -> bool:
    if account.last_refresh_failure_reason is not None:
        return False
    return rate_limit_wait(account, model, now) is None


def prune_expired_rate_limits(account: ManagedAccount, now: float | None = None) -> None:
    current = now if now is not None else time.time()
    for scope, reset_at in list(account.rate_limit_resets.items()):
        if reset_at <= current:
            del account.rate_limit_resets[scope]


def select_account(
    accounts: Sequence[ManagedAccount],
    strategy: SelectionStrategy,
    cursor: SelectionCursor,
    *,
    model: str | None = None,
    exclude: Collection[int] = (),
    now: float | None = None,
    new_session: bool = False,
) -> SelectionResult:
    current = now if now is not None else time.time()
    candidates = {
        account.index: account
        for account in accounts
        if account.index not in exclude and is_available(account, model, current)
    }
    if not candidates:
        return _no_candidate(accounts, cursor, model=model, exclude=exclude, now=current)

    match strategy:
        case "round-robin":
            chosen, rotation = _rotate(accounts, candidates, cursor.rotation)
            return SelectionResult(chosen, SelectionCursor(active_index=chosen.index, rotation=rotation))
        case "hybrid":
            active = candidates.get(cursor.active_index) if cursor.active_index is not None else None
            if active is not None and not new_session:
                return SelectionResult(active, cursor)
            chosen, rotation = _rotate(accounts, candidates, cursor.rotation)
            return SelectionResult(chosen, SelectionCursor(active_index=chosen.index, rotation=rotation))
        case _:
            active = candidates.get(cursor.active_index) if cursor.active_index is not None else None
            if active is not None:
                return SelectionResult(active, cursor)
            chosen = candidates[min(candidates)]
            return SelectionResult(chosen, SelectionCursor(active_index=chosen.index, rotation=cursor.rotation))


def _rotate(
    accounts: Sequence[ManagedAccount],
    candidates: dict[int, ManagedAccount],
    rotation: int,
) -> tuple[ManagedAccount, int]:
    total = len(accounts)
    start = rotation % total
    for step in range(total):
        position = (start + step) % total
        account = accounts[position]
        if account.index in candidates:
            return account, (position + 1) % total
    # Unreachable while candidates is a non-empty subset of accounts.
    first = candidates[min(candidates)]
    return first, rotation


def _no_candidate(
    accounts: Sequence[ManagedAccount],
    cursor: SelectionCursor,
    *,
    model: str | None,
    exclude: Collection[int],
    now: float,
) -> SelectionResult:
    if not accounts:
        return SelectionResult(None, cursor, "No available OpenAI accounts", "no_accounts")
    remaining = [account for account in accounts if account.index not in exclude]
    if not remaining:
        return SelectionResult(None, cursor, "All accounts were already tried", "no_available")
    waits = [wait for account in remaining if (wait := rate_limit_wait(account, model, now)) is not None]
    refresh_failed = [account for account in remaining if account.last_refresh_failure_reason is not None]
    if waits and len(waits) + len(refresh_failed) >= len(remaining):
        return SelectionResult(None, cursor, f"Rate limit exceeded. Try again in {min(waits):.0f}s", "rate_limited")
    if refresh_failed and len(refresh_failed) == len(remaining):
        return SelectionResult(None, cursor, "All accounts require re-authentication", "auth")
    return SelectionResult(None, cursor, "No available OpenAI accounts", "no_available")
