from __future__ import annotations

import logging
import math
import time

from codex_pool.core.balancer import ManagedAccount
from codex_pool.core.config.settings import get_settings

logger = logging.getLogger(__name__)


def _plan_suffix(account: ManagedAccount) -> str:
    return f" [{account.plan_type}]" if account.plan_type else ""


def format_retry_in(seconds: float) -> str:
    minutes = max(1, math.ceil(seconds / 60.0))
    if minutes >= 60:
        return f"{math.ceil(minutes / 60)}h"
    return f"{minutes}m"


class AccountNotifier:
    """Operator-facing account notices.

    Debounce state lives on the instance, so independent services (and tests) never
    suppress each other's notices.
    """

    def __init__(self, *, quiet: bool | None = None, debounce_seconds: float | None = None) -> None:
        settings = get_settings()
        self._quiet = settings.quiet_mode if quiet is None else quiet
        self._debounce_seconds = settings.notify_debounce_seconds if debounce_seconds is None else debounce_seconds
        self._last_use_index: int | None = None
        self._last_use_at = 0.0
        self._notified_fallbacks: set[tuple[str, str]] = set()

    def _emit(self, message: str, *, warning: bool = False) -> str | None:
        if self._quiet:
            return None
        logger.log(logging.WARNING if warning else logging.INFO, "notice message=%r", message)
        return message

    def rate_limited(self, account: ManagedAccount, seconds: float) -> str | None:
        return self._emit(f"{account.label} rate limited. Retry in {format_retry_in(seconds)}.", warning=True)

    def account_switch(self, from_account: ManagedAccount, to_account: ManagedAccount) -> str | None:
        return self._emit(f"Switching {from_account.label} -> {to_account.label}{_plan_suffix(to_account)}")

    def account_use(self, account: ManagedAccount, total_accounts: int, now: float | None = None) -> str | None:
        if self._quiet or total_accounts <= 1:
            return None
        current = now if now is not None else time.monotonic()
        if self._last_use_index == account.index and current - self._last_use_at < self._debounce_seconds:
            return None
        self._last_use_index = account.index
        self._last_use_at = current
        return self._emit(f"Using {account.label}{_plan_suffix(account)} ({account.index + 1}/{total_accounts})")

    def model_retry(
        self,
        model: str,
        failed: ManagedAccount,
        next_account: ManagedAccount,
        tried_count: int,
        total_accounts: int,
    ) -> str | None:
        return self._emit(
            f"{model} not on {failed.label}, trying {next_account.label}{_plan_suffix(next_account)} "
            f"({tried_count}/{total_accounts})"
        )

    def model_fallback(self, model: str, fallback: str) -> str | None:
        key = (model, fallback)
        if self._quiet or key in self._notified_fallbacks:
            return None
        self._notified_fallbacks.add(key)
        return self._emit(f"{model} not available yet. Using {fallback} instead.", warning=True)
