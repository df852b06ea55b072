from __future__ import annotations

import time
from collections.abc import Sequence

from codex_pool.core.balancer import GLOBAL_SCOPE, ManagedAccount, UsageWindow
from codex_pool.core.usage import DEFAULT_WINDOW_MINUTES_PRIMARY, DEFAULT_WINDOW_MINUTES_SECONDARY
from codex_pool.core.utils.time import format_duration

STATUS_TITLE = "OpenAI Codex Status"


def render_status(accounts: Sequence[ManagedAccount], active_index: int | None, now: float | None = None) -> str:
    """Plain-text report of every account; reads pool state only."""
    current = now if now is not None else time.time()
    if not accounts:
        return "\n".join(
            [
                STATUS_TITLE,
                "",
                "  Accounts: 0",
                "",
                "Add accounts:",
                "  codex-pool import-auth --path ~/.codex/auth.json",
            ]
        ) + "\n"

    resolved_active = active_index if active_index is not None else 0
    lines = [STATUS_TITLE, ""]
    for account in accounts:
        state = "ACTIVE" if account.index == resolved_active else "READY"
        plan = account.plan_type or "Unknown"
        lines.append(f"{account.index + 1}. {state} {account.label} [{plan}]")
        lines.extend(_account_lines(account, current))
        lines.append("")
    return "\n".join(lines).rstrip("\n") + "\n"


def _account_lines(account: ManagedAccount, now: float) -> list[str]:
    lines: list[str] = []
    if account.last_refresh_failure_reason:
        lines.append(f"   Needs re-authentication: {account.last_refresh_failure_reason}")
    for scope, reset_at in sorted(account.rate_limit_resets.items()):
        if reset_at <= now:
            continue
        label = "all models" if scope == GLOBAL_SCOPE else scope
        lines.append(f"   Rate limited ({label}) for {format_duration(reset_at - now)}")
    usage = account.usage
    if usage is not None:
        if usage.primary is not None:
            lines.append(_window_line("Primary", usage.primary, DEFAULT_WINDOW_MINUTES_PRIMARY, now))
        if usage.secondary is not None:
            lines.append(_window_line("Weekly", usage.secondary, DEFAULT_WINDOW_MINUTES_SECONDARY, now))
    elif not lines:
        lines.append("   Usage: no data yet")
    return lines


def _window_line(name: str, window: UsageWindow, default_minutes: int, now: float) -> str:
    minutes = window.window_minutes or default_minutes
    line = f"   {name}: {window.used_percent:.0f}% used ({minutes}m window)"
    if window.reset_at is not None and window.reset_at > now:
        line += f", resets in {format_duration(window.reset_at - now)}"
    return line
