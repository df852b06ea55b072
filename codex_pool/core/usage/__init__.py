from __future__ import annotations

from typing import Mapping

from codex_pool.core.balancer.types import UsageSnapshot, UsageWindow

DEFAULT_WINDOW_MINUTES_PRIMARY = 300
DEFAULT_WINDOW_MINUTES_SECONDARY = 10080


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    if value is None:
        return None
    value = value.strip()
    return value or None


def _float_header(headers: Mapping[str, str], name: str) -> float | None:
    value = _header(headers, name)
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _window_from_headers(headers: Mapping[str, str], window: str, now: float) -> UsageWindow | None:
    used_percent = _float_header(headers, f"x-codex-{window}-used-percent")
    if used_percent is None:
        return None
    window_minutes = _float_header(headers, f"x-codex-{window}-window-minutes")
    reset_at = _float_header(headers, f"x-codex-{window}-reset-at")
    if reset_at is None:
        reset_after = _float_header(headers, f"x-codex-{window}-reset-after-seconds")
        if reset_after is not None:
            reset_at = now + reset_after
    return UsageWindow(
        used_percent=used_percent,
        window_minutes=int(window_minutes) if window_minutes is not None else None,
        reset_at=reset_at,
    )


def usage_from_headers(headers: Mapping[str, str], now: float) -> UsageSnapshot | None:
    primary = _window_from_headers(headers, "primary", now)
    secondary = _window_from_headers(headers, "secondary", now)
    if primary is None and secondary is None:
        return None
    return UsageSnapshot(primary=primary, secondary=secondary, observed_at=now)
