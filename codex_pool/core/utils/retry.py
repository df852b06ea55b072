from __future__ import annotations

import math
import re
from email.utils import parsedate_to_datetime
from typing import Mapping

from codex_pool.core.errors import UpstreamErrorShape
from codex_pool.core.utils.time import coerce_epoch_seconds

_RETRY_IN_RE = re.compile(r"try again in\s*(\d+(?:\.\d+)?)\s*(ms|s|seconds?|m|minutes?)\b", re.IGNORECASE)


def parse_retry_after_header(value: str | None, now: float) -> float | None:
    if not value:
        return None
    stripped = value.strip()
    try:
        seconds = float(stripped)
    except ValueError:
        seconds = None
    if seconds is not None:
        if not math.isfinite(seconds):
            return None
        return max(0.0, seconds)
    try:
        retry_at = parsedate_to_datetime(stripped)
    except (TypeError, ValueError):
        return None
    return max(0.0, retry_at.timestamp() - now)


def parse_retry_after(message: str) -> float | None:
    match = _RETRY_IN_RE.search(message)
    if match is None:
        return None
    amount = float(match.group(1))
    unit = match.group(2).lower()
    if unit == "ms":
        return amount / 1000.0
    if unit.startswith("m"):
        return amount * 60.0
    return amount


def rate_limit_cooldown_seconds(
    headers: Mapping[str, str],
    error: UpstreamErrorShape,
    *,
    now: float,
    fallback_seconds: float,
) -> float:
    """Cool-down for a 429: Retry-After header, then body reset hints, then the fallback."""
    delay = parse_retry_after_header(headers.get("retry-after") or headers.get("Retry-After"), now)
    if delay is not None:
        return delay
    reset_at = coerce_epoch_seconds(error.resets_at)
    if reset_at is not None and reset_at > now:
        return reset_at - now
    if error.resets_in_seconds is not None and error.resets_in_seconds > 0:
        return error.resets_in_seconds
    if error.text:
        delay = parse_retry_after(error.text)
        if delay is not None and delay > 0:
            return delay
    return fallback_seconds
