from __future__ import annotations

from datetime import datetime, timezone

# Reset timestamps above this are treated as epoch milliseconds.
_EPOCH_MILLIS_THRESHOLD = 1e12


def coerce_epoch_seconds(value: object) -> float | None:
    """Normalize a reset-time value (epoch seconds, epoch millis or ISO-8601) to epoch seconds."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        if number <= 0:
            return None
        return number / 1000.0 if number > _EPOCH_MILLIS_THRESHOLD else number
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            return coerce_epoch_seconds(float(stripped))
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(stripped.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    return None


def format_duration(seconds: float) -> str:
    total = max(0, int(round(seconds)))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m"
    return f"{secs}s"
