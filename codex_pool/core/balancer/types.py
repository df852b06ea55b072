from __future__ import annotations

from dataclasses import dataclass, field

GLOBAL_SCOPE = "*"


@dataclass(frozen=True, slots=True)
class UsageWindow:
    used_percent: float
    window_minutes: int | None = None
    reset_at: float | None = None


@dataclass(frozen=True, slots=True)
class UsageSnapshot:
    primary: UsageWindow | None
    secondary: UsageWindow | None
    observed_at: float


@dataclass
class ManagedAccount:
    index: int
    refresh_token: str
    access_token: str | None = None
    expires_at: float | None = None
    email: str | None = None
    plan_type: str | None = None
    account_id: str | None = None
    # Scope ("*" or a model name) -> epoch seconds when the cool-down ends.
    rate_limit_resets: dict[str, float] = field(default_factory=dict)
    last_refresh_failure_reason: str | None = None
    added_at: float = 0.0
    last_used_at: float | None = None
    usage: UsageSnapshot | None = None

    @property
    def label(self) -> str:
        return self.email or f"Account {self.index + 1}"
