from codex_pool.core.balancer.logic import (
    SelectionCursor,
    SelectionResult,
    is_available,
    mark_rate_limited,
    mark_refresh_failed,
    prune_expired_rate_limits,
    rate_limit_wait,
    select_account,
)
from codex_pool.core.balancer.types import GLOBAL_SCOPE, ManagedAccount, UsageSnapshot, UsageWindow

__all__ = [
    "GLOBAL_SCOPE",
    "ManagedAccount",
    "SelectionCursor",
    "SelectionResult",
    "UsageSnapshot",
    "UsageWindow",
    "is_available",
    "mark_rate_limited",
    "mark_refresh_failed",
    "prune_expired_rate_limits",
    "rate_limit_wait",
    "select_account",
]
