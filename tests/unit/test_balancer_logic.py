from __future__ import annotations

import pytest

from codex_pool.core.balancer import (
    GLOBAL_SCOPE,
    ManagedAccount,
    SelectionCursor,
    is_available,
    mark_rate_limited,
    mark_refresh_failed,
    prune_expired_rate_limits,
    rate_limit_wait,
    select_account,
)

pytestmark = pytest.mark.unit

NOW = 1_700_000_000.0


def _accounts(count: int) -> list[ManagedAccount]:
    return [ManagedAccount(index=i, refresh_token=f"rt-{i}", email=f"user{i}@example.com") for i in range(count)]


def test_sticky_keeps_active_account():
    accounts = _accounts(3)
    result = select_account(accounts, "sticky", SelectionCursor(active_index=1), now=NOW)
    assert result.account is accounts[1]
    assert result.cursor == SelectionCursor(active_index=1)


def test_sticky_without_active_picks_lowest_index():
    accounts = _accounts(3)
    mark_rate_limited(accounts[0], 60, now=NOW)
    result = select_account(accounts, "sticky", SelectionCursor(), now=NOW)
    assert result.account is accounts[1]
    assert result.cursor.active_index == 1


def test_sticky_moves_off_rate_limited_active_account():
    accounts = _accounts(3)
    mark_rate_limited(accounts[1], 60, now=NOW)
    result = select_account(accounts, "sticky", SelectionCursor(active_index=1), now=NOW)
    assert result.account is accounts[0]
    assert result.cursor.active_index == 0


def test_round_robin_cycles_in_pool_order():
    accounts = _accounts(3)
    cursor = SelectionCursor()
    seen = []
    for _ in range(4):
        result = select_account(accounts, "round-robin", cursor, now=NOW)
        assert result.account is not None
        seen.append(result.account.index)
        cursor = result.cursor
    assert seen == [0, 1, 2, 0]


def test_round_robin_skips_unavailable_accounts():
    accounts = _accounts(3)
    mark_rate_limited(accounts[1], 60, now=NOW)
    cursor = SelectionCursor()
    seen = []
    for _ in range(3):
        result = select_account(accounts, "round-robin", cursor, now=NOW)
        assert result.account is not None
        seen.append(result.account.index)
        cursor = result.cursor
    assert seen == [0, 2, 0]


def test_hybrid_sticks_for_existing_sessions_and_rotates_new_ones():
    accounts = _accounts(3)
    first = select_account(accounts, "hybrid", SelectionCursor(), now=NOW, new_session=True)
    assert first.account is accounts[0]

    same = select_account(accounts, "hybrid", first.cursor, now=NOW)
    assert same.account is accounts[0]
    assert same.cursor == first.cursor

    second = select_account(accounts, "hybrid", first.cursor, now=NOW, new_session=True)
    assert second.account is accounts[1]
    assert second.cursor.active_index == 1


def test_exclude_is_honored_by_every_strategy():
    accounts = _accounts(2)
    for strategy in ("sticky", "round-robin", "hybrid"):
        result = select_account(accounts, strategy, SelectionCursor(active_index=0), exclude={0}, now=NOW)
        assert result.account is accounts[1]


def test_model_scoped_limit_only_blocks_that_model():
    account = _accounts(1)[0]
    mark_rate_limited(account, 120, model="gpt-5-codex", now=NOW)

    assert not is_available(account, "gpt-5-codex", NOW)
    assert is_available(account, "gpt-5", NOW)
    assert is_available(account, None, NOW)


def test_global_limit_blocks_every_model():
    account = _accounts(1)[0]
    mark_rate_limited(account, 120, now=NOW)

    assert account.rate_limit_resets == {GLOBAL_SCOPE: NOW + 120}
    assert not is_available(account, "gpt-5", NOW)
    assert rate_limit_wait(account, "gpt-5", NOW) == pytest.approx(120)


def test_rate_limit_expires():
    account = _accounts(1)[0]
    mark_rate_limited(account, 30, now=NOW)
    assert is_available(account, None, NOW + 31)

    prune_expired_rate_limits(account, NOW + 31)
    assert account.rate_limit_resets == {}


def test_refresh_failure_makes_account_unavailable():
    account = _accounts(1)[0]
    mark_refresh_failed(account, "invalid_grant")
    assert account.last_refresh_failure_reason == "invalid_grant"
    assert not is_available(account, None, NOW)


def test_no_accounts_reason():
    result = select_account([], "sticky", SelectionCursor(), now=NOW)
    assert result.account is None
    assert result.reason_code == "no_accounts"
    assert result.error_message == "No available OpenAI accounts"


def test_rate_limited_reason_reports_shortest_wait():
    accounts = _accounts(2)
    mark_rate_limited(accounts[0], 300, now=NOW)
    mark_rate_limited(accounts[1], 90, now=NOW)
    result = select_account(accounts, "sticky", SelectionCursor(active_index=0), now=NOW)
    assert result.account is None
    assert result.reason_code == "rate_limited"
    assert result.error_message == "Rate limit exceeded. Try again in 90s"
    assert result.cursor == SelectionCursor(active_index=0)


def test_auth_reason_when_all_need_reauthentication():
    accounts = _accounts(2)
    for account in accounts:
        mark_refresh_failed(account, "expired")
    result = select_account(accounts, "round-robin", SelectionCursor(), now=NOW)
    assert result.reason_code == "auth"


def test_all_excluded_reason():
    accounts = _accounts(2)
    result = select_account(accounts, "sticky", SelectionCursor(), exclude={0, 1}, now=NOW)
    assert result.account is None
    assert result.reason_code == "no_available"


def test_label_falls_back_to_position():
    account = ManagedAccount(index=2, refresh_token="rt")
    assert account.label == "Account 3"
