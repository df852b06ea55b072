from __future__ import annotations

import json

import pytest
from cryptography.fernet import Fernet

from codex_pool.core.crypto import TokenEncryptor
from codex_pool.modules.accounts.pool import AccountPool
from codex_pool.modules.proxy.session_bindings import BINDINGS_FILE_VERSION, SessionBindingStore

pytestmark = pytest.mark.unit


async def _pool(tmp_path, count: int, strategy: str = "round-robin") -> AccountPool:
    pool = AccountPool(
        tmp_path / "accounts.json",
        strategy=strategy,
        encryptor=TokenEncryptor(key=Fernet.generate_key()),
    )
    for i in range(count):
        await pool.add_account(f"user{i}@example.com", f"rt-{i}", f"at-{i}", account_id=f"acct-{i}")
    return pool


async def test_set_and_load_round_trip(tmp_path):
    pool = await _pool(tmp_path, 2)
    path = tmp_path / "bindings.json"
    store = SessionBindingStore(pool, path)

    await store.set("session-a", 1)
    await store.set("session-b", 0)

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw == {"version": BINDINGS_FILE_VERSION, "bindings": {"session-a": 1, "session-b": 0}}

    reloaded = SessionBindingStore(pool, path)
    reloaded.load()
    assert reloaded.get("session-a") == 1
    assert len(reloaded) == 2


async def test_delete_is_persisted(tmp_path):
    pool = await _pool(tmp_path, 1)
    path = tmp_path / "bindings.json"
    store = SessionBindingStore(pool, path)
    await store.set("session-a", 0)

    await store.delete("session-a")
    await store.delete("never-bound")

    reloaded = SessionBindingStore(pool, path)
    reloaded.load()
    assert reloaded.get("session-a") is None


def test_malformed_file_loads_empty(tmp_path):
    path = tmp_path / "bindings.json"
    path.write_text("[1, 2", encoding="utf-8")
    store = SessionBindingStore(AccountPool(tmp_path / "accounts.json"), path)

    store.load()

    assert len(store) == 0


def test_load_skips_invalid_entries(tmp_path):
    path = tmp_path / "bindings.json"
    path.write_text(
        json.dumps(
            {
                "version": BINDINGS_FILE_VERSION,
                "bindings": {"good": 2, "negative": -1, "text": "1", "flag": True, "": 0},
            }
        ),
        encoding="utf-8",
    )
    store = SessionBindingStore(AccountPool(tmp_path / "accounts.json"), path)

    store.load()

    assert store.get("good") == 2
    assert len(store) == 1


async def test_resolve_binds_new_session_and_reuses_it(tmp_path):
    pool = await _pool(tmp_path, 3)
    store = SessionBindingStore(pool, tmp_path / "bindings.json")

    first = await store.resolve("session-a")
    again = await store.resolve("session-a")
    other = await store.resolve("session-b")

    assert first is pool.get(0)
    assert again is pool.get(0)
    assert other is pool.get(1)
    assert store.get("session-a") == 0
    assert store.get("session-b") == 1


async def test_resolve_without_key_does_not_bind(tmp_path):
    pool = await _pool(tmp_path, 2, strategy="sticky")
    store = SessionBindingStore(pool, tmp_path / "bindings.json")

    account = await store.resolve(None)

    assert account is pool.get(0)
    assert len(store) == 0


async def test_resolve_keeps_binding_while_account_is_rate_limited(tmp_path):
    pool = await _pool(tmp_path, 2, strategy="sticky")
    store = SessionBindingStore(pool, tmp_path / "bindings.json")
    await store.set("session-a", 1)
    await pool.mark_rate_limited(pool.get(1), 300, "gpt-5")

    account = await store.resolve("session-a", "gpt-5")

    assert account is pool.get(1)
    assert store.get("session-a") == 1


async def test_resolve_returns_refresh_failed_bound_account(tmp_path):
    pool = await _pool(tmp_path, 2, strategy="sticky")
    store = SessionBindingStore(pool, tmp_path / "bindings.json")
    await store.set("session-a", 1)
    await pool.mark_refresh_failed(pool.get(1), "expired")

    assert await store.resolve("session-a") is pool.get(1)


async def test_resolve_replaces_binding_to_missing_account(tmp_path):
    pool = await _pool(tmp_path, 1, strategy="sticky")
    store = SessionBindingStore(pool, tmp_path / "bindings.json")
    await store.set("session-a", 7)

    account = await store.resolve("session-a")

    assert account is pool.get(0)
    assert store.get("session-a") == 0


async def test_resolve_returns_none_when_pool_is_exhausted(tmp_path):
    pool = await _pool(tmp_path, 1, strategy="sticky")
    await pool.mark_refresh_failed(pool.get(0), "expired")
    store = SessionBindingStore(pool, tmp_path / "bindings.json")

    assert await store.resolve("session-a") is None
    assert store.get("session-a") is None


async def test_rebind_overrides_existing_binding(tmp_path):
    pool = await _pool(tmp_path, 2)
    store = SessionBindingStore(pool, tmp_path / "bindings.json")
    await store.set("session-a", 0)

    await store.rebind("session-a", 1)

    assert store.get("session-a") == 1
