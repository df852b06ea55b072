from __future__ import annotations

import json

import pytest
from cryptography.fernet import Fernet

from codex_pool.core.balancer import ManagedAccount
from codex_pool.core.crypto import TokenEncryptor
from codex_pool.modules.accounts.credential_store import CodexAuthFileStore, import_auth_file
from codex_pool.modules.accounts.pool import AccountPool

pytestmark = pytest.mark.unit


def _write_auth(path, **tokens) -> None:
    payload = {
        "OPENAI_API_KEY": None,
        "tokens": {
            "id_token": tokens.get("id_token"),
            "access_token": tokens.get("access_token", "at-file"),
            "refresh_token": tokens.get("refresh_token", "rt-file"),
            "account_id": tokens.get("account_id", "acct-file"),
        },
        "last_refresh": "2025-01-01T00:00:00Z",
    }
    path.write_text(json.dumps(payload), encoding="utf-8")


def _pool(tmp_path) -> AccountPool:
    return AccountPool(
        tmp_path / "accounts.json",
        strategy="sticky",
        encryptor=TokenEncryptor(key=Fernet.generate_key()),
    )


async def test_import_adds_account_from_auth_file(tmp_path):
    auth_path = tmp_path / "auth.json"
    _write_auth(auth_path)
    pool = _pool(tmp_path)

    index = await import_auth_file(pool, auth_path)

    assert index == 0
    account = pool.get(0)
    assert (account.refresh_token, account.access_token, account.account_id) == ("rt-file", "at-file", "acct-file")


async def test_import_twice_merges(tmp_path):
    auth_path = tmp_path / "auth.json"
    _write_auth(auth_path)
    pool = _pool(tmp_path)

    await import_auth_file(pool, auth_path)
    await import_auth_file(pool, auth_path)

    assert len(pool) == 1


async def test_import_accepts_camel_case_tokens(tmp_path):
    auth_path = tmp_path / "auth.json"
    auth_path.write_text(
        json.dumps({"tokens": {"refreshToken": "rt-camel", "accessToken": "at-camel", "accountId": "acct-camel"}}),
        encoding="utf-8",
    )
    pool = _pool(tmp_path)

    assert await import_auth_file(pool, auth_path) == 0
    assert pool.get(0).account_id == "acct-camel"


async def test_import_missing_or_invalid_file_returns_none(tmp_path):
    pool = _pool(tmp_path)
    assert await import_auth_file(pool, tmp_path / "absent.json") is None

    broken = tmp_path / "broken.json"
    broken.write_text(json.dumps({"tokens": {}}), encoding="utf-8")
    assert await import_auth_file(pool, broken) is None
    assert len(pool) == 0


async def test_store_writes_back_matching_identity(tmp_path):
    auth_path = tmp_path / "auth.json"
    _write_auth(auth_path)
    store = CodexAuthFileStore(auth_path)
    account = ManagedAccount(
        index=0,
        refresh_token="rt-rotated",
        access_token="at-rotated",
        account_id="acct-file",
    )

    await store.save(account, id_token="id-rotated")

    data = json.loads(auth_path.read_text(encoding="utf-8"))
    assert data["tokens"]["refresh_token"] == "rt-rotated"
    assert data["tokens"]["access_token"] == "at-rotated"
    assert data["tokens"]["id_token"] == "id-rotated"
    assert "OPENAI_API_KEY" in data
    assert data["last_refresh"] != "2025-01-01T00:00:00Z"


async def test_store_leaves_other_identities_alone(tmp_path):
    auth_path = tmp_path / "auth.json"
    _write_auth(auth_path)
    before = auth_path.read_text(encoding="utf-8")
    store = CodexAuthFileStore(auth_path)
    account = ManagedAccount(index=1, refresh_token="rt-other", access_token="at-other", account_id="acct-other")

    await store.save(account)

    assert auth_path.read_text(encoding="utf-8") == before


async def test_store_ignores_missing_file(tmp_path):
    store = CodexAuthFileStore(tmp_path / "absent.json")
    await store.save(ManagedAccount(index=0, refresh_token="rt", access_token="at", account_id="acct"))
    assert not (tmp_path / "absent.json").exists()
