from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

TEST_HOME_DIR = Path(tempfile.mkdtemp(prefix="codex-pool-tests-"))

os.environ["CODEX_POOL_ACCOUNTS_FILE"] = str(TEST_HOME_DIR / "accounts.json")
os.environ["CODEX_POOL_SESSION_BINDINGS_FILE"] = str(TEST_HOME_DIR / "session-bindings.json")
os.environ["CODEX_POOL_ENCRYPTION_KEY_FILE"] = str(TEST_HOME_DIR / "encryption.key")
os.environ["CODEX_POOL_CODEX_AUTH_FILE"] = str(TEST_HOME_DIR / "codex-auth.json")
os.environ["CODEX_POOL_IMPORT_CODEX_AUTH"] = "false"
os.environ["CODEX_POOL_MODELS_PREFETCH_ENABLED"] = "false"
os.environ["CODEX_POOL_QUIET_MODE"] = "false"

from codex_pool.core.config.settings import get_settings  # noqa: E402
from codex_pool.main import create_app  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Every test gets its own pool, bindings, key and auth.json paths."""
    monkeypatch.setenv("CODEX_POOL_ACCOUNTS_FILE", str(tmp_path / "accounts.json"))
    monkeypatch.setenv("CODEX_POOL_SESSION_BINDINGS_FILE", str(tmp_path / "session-bindings.json"))
    monkeypatch.setenv("CODEX_POOL_ENCRYPTION_KEY_FILE", str(tmp_path / "encryption.key"))
    monkeypatch.setenv("CODEX_POOL_CODEX_AUTH_FILE", str(tmp_path / "codex-auth.json"))
    get_settings.cache_clear()
    yield tmp_path
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def app_instance():
    return create_app()


@pytest_asyncio.fixture
async def async_client(app_instance):
    async with app_instance.router.lifespan_context(app_instance):
        transport = ASGITransport(app=app_instance)
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            yield client
