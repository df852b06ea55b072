from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

import anyio
from pydantic import ValidationError

from codex_pool.core.auth import AuthFile, AuthTokens, parse_auth_json, resolve_claims
from codex_pool.core.balancer import ManagedAccount
from codex_pool.core.config.settings import get_settings
from codex_pool.core.metrics import get_metrics
from codex_pool.core.utils.files import write_json_atomic
from codex_pool.modules.accounts.pool import AccountPool

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    async def save(self, account: ManagedAccount, id_token: str | None = None) -> None: ...


class CodexAuthFileStore:
    """Keeps the Codex CLI ``auth.json`` in step with refreshed credentials.

    Only the identity already recorded in the file is updated; refreshes of other pool
    accounts leave it untouched.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or get_settings().codex_auth_file

    @property
    def path(self) -> Path:
        return self._path

    async def save(self, account: ManagedAccount, id_token: str | None = None) -> None:
        try:
            await anyio.to_thread.run_sync(self._save_sync, account, id_token)
        except (OSError, ValueError, ValidationError):
            logger.error("credential_store_save_failed path=%s account=%s", self._path, account.index, exc_info=True)
            get_metrics().observe_persistence_failure(store="codex_auth")

    def _save_sync(self, account: ManagedAccount, id_token: str | None) -> None:
        if not self._path.exists():
            return
        auth = parse_auth_json(self._path.read_bytes())
        current = resolve_claims(
            id_token=auth.tokens.id_token,
            access_token=auth.tokens.access_token,
            account_id=auth.tokens.account_id,
        )
        matches_token = auth.tokens.refresh_token == account.refresh_token
        matches_identity = current.account_id is not None and current.account_id == account.account_id
        if not matches_token and not matches_identity:
            return
        tokens = AuthTokens(
            id_token=id_token or auth.tokens.id_token,
            access_token=account.access_token,
            refresh_token=account.refresh_token,
            account_id=account.account_id or auth.tokens.account_id,
        )
        updated = auth.model_copy(update={"tokens": tokens, "last_refresh": datetime.now(timezone.utc)})
        data = updated.model_dump(mode="json")
        # The Codex CLI keeps the upper-case key name next to snake_case token fields.
        data["OPENAI_API_KEY"] = data.pop("openai_api_key", None)
        write_json_atomic(self._path, data)
        logger.info("credential_store_saved path=%s account=%s", self._path, account.index)


async def import_auth_file(pool: AccountPool, path: Path | None = None) -> int | None:
    """Add (or merge) the identity in a Codex ``auth.json`` into the pool."""
    resolved = path or get_settings().codex_auth_file
    if not resolved.exists():
        logger.info("codex_auth_import_skipped path=%s reason=missing", resolved)
        return None
    try:
        auth: AuthFile = parse_auth_json(resolved.read_bytes())
    except (OSError, ValueError, ValidationError):
        logger.warning("codex_auth_import_failed path=%s", resolved, exc_info=True)
        return None
    tokens = auth.tokens
    if not tokens.refresh_token:
        logger.warning("codex_auth_import_skipped path=%s reason=no_refresh_token", resolved)
        return None
    return await pool.add_account(
        None,
        tokens.refresh_token,
        tokens.access_token,
        account_id=tokens.account_id,
        id_token=tokens.id_token,
    )
