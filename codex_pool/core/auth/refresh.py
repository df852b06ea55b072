from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

import aiohttp

from codex_pool.core.auth import resolve_claims
from codex_pool.core.clients.http import get_http_client
from codex_pool.core.config.settings import get_settings

logger = logging.getLogger(__name__)

PERMANENT_REFRESH_CODES = frozenset(
    {
        "refresh_token_expired",
        "refresh_token_reused",
        "refresh_token_invalidated",
        "invalid_grant",
    }
)

# Upstream access tokens last roughly an hour when the JWT carries no exp claim.
_DEFAULT_TOKEN_LIFETIME_SECONDS = 3600.0


@dataclass
class TokenRefreshResult:
    access_token: str
    refresh_token: str
    id_token: str | None
    expires_at: float
    account_id: str | None = None
    plan_type: str | None = None
    email: str | None = None


class RefreshError(Exception):
    def __init__(self, code: str, message: str, is_permanent: bool = False) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.is_permanent = is_permanent


async def refresh_access_token(refresh_token: str) -> TokenRefreshResult:
    """Exchange a refresh token once; raises RefreshError on any declined or failed exchange."""
    settings = get_settings()
    url = f"{settings.auth_base_url.rstrip('/')}/oauth/token"
    payload = {
        "grant_type": "refresh_token",
        "client_id": settings.oauth_client_id,
        "refresh_token": refresh_token,
        "scope": "openid profile email",
    }
    timeout = aiohttp.ClientTimeout(total=settings.token_refresh_timeout_seconds)
    session = get_http_client().session
    try:
        async with session.post(url, json=payload, timeout=timeout) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                data = None
            if resp.status >= 400 or not isinstance(data, dict):
                raise _refresh_error(resp.status, data)
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise RefreshError("refresh_transport_error", f"Token refresh request failed: {exc}") from exc

    access_token = data.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise RefreshError("invalid_refresh_response", "Token refresh response is missing access_token")
    new_refresh = data.get("refresh_token")
    id_token = data.get("id_token")
    claims = resolve_claims(id_token=id_token if isinstance(id_token, str) else None, access_token=access_token)

    expires_at = claims.expires_at
    expires_in = data.get("expires_in")
    if expires_at is None:
        lifetime = float(expires_in) if isinstance(expires_in, (int, float)) else _DEFAULT_TOKEN_LIFETIME_SECONDS
        expires_at = time.time() + lifetime
    return TokenRefreshResult(
        access_token=access_token,
        refresh_token=new_refresh if isinstance(new_refresh, str) and new_refresh else refresh_token,
        id_token=id_token if isinstance(id_token, str) else None,
        expires_at=expires_at,
        account_id=claims.account_id,
        plan_type=claims.plan_type,
        email=claims.email,
    )


def _refresh_error(status: int, data: object) -> RefreshError:
    code = f"http_{status}"
    message = f"Token refresh failed: HTTP {status}"
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            code = str(error.get("code") or code)
            message = str(error.get("message") or message)
        elif isinstance(error, str) and error:
            code = error
            description = data.get("error_description")
            if isinstance(description, str) and description:
                message = description
    logger.warning("token_refresh_declined status=%s code=%s", status, code)
    return RefreshError(code, message, is_permanent=code in PERMANENT_REFRESH_CODES or status == 401)
