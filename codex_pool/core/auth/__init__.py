from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_PLAN = "unknown"


class AuthTokens(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id_token: str | None = Field(default=None, alias="idToken")
    access_token: str | None = Field(default=None, alias="accessToken")
    refresh_token: str = Field(alias="refreshToken")
    account_id: str | None = Field(default=None, alias="accountId")


class AuthFile(BaseModel):
    """The Codex CLI ``auth.json`` document."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    tokens: AuthTokens
    last_refresh: datetime | None = Field(default=None, alias="lastRefresh")


class OpenAIAuthClaims(BaseModel):
    model_config = ConfigDict(extra="ignore")

    chatgpt_account_id: str | None = None
    chatgpt_plan_type: str | None = None


class IdTokenClaims(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    email: str | None = None
    chatgpt_account_id: str | None = None
    chatgpt_plan_type: str | None = None
    exp: int | float | None = None
    auth: OpenAIAuthClaims | None = Field(
        default=None,
        alias="https://api.openai.com/auth",
    )
    profile_email: str | None = None


@dataclass
class AccountClaims:
    account_id: str | None
    email: str | None
    plan_type: str | None
    expires_at: float | None


def parse_auth_json(raw: bytes | str) -> AuthFile:
    data = json.loads(raw)
    return AuthFile.model_validate(data)


def extract_id_token_claims(token: str | None) -> IdTokenClaims:
    if not token:
        return IdTokenClaims()
    try:
        parts = token.split(".")
        if len(parts) < 2:
            return IdTokenClaims()
        payload = parts[1]
        padding = "=" * (-len(payload) % 4)
        decoded = base64.urlsafe_b64decode(payload + padding)
        data = json.loads(decoded)
        if not isinstance(data, dict):
            return IdTokenClaims()
        profile = data.get("https://api.openai.com/profile")
        if isinstance(profile, dict) and isinstance(profile.get("email"), str):
            data["profile_email"] = profile["email"]
        return IdTokenClaims.model_validate(data)
    except Exception:
        return IdTokenClaims()


def resolve_claims(
    *,
    id_token: str | None,
    access_token: str | None,
    account_id: str | None = None,
) -> AccountClaims:
    """Merge claims from the id token and access token JWTs; explicit values win."""
    id_claims = extract_id_token_claims(id_token)
    access_claims = extract_id_token_claims(access_token)
    id_auth = id_claims.auth or OpenAIAuthClaims()
    access_auth = access_claims.auth or OpenAIAuthClaims()
    exp = access_claims.exp
    return AccountClaims(
        account_id=(
            account_id
            or id_auth.chatgpt_account_id
            or id_claims.chatgpt_account_id
            or access_auth.chatgpt_account_id
            or access_claims.chatgpt_account_id
        ),
        email=id_claims.email or access_claims.profile_email or access_claims.email,
        plan_type=id_auth.chatgpt_plan_type or id_claims.chatgpt_plan_type or access_auth.chatgpt_plan_type,
        expires_at=float(exp) if exp is not None else None,
    )
