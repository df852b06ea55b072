from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[3]

DEFAULT_HOME_DIR = Path.home() / ".codex-pool"
DEFAULT_ACCOUNTS_FILE = DEFAULT_HOME_DIR / "accounts.json"
DEFAULT_SESSION_BINDINGS_FILE = DEFAULT_HOME_DIR / "session-bindings.json"
DEFAULT_ENCRYPTION_KEY_FILE = DEFAULT_HOME_DIR / "encryption.key"
DEFAULT_CODEX_AUTH_FILE = Path.home() / ".codex" / "auth.json"

DEFAULT_MODEL_FALLBACKS = {
    "gpt-5.1-codex-max": "gpt-5.1-codex",
    "gpt-5.1-codex": "gpt-5-codex",
    "gpt-5.1-codex-mini": "gpt-5-codex-mini",
    "gpt-5.1": "gpt-5",
}

SelectionStrategy = Literal["sticky", "round-robin", "hybrid"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CODEX_POOL_",
        env_file=(BASE_DIR / ".env", BASE_DIR / ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    strategy: SelectionStrategy = "sticky"
    pid_offset_enabled: bool = False
    quiet_mode: bool = False
    debug: bool = False
    notify_debounce_seconds: float = Field(default=5.0, ge=0)

    accounts_file: Path = DEFAULT_ACCOUNTS_FILE
    session_bindings_file: Path = DEFAULT_SESSION_BINDINGS_FILE
    encryption_key_file: Path = DEFAULT_ENCRYPTION_KEY_FILE
    import_codex_auth: bool = True
    codex_auth_file: Path = DEFAULT_CODEX_AUTH_FILE

    upstream_base_url: str = "https://chatgpt.com/backend-api"
    upstream_connect_timeout_seconds: float = 30.0
    stream_idle_timeout_seconds: float = 300.0
    auth_base_url: str = "https://auth.openai.com"
    oauth_client_id: str = "app_EMoamEEZ73f0CkXaXp7hrann"
    token_refresh_timeout_seconds: float = 30.0
    # Refresh slightly before the upstream expiry so in-flight requests do not race it.
    token_expiry_skew_seconds: float = Field(default=60.0, ge=0)

    rate_limit_fallback_seconds: float = Field(default=60.0, gt=0)
    model_fallbacks: Annotated[dict[str, str], NoDecode] = Field(default_factory=lambda: dict(DEFAULT_MODEL_FALLBACKS))
    models_prefetch_enabled: bool = True
    models_prefetch_timeout_seconds: float = 10.0
    models_prefetch_max_retries: int = Field(default=2, ge=0)

    http_client_connector_limit: int = Field(default=100, gt=0)
    http_client_connector_limit_per_host: int = Field(default=50, gt=0)
    http_client_keepalive_timeout_seconds: float = Field(default=15.0, gt=0)
    http_client_dns_cache_ttl_seconds: int = Field(default=300, ge=0)
    access_log_enabled: bool = False

    @field_validator(
        "accounts_file",
        "session_bindings_file",
        "encryption_key_file",
        "codex_auth_file",
        mode="before",
    )
    @classmethod
    def _expand_path(cls, value: str | Path) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("path settings must be a path")

    @field_validator("model_fallbacks", mode="before")
    @classmethod
    def _normalize_model_fallbacks(cls, value: object) -> dict[str, str]:
        if value is None:
            return {}
        if isinstance(value, str) and value.strip().startswith("{"):
            value = json.loads(value)
        if isinstance(value, str):
            # "model-a=model-b,model-c=model-d" is accepted alongside JSON.
            mapping: dict[str, str] = {}
            for entry in value.split(","):
                source, sep, target = entry.partition("=")
                if sep and source.strip() and target.strip():
                    mapping[source.strip()] = target.strip()
            return mapping
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items() if k and v}
        raise TypeError("model_fallbacks must be a mapping or comma-separated pairs")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
