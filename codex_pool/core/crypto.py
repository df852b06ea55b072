from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from cryptography.fernet import Fernet

from codex_pool.core.config.settings import get_settings


def _get_or_create_key(key_file: Path) -> bytes:
    # Tokens in accounts.json are only readable with this key. Move both files together.
    key_file.parent.mkdir(parents=True, exist_ok=True)
    if key_file.exists():
        return key_file.read_bytes().strip()
    key = Fernet.generate_key()
    key_file.write_bytes(key)
    key_file.chmod(0o600)
    return key


@lru_cache(maxsize=8)
def _get_or_create_key_cached(key_file: str) -> bytes:
    return _get_or_create_key(Path(key_file))


@lru_cache(maxsize=8)
def _get_fernet(key: bytes) -> Fernet:
    return Fernet(key)


class TokenEncryptor:
    def __init__(self, key: bytes | None = None, key_file: Path | None = None) -> None:
        resolved_file = key_file or get_settings().encryption_key_file
        resolved_key = key or _get_or_create_key_cached(str(resolved_file))
        self._fernet = _get_fernet(resolved_key)

    def encrypt(self, token: str) -> str:
        return self._fernet.encrypt(token.encode()).decode("ascii")

    def decrypt(self, encrypted: str) -> str:
        return self._fernet.decrypt(encrypted.encode("ascii")).decode()
