from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from codex_pool.core.types import JsonObject


@dataclass(slots=True)
class ProxyRequest:
    url: str
    headers: dict[str, str]
    body: bytes


@dataclass(slots=True)
class ProxyResponse:
    status_code: int
    headers: dict[str, str]
    body: bytes = b""
    stream: AsyncIterator[bytes] | None = None

    @property
    def media_type(self) -> str | None:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value
        return None


@dataclass
class RetryContext:
    """Per logical request state carried across physical attempts."""

    payload: JsonObject
    model: str | None
    raw_body: bytes = b""
    tried: set[int] = field(default_factory=set)
    retry_count: int = 0
    fallback_applied: bool = False
    rewritten: bool = False

    @property
    def body(self) -> bytes:
        if not self.rewritten:
            return self.raw_body
        return json.dumps(self.payload, separators=(",", ":")).encode("utf-8")

    def apply_fallback(self, model: str) -> None:
        self.model = model
        self.payload["model"] = model
        self.tried = set()
        self.retry_count = 0
        self.fallback_applied = True
        self.rewritten = True

    def require_stream(self) -> None:
        """The backend only serves event streams; non-streaming callers get them reduced."""
        if self.payload and self.payload.get("stream") is not True:
            self.payload["stream"] = True
            self.rewritten = True
