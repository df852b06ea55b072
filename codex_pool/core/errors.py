from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, TypedDict

from codex_pool.core.types import JsonValue

MODEL_UNSUPPORTED_MARKERS = ("model is not supported", "not supported when using Codex")
USAGE_LIMIT_REACHED = "usage_limit_reached"


class OpenAIErrorDetail(TypedDict, total=False):
    message: str
    type: str
    code: str
    param: str
    plan_type: str
    resets_at: int | float
    resets_in_seconds: int | float


class OpenAIErrorEnvelope(TypedDict):
    error: OpenAIErrorDetail


def openai_error(code: str, message: str, error_type: str = "server_error") -> OpenAIErrorEnvelope:
    return {"error": {"message": message, "type": error_type, "code": code}}


class InvalidBackendUrl(ValueError):
    """Raised before dispatch when a rewritten URL leaves the trusted backend."""

    def __init__(self, url: str) -> None:
        super().__init__(f"Blocked request to untrusted backend URL: {url}")
        self.url = url


@dataclass(frozen=True, slots=True)
class UpstreamErrorShape:
    """Typed view over an arbitrary upstream error body.

    Every field is optional; a body that yields none of them is an unknown shape and
    is classified only by its HTTP status.
    """

    code: str | None = None
    type: str | None = None
    message: str | None = None
    detail: str | None = None
    resets_at: JsonValue = None
    resets_in_seconds: float | None = None
    plan_type: str | None = None

    @property
    def is_unknown(self) -> bool:
        return self.code is None and self.type is None and self.message is None and self.detail is None

    @property
    def text(self) -> str | None:
        return self.detail or self.message

    @property
    def is_model_unsupported(self) -> bool:
        candidates = [value for value in (self.detail, self.message) if value]
        return any(marker in value for value in candidates for marker in MODEL_UNSUPPORTED_MARKERS)

    @property
    def is_usage_limit_reached(self) -> bool:
        return self.code == USAGE_LIMIT_REACHED or self.type == USAGE_LIMIT_REACHED

    def to_envelope(self, fallback_message: str) -> OpenAIErrorEnvelope:
        detail: OpenAIErrorDetail = {
            "message": self.text or fallback_message,
            "type": self.type or "server_error",
            "code": self.code or "upstream_error",
        }
        if self.plan_type:
            detail["plan_type"] = self.plan_type
        if isinstance(self.resets_at, (int, float)) and not isinstance(self.resets_at, bool):
            detail["resets_at"] = self.resets_at
        if self.resets_in_seconds is not None:
            detail["resets_in_seconds"] = self.resets_in_seconds
        return {"error": detail}


def parse_error_shape(data: JsonValue) -> UpstreamErrorShape:
    if not isinstance(data, Mapping):
        return UpstreamErrorShape()
    error = data.get("error")
    top_detail = _string(data.get("detail"))
    if isinstance(error, str):
        return UpstreamErrorShape(message=error or None, detail=top_detail)
    if not isinstance(error, Mapping):
        return UpstreamErrorShape(
            message=_string(data.get("message")),
            detail=top_detail,
            resets_at=data.get("resets_at"),
            resets_in_seconds=_number(data.get("resets_in_seconds")),
        )

    details = error.get("details")
    resets_at: JsonValue = None
    if isinstance(details, Mapping):
        resets_at = details.get("resets_at")
    if resets_at is None:
        resets_at = error.get("resets_at")
    if resets_at is None:
        resets_at = data.get("resets_at")
    return UpstreamErrorShape(
        code=_string(error.get("code")),
        type=_string(error.get("type")),
        message=_string(error.get("message")),
        detail=top_detail,
        resets_at=resets_at,
        resets_in_seconds=_number(error.get("resets_in_seconds")),
        plan_type=_string(error.get("plan_type")),
    )


def _string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _number(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None
