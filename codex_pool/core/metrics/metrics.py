from __future__ import annotations

from typing import Final

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

_PROM_CONTENT_TYPE: Final[str] = "text/plain; version=0.0.4; charset=utf-8"


def _status_class(status: int) -> str:
    if status == 429:
        return "rate_limited"
    if status in (401, 403):
        return "auth"
    if 200 <= status < 300:
        return "success"
    if 400 <= status < 500:
        return "client_error"
    if status >= 500:
        return "upstream"
    return "unknown"


class Metrics:
    def __init__(self, *, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry(auto_describe=True)

        self._proxy_requests_total = Counter(
            "codex_pool_proxy_requests_total",
            "Total logical proxy requests completed.",
            labelnames=("status_class", "streaming"),
            registry=self._registry,
        )
        self._proxy_attempts_total = Counter(
            "codex_pool_proxy_attempts_total",
            "Total physical upstream attempts by account and outcome.",
            labelnames=("account_index", "status_class"),
            registry=self._registry,
        )
        self._model_fallbacks_total = Counter(
            "codex_pool_model_fallbacks_total",
            "Total model substitutions after every account rejected the requested model.",
            labelnames=("model", "fallback"),
            registry=self._registry,
        )
        self._pool_select_total = Counter(
            "codex_pool_select_total",
            "Account selections by strategy and outcome.",
            labelnames=("strategy", "outcome"),
            registry=self._registry,
        )
        self._pool_mark_total = Counter(
            "codex_pool_mark_total",
            "Account mark events (rate_limit, refresh_failed, refreshed).",
            labelnames=("event", "account_index"),
            registry=self._registry,
        )
        self._persistence_failures_total = Counter(
            "codex_pool_persistence_failures_total",
            "Best-effort persistence writes that failed.",
            labelnames=("store",),
            registry=self._registry,
        )
        self._stream_adapter_failures_total = Counter(
            "codex_pool_stream_adapter_failures_total",
            "Event streams that ended without a completion event.",
            registry=self._registry,
        )
        self._pool_accounts = Gauge(
            "codex_pool_accounts",
            "Accounts in the pool by availability.",
            labelnames=("state",),
            registry=self._registry,
        )

    @property
    def content_type(self) -> str:
        return _PROM_CONTENT_TYPE

    def render(self) -> bytes:
        return generate_latest(self._registry)

    def observe_proxy_request(self, *, status: int, streaming: bool) -> None:
        self._proxy_requests_total.labels(
            status_class=_status_class(status),
            streaming="true" if streaming else "false",
        ).inc()

    def observe_proxy_attempt(self, *, account_index: int, status: int) -> None:
        self._proxy_attempts_total.labels(account_index=str(account_index), status_class=_status_class(status)).inc()

    def observe_model_fallback(self, *, model: str, fallback: str) -> None:
        self._model_fallbacks_total.labels(model=model or "unknown", fallback=fallback or "unknown").inc()

    def observe_select(self, *, strategy: str, outcome: str) -> None:
        self._pool_select_total.labels(strategy=strategy or "unknown", outcome=outcome or "unknown").inc()

    def observe_mark(self, *, event: str, account_index: int) -> None:
        self._pool_mark_total.labels(event=event or "unknown", account_index=str(account_index)).inc()

    def observe_persistence_failure(self, *, store: str) -> None:
        self._persistence_failures_total.labels(store=store or "unknown").inc()

    def observe_stream_adapter_failure(self) -> None:
        self._stream_adapter_failures_total.inc()

    def set_pool_accounts(self, *, available: int, unavailable: int) -> None:
        self._pool_accounts.labels(state="available").set(float(max(0, available)))
        self._pool_accounts.labels(state="unavailable").set(float(max(0, unavailable)))
