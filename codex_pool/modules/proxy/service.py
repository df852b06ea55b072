from __future__ import annotations

import logging
import time
from collections.abc import Mapping

from codex_pool.core.balancer import ManagedAccount
from codex_pool.core.clients.codex import (
    AiohttpTransport,
    UpstreamTransport,
    build_codex_headers,
    fetch_models,
    rewrite_url,
    validate_backend_url,
)
from codex_pool.core.config.settings import get_settings
from codex_pool.core.errors import InvalidBackendUrl, openai_error, parse_error_shape
from codex_pool.core.metrics import get_metrics
from codex_pool.core.types import JsonObject
from codex_pool.core.utils.request_id import get_request_id
from codex_pool.core.utils.retry import rate_limit_cooldown_seconds
from codex_pool.modules.accounts.auth_manager import AuthManager
from codex_pool.modules.accounts.pool import AccountPool
from codex_pool.modules.proxy.notifier import AccountNotifier
from codex_pool.modules.proxy.responses import (
    collect_stream_document,
    decode_json,
    error_response,
    normalize_error_response,
    passthrough_stream,
)
from codex_pool.modules.proxy.session_bindings import SessionBindingStore
from codex_pool.modules.proxy.types import ProxyRequest, ProxyResponse, RetryContext

logger = logging.getLogger(__name__)

TOKEN_REFRESH_FAILED_MESSAGE = (
    "Token refresh failed for the current session account. Start a new session to switch accounts."
)
NO_ACCOUNTS_MESSAGE = "No available OpenAI accounts"
INVALID_BODY_MESSAGE = "Request body must be a JSON object"


class ProxyService:
    def __init__(
        self,
        pool: AccountPool,
        bindings: SessionBindingStore,
        auth_manager: AuthManager,
        *,
        transport: UpstreamTransport | None = None,
        notifier: AccountNotifier | None = None,
        prefetch_models: bool | None = None,
    ) -> None:
        settings = get_settings()
        self._pool = pool
        self._bindings = bindings
        self._auth_manager = auth_manager
        self._transport = transport or AiohttpTransport()
        self._notifier = notifier or AccountNotifier()
        self._prefetch_models = settings.models_prefetch_enabled if prefetch_models is None else prefetch_models
        self._prefetched: set[int] = set()

    @property
    def pool(self) -> AccountPool:
        return self._pool

    async def dispatch(self, request: ProxyRequest) -> ProxyResponse:
        payload = _payload_from_body(request.body)
        if payload is None:
            response = error_response(
                400,
                openai_error("invalid_request", INVALID_BODY_MESSAGE, "invalid_request_error"),
            )
            get_metrics().observe_proxy_request(status=response.status_code, streaming=False)
            return response
        streaming = payload.get("stream") is True
        model = _string_field(payload, "model")
        session_key = _session_key(payload, request.headers)

        account = await self._bindings.resolve(session_key, model)
        if account is None:
            response = error_response(503, openai_error("no_accounts", NO_ACCOUNTS_MESSAGE))
        else:
            context = RetryContext(payload=payload, model=model, raw_body=request.body)
            context.require_stream()
            response = await self._dispatch_with_failover(account, request, context, streaming)
        get_metrics().observe_proxy_request(status=response.status_code, streaming=streaming)
        return response

    async def _dispatch_with_failover(
        self,
        account: ManagedAccount,
        request: ProxyRequest,
        context: RetryContext,
        streaming: bool,
    ) -> ProxyResponse:
        settings = get_settings()
        pool_size = max(1, len(self._pool))
        prompt_cache_key = _string_field(context.payload, "prompt_cache_key")
        # Each transition grows `tried` or consumes the single fallback.
        max_attempts = 2 * pool_size + 2

        for attempt in range(max_attempts):
            context.tried.add(account.index)

            if not await self._auth_manager.ensure_valid(account):
                replacement = await self._pool.select(model=context.model, exclude=context.tried)
                if replacement.account is None:
                    return error_response(
                        401,
                        openai_error("token_refresh_failed", TOKEN_REFRESH_FAILED_MESSAGE, "authentication_error"),
                    )
                self._notifier.account_switch(account, replacement.account)
                account = replacement.account
                continue

            try:
                url = validate_backend_url(rewrite_url(request.url))
            except InvalidBackendUrl as exc:
                logger.warning("proxy_blocked_url url=%s", exc.url)
                return error_response(400, openai_error("invalid_backend_url", str(exc), "invalid_request_error"))

            if not account.account_id or not account.access_token:
                return error_response(
                    401,
                    openai_error(
                        "no_account_id",
                        "Failed to extract accountId from token",
                        "authentication_error",
                    ),
                )

            await self._maybe_prefetch_models(account)
            self._notifier.account_use(account, len(self._pool))
            headers = build_codex_headers(
                request.headers,
                access_token=account.access_token,
                account_id=account.account_id,
                prompt_cache_key=prompt_cache_key,
            )
            upstream = await self._transport.send(url, headers, context.body)
            self._pool.record_usage(account, upstream.headers)
            get_metrics().observe_proxy_attempt(account_index=account.index, status=upstream.status)
            logger.info(
                "proxy_attempt request_id=%s attempt=%s account=%s model=%s status=%s retry_count=%s",
                get_request_id(),
                attempt,
                account.index,
                context.model,
                upstream.status,
                context.retry_count,
            )

            if 200 <= upstream.status < 300:
                if streaming:
                    return passthrough_stream(upstream)
                return await collect_stream_document(upstream)

            try:
                raw = await upstream.read()
            finally:
                upstream.release()
            error = parse_error_shape(decode_json(raw))

            match upstream.status:
                case 429:
                    seconds = rate_limit_cooldown_seconds(
                        upstream.headers,
                        error,
                        now=time.time(),
                        fallback_seconds=settings.rate_limit_fallback_seconds,
                    )
                    await self._pool.mark_rate_limited(account, seconds, context.model)
                    self._notifier.rate_limited(account, seconds)
                    if context.retry_count < pool_size - 1:
                        replacement = await self._pool.select(model=context.model, exclude=context.tried)
                        if replacement.account is not None:
                            self._notifier.account_switch(account, replacement.account)
                            account = replacement.account
                            context.retry_count += 1
                            continue
                    return normalize_error_response(upstream.status, upstream.headers, raw, error)

                case 401:
                    await self._pool.mark_refresh_failed(account, "401 Unauthorized")
                    replacement = await self._pool.select(model=context.model, exclude=context.tried)
                    if replacement.account is not None:
                        self._notifier.account_switch(account, replacement.account)
                        account = replacement.account
                        context.retry_count += 1
                        continue
                    return normalize_error_response(upstream.status, upstream.headers, raw, error)

                case 400 if error.is_model_unsupported and context.model and not context.fallback_applied:
                    replacement = await self._pool.select(model=context.model, exclude=context.tried)
                    if replacement.account is not None:
                        self._notifier.model_retry(
                            context.model,
                            account,
                            replacement.account,
                            len(context.tried) + 1,
                            len(self._pool),
                        )
                        account = replacement.account
                        continue
                    fallback = settings.model_fallbacks.get(context.model)
                    if not fallback or fallback == context.model:
                        return normalize_error_response(upstream.status, upstream.headers, raw, error)
                    logger.warning(
                        "proxy_model_fallback model=%s fallback=%s tried=%s",
                        context.model,
                        fallback,
                        sorted(context.tried),
                    )
                    self._notifier.model_fallback(context.model, fallback)
                    get_metrics().observe_model_fallback(model=context.model, fallback=fallback)
                    context.apply_fallback(fallback)
                    fallback_selection = await self._pool.select(model=fallback)
                    account = fallback_selection.account or account
                    continue

                case _:
                    return normalize_error_response(upstream.status, upstream.headers, raw, error)

        logger.error("proxy_attempts_exhausted attempts=%s tried=%s", max_attempts, sorted(context.tried))
        return error_response(503, openai_error("no_accounts", NO_ACCOUNTS_MESSAGE))

    async def _maybe_prefetch_models(self, account: ManagedAccount) -> None:
        if not self._prefetch_models or account.index in self._prefetched:
            return
        if not account.access_token or not account.account_id:
            return
        self._prefetched.add(account.index)
        models = await fetch_models(account.access_token, account.account_id)
        logger.debug("models_prefetched account=%s count=%s", account.index, len(models))


def _payload_from_body(body: bytes) -> JsonObject | None:
    data = decode_json(body)
    if isinstance(data, dict):
        return data
    return None


def _string_field(payload: Mapping[str, object], key: str) -> str | None:
    value = payload.get(key)
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _session_key(payload: Mapping[str, object], headers: Mapping[str, str]) -> str | None:
    key = _string_field(payload, "prompt_cache_key")
    if key:
        return key
    for name, value in headers.items():
        if name.lower() == "session_id" and value.strip():
            return value.strip()
    return None
