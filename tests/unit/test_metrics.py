from __future__ import annotations

import pytest
from prometheus_client import CollectorRegistry

from codex_pool.core.metrics.metrics import Metrics

pytestmark = pytest.mark.unit


def test_metrics_render_uses_own_registry():
    metrics = Metrics(registry=CollectorRegistry())

    metrics.observe_proxy_request(status=200, streaming=True)
    metrics.observe_proxy_attempt(account_index=1, status=429)
    metrics.observe_model_fallback(model="gpt-5.1-codex", fallback="gpt-5-codex")
    metrics.observe_persistence_failure(store="accounts")
    metrics.set_pool_accounts(available=3, unavailable=1)

    text = metrics.render().decode("utf-8")

    assert 'codex_pool_proxy_requests_total{status_class="success",streaming="true"} 1.0' in text
    assert 'codex_pool_proxy_attempts_total{account_index="1",status_class="rate_limited"} 1.0' in text
    assert 'codex_pool_model_fallbacks_total{model="gpt-5.1-codex",fallback="gpt-5-codex"} 1.0' in text
    assert 'codex_pool_persistence_failures_total{store="accounts"} 1.0' in text
    assert 'codex_pool_accounts{state="unavailable"} 1.0' in text
    assert metrics.content_type.startswith("text/plain")
