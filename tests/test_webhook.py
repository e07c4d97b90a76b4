from __future__ import annotations

import pytest

from wagateway.util import http
from wagateway.webhook import WebhookDispatcher


@pytest.mark.asyncio
async def test_dispatch_posts_and_logs(monkeypatch, crm, store) -> None:
    calls = []

    async def fake_request(method, url, *, json=None, timeout_s=30.0, **kwargs):
        calls.append((method, url, json, timeout_s))
        return http.HttpResponse(status=200, body=b"ok")

    monkeypatch.setattr(http, "request", fake_request)
    webhooks = WebhookDispatcher(crm)

    status = await webhooks.dispatch(
        "https://hooks.example/in", "message.received", {"raw": b"\x01"}, instance_id="s1"
    )

    assert status == 200
    ((method, url, payload, timeout_s),) = calls
    assert (method, url, timeout_s) == ("POST", "https://hooks.example/in", 3.0)
    assert payload["event"] == "message.received"
    assert payload["data"]["raw"] == {"type": "Buffer", "data": "AQ=="}
    (log,) = store.rows("webhook_logs")
    assert (log["instance_id"], log["status"], log["response_body"]) == ("s1", 200, "ok")


@pytest.mark.asyncio
async def test_transport_failure_returns_zero(monkeypatch, crm, store) -> None:
    async def failing(*args, **kwargs):
        raise TimeoutError("timed out")

    monkeypatch.setattr(http, "request", failing)

    status = await WebhookDispatcher(crm).dispatch(
        "https://hooks.example/in", "message.received", {}, instance_id="s1"
    )

    assert status == 0
    (log,) = store.rows("webhook_logs")
    assert log["status"] == 0
    assert "timed out" in log["response_body"]


@pytest.mark.asyncio
async def test_no_url_is_a_noop(crm, store) -> None:
    assert await WebhookDispatcher(crm).dispatch(None, "x", {}) == 0
    assert store.rows("webhook_logs") == []
