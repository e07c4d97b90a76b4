from __future__ import annotations

import datetime as dt
import urllib.error

import pytest

from wagateway.exceptions import MediaError, PersistenceError
from wagateway.media import SupabaseStorage
from wagateway.persistence import Order, PostgrestDataStore, eq, gte, in_, is_null
from wagateway.persistence.postgrest import build_query
from wagateway.util import http


class _Recorder:
    """Replays canned responses for `http.request` and records each call."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.calls: list[dict] = []

    async def __call__(self, method, url, *, data=None, json=None, headers=None, timeout_s=30.0):
        self.calls.append(
            {"method": method, "url": url, "json": json, "data": data, "headers": headers or {}}
        )
        res = self.responses.pop(0)
        if isinstance(res, Exception):
            raise res
        return res


def _ok(body: bytes = b"[]", status: int = 200) -> http.HttpResponse:
    return http.HttpResponse(status=status, body=body)


def test_query_encoding() -> None:
    q = build_query(
        [
            eq("company_id", "t1"),
            eq("reminder_sent", False),
            in_("status", ("sent", "delivered")),
            is_null("deleted_at"),
            gte("start_time", dt.datetime(2026, 3, 10, 12, 0, tzinfo=dt.timezone.utc)),
        ],
        columns="id,name",
        order=Order("start_time", descending=True),
        limit=5,
    )

    assert q == (
        "select=id,name&company_id=eq.t1&reminder_sent=eq.false"
        "&status=in.(sent,delivered)&deleted_at=is.null"
        "&start_time=gte.2026-03-10T12%3A00%3A00%2B00%3A00"
        "&order=start_time.desc&limit=5"
    )
    assert build_query([in_("name", ["a b"])]) == "name=in.(%22a%20b%22)"


@pytest.mark.asyncio
async def test_select_sends_auth_headers(monkeypatch) -> None:
    rec = _Recorder(_ok(b'[{"id": "L1"}]'))
    monkeypatch.setattr(http, "request", rec)
    ds = PostgrestDataStore("https://db.example/", "secret")

    rows = await ds.select("leads", eq("phone", "5511999999999"), limit=1)

    assert rows == [{"id": "L1"}]
    (call,) = rec.calls
    assert call["method"] == "GET"
    assert call["url"] == "https://db.example/rest/v1/leads?select=*&phone=eq.5511999999999&limit=1"
    assert call["headers"]["apikey"] == "secret"
    assert call["headers"]["Authorization"] == "Bearer secret"


@pytest.mark.asyncio
async def test_upsert_merges_on_conflict(monkeypatch) -> None:
    rec = _Recorder(_ok(b'[{"id": "1"}]', 201))
    monkeypatch.setattr(http, "request", rec)
    ds = PostgrestDataStore("https://db.example", "k")

    await ds.upsert("messages", [{"whatsapp_id": "A"}], on_conflict=("remote_jid", "whatsapp_id"))

    (call,) = rec.calls
    assert call["url"].endswith("/messages?on_conflict=remote_jid,whatsapp_id")
    assert call["headers"]["Prefer"] == "resolution=merge-duplicates,return=representation"
    assert call["json"] == [{"whatsapp_id": "A"}]


@pytest.mark.asyncio
async def test_unavailable_is_retried(monkeypatch, sleep) -> None:
    rec = _Recorder(_ok(b"", 503), _ok(b'{"id": "x"}'))
    monkeypatch.setattr(http, "request", rec)
    ds = PostgrestDataStore("https://db.example", "k", sleep=sleep)

    assert await ds.update("leads", {"name": "Ana"}, eq("id", "x")) == [{"id": "x"}]
    assert sleep.calls == [1]
    assert rec.calls[0]["method"] == "PATCH"


@pytest.mark.asyncio
async def test_transport_errors_retry_then_raise(monkeypatch, sleep) -> None:
    down = urllib.error.URLError("connection refused")
    monkeypatch.setattr(http, "request", _Recorder(down, down, down))
    ds = PostgrestDataStore("https://db.example", "k", retries=3, sleep=sleep)

    with pytest.raises(PersistenceError):
        await ds.delete("auth_state", eq("session_id", "s1"))
    assert sleep.calls == [1, 2]


@pytest.mark.asyncio
async def test_client_error_raises_without_retry(monkeypatch, sleep) -> None:
    rec = _Recorder(_ok(b'{"message": "bad column"}', 400))
    monkeypatch.setattr(http, "request", rec)
    ds = PostgrestDataStore("https://db.example", "k", sleep=sleep)

    with pytest.raises(PersistenceError) as excinfo:
        await ds.insert("leads", [{"nope": 1}])

    assert excinfo.value.status == 400
    assert "bad column" in excinfo.value.body
    assert sleep.calls == []
    assert len(rec.calls) == 1


@pytest.mark.asyncio
async def test_storage_upload_returns_public_url(monkeypatch) -> None:
    rec = _Recorder(_ok(b"{}"), _ok(b"exists", 409))
    monkeypatch.setattr(http, "request", rec)
    storage = SupabaseStorage("https://db.example", "k")

    url = await storage.upload("t1/a b.ogg", b"OggS", "audio/ogg")

    assert url == "https://db.example/storage/v1/object/public/chat-media/t1/a%20b.ogg"
    assert rec.calls[0]["headers"]["Content-Type"] == "audio/ogg"
    assert rec.calls[0]["data"] == b"OggS"
    with pytest.raises(MediaError):
        await storage.upload("t1/a b.ogg", b"OggS", "audio/ogg")
