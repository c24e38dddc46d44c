import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from tutorchat.adapters.chat import router as chat_router
from tutorchat.config.settings import settings
from tutorchat.core.entitlement import EntitlementGate
from tutorchat.core.errors import UpstreamFatalError
from tutorchat.core.gateway import app
from tutorchat.core.identity import issue_token
from tutorchat.core.relay import StreamRelay
from tutorchat.storage.sqlite_store import SqliteAccountStore


def _build_request(user_id: str | None = "u1", path: str = "/api/v1/chat/message") -> Request:
    headers = {}
    if user_id is not None:
        headers["authorization"] = f"Bearer {issue_token(user_id)}"
    raw_headers = [(k.encode("latin-1"), v.encode("latin-1")) for k, v in headers.items()]
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": path,
        "raw_path": path.encode("latin-1"),
        "query_string": b"",
        "headers": raw_headers,
        "client": ("127.0.0.1", 54321),
        "server": ("testserver", 80),
    }

    async def receive():
        return {"type": "http.request", "body": b"", "more_body": False}

    return Request(scope, receive)


class FakeUpstream:
    def __init__(self, *, deltas=(), text="Nice to meet you!", stream_error=None, chat_error=None):
        self.deltas = list(deltas)
        self.text = text
        self.stream_error = stream_error
        self.chat_error = chat_error
        self.requests = []

    async def chat(self, request):
        self.requests.append(request)
        if self.chat_error is not None:
            raise self.chat_error
        return self.text

    async def chat_stream(self, request, on_chunk):
        self.requests.append(request)
        if self.stream_error is not None:
            raise self.stream_error
        for delta in self.deltas:
            await on_chunk(delta)
        return len(self.deltas)


@pytest.fixture
def wired(tmp_path, monkeypatch):
    store = SqliteAccountStore(db_path=str(tmp_path / "router.db"))
    store.upsert_account(
        user_id="u1",
        membership_name="premium",
        features=frozenset({"chat"}),
        expires_at=datetime.now(timezone.utc) + timedelta(days=30),
        chat_credits=2,
    )
    gate = EntitlementGate(store)
    upstream = FakeUpstream(deltas=["Hello", " world"])
    monkeypatch.setattr(chat_router, "gate", gate)
    monkeypatch.setattr(chat_router, "upstream", upstream)
    monkeypatch.setattr(chat_router, "relay", StreamRelay(upstream, gate.remaining))
    return store, upstream


def _json(response) -> dict:
    return json.loads(response.body)


async def _collect_events(response) -> list[dict]:
    events = []
    async for chunk in response.body_iterator:
        text = chunk.decode("utf-8") if isinstance(chunk, bytes) else chunk
        for line in text.split("\n"):
            if line.startswith("data: "):
                events.append(json.loads(line[len("data: "):]))
    return events


@pytest.mark.asyncio
async def test_start_is_idempotent_per_key(wired):
    store, _ = wired
    payload = {"idempotency_key": "abc"}

    first = await chat_router.chat_start(payload, _build_request())
    second = await chat_router.chat_start(payload, _build_request())

    assert first["remaining_chat_coupons"] == 1
    assert second["remaining_chat_coupons"] == 1
    assert second["message"] != first["message"]
    assert store.get_account("u1").chat_credits == 1


@pytest.mark.asyncio
async def test_start_requires_token(wired):
    response = await chat_router.chat_start({}, _build_request(user_id=None))
    assert response.status_code == 401
    assert "error" in _json(response)


@pytest.mark.asyncio
async def test_start_rejects_foreign_user_id(wired):
    response = await chat_router.chat_start({"user_id": "someone"}, _build_request())
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_start_unknown_user_is_404(wired):
    response = await chat_router.chat_start({}, _build_request(user_id="ghost"))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_start_with_no_credits_is_402(wired):
    await chat_router.chat_start({}, _build_request())
    await chat_router.chat_start({}, _build_request())
    response = await chat_router.chat_start({}, _build_request())
    assert response.status_code == 402


@pytest.mark.asyncio
async def test_message_returns_reply_and_remaining(wired):
    _, upstream = wired
    messages = [{"role": "user", "content": f"m{i}"} for i in range(6)]

    result = await chat_router.chat_message({"messages": messages}, _build_request())

    assert result == {"response": "Nice to meet you!", "remaining_chat_coupons": 2}
    assert [turn.content for turn in upstream.requests[0].turns] == ["m2", "m3", "m4", "m5"]


@pytest.mark.asyncio
async def test_empty_messages_rejected_before_upstream(wired):
    _, upstream = wired
    response = await chat_router.chat_message({"messages": []}, _build_request())
    assert response.status_code == 400
    assert upstream.requests == []

    response = await chat_router.chat_message_stream({"messages": []}, _build_request())
    assert response.status_code == 400
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_too_many_or_too_long_messages_rejected(wired, monkeypatch):
    monkeypatch.setattr(settings, "max_messages_count", 2)
    monkeypatch.setattr(settings, "max_content_length_per_message", 5)

    too_many = [{"role": "user", "content": "a"}] * 3
    response = await chat_router.chat_message({"messages": too_many}, _build_request())
    assert response.status_code == 400

    too_long = [{"role": "user", "content": "abcdef"}]
    response = await chat_router.chat_message({"messages": too_long}, _build_request())
    assert response.status_code == 400
    assert "index=0" in _json(response)["details"]


@pytest.mark.asyncio
async def test_message_upstream_failure_is_502(wired, monkeypatch):
    monkeypatch.setattr(chat_router, "upstream", FakeUpstream(chat_error=UpstreamFatalError(details="503")))
    response = await chat_router.chat_message({"messages": [{"role": "user", "content": "hi"}]}, _build_request())
    assert response.status_code == 502
    assert _json(response)["details"] == "503"


@pytest.mark.asyncio
async def test_message_stream_emits_event_protocol(wired):
    _, upstream = wired
    response = await chat_router.chat_message_stream(
        {"messages": [{"role": "user", "content": "hi"}]},
        _build_request(path="/api/v1/chat/message_stream"),
    )

    assert response.media_type == "text/event-stream"
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["x-accel-buffering"] == "no"
    events = await _collect_events(response)
    assert events == [
        {"type": "start"},
        {"type": "chunk", "content": "Hello"},
        {"type": "chunk", "content": " world"},
        {"type": "done", "remaining_chat_coupons": 2},
    ]
    assert upstream.requests[0].options.max_output_tokens == settings.stream_max_output_tokens


@pytest.mark.asyncio
async def test_message_stream_ineligible_user_gets_json_error(wired):
    store, _ = wired
    store.upsert_account(
        user_id="u1",
        membership_name="basic",
        features=frozenset({"study"}),
        expires_at=datetime.now(timezone.utc) + timedelta(days=30),
        chat_credits=0,
    )
    response = await chat_router.chat_message_stream(
        {"messages": [{"role": "user", "content": "hi"}]},
        _build_request(path="/api/v1/chat/message_stream"),
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_eligibility_route(wired):
    report = await chat_router.chat_eligibility(_build_request(path="/api/v1/chat/eligibility"), feature="chat")
    assert report == {"status": "available", "feature": "chat", "remaining_chat_coupons": 2}


def test_health_needs_no_auth():
    client = TestClient(app)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_oversized_body_is_413(monkeypatch):
    monkeypatch.setattr(settings, "max_request_body_bytes", 64)
    client = TestClient(app)
    response = client.post("/api/v1/chat/start", content=b"{" + b" " * 200 + b"}", headers={"content-type": "application/json"})
    assert response.status_code == 413
    assert "error" in response.json()


def test_non_object_body_is_400():
    client = TestClient(app)
    response = client.post(
        "/api/v1/chat/start",
        json=["not", "an", "object"],
        headers={"authorization": f"Bearer {issue_token('u1')}"},
    )
    assert response.status_code == 400
    assert "error" in response.json()
