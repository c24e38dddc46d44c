import asyncio
import json

import httpx
import pytest

from tutorchat.adapters.gemini.stream_utils import SSEChannel
from tutorchat.adapters.gemini.upstream import UpstreamClient
from tutorchat.core.composer import compose
from tutorchat.core.errors import ChannelClosedError, UpstreamFatalError
from tutorchat.core.relay import OVERLOADED_MESSAGE, StreamRelay


class RecordingChannel:
    def __init__(self, fail_after: int | None = None) -> None:
        self.events: list[dict] = []
        self.close_count = 0
        self.fail_after = fail_after

    async def send(self, event: dict) -> None:
        if self.close_count:
            raise ChannelClosedError()
        if self.fail_after is not None and len(self.events) >= self.fail_after:
            raise ChannelClosedError()
        self.events.append(event)

    async def close(self) -> None:
        self.close_count += 1

    @property
    def types(self) -> list[str]:
        return [event["type"] for event in self.events]


class FakeUpstream:
    def __init__(self, *, deltas=(), stream_error=None, fail_after_deltas=False, text=None, chat_error=None):
        self.deltas = list(deltas)
        self.stream_error = stream_error
        self.fail_after_deltas = fail_after_deltas
        self.text = text
        self.chat_error = chat_error
        self.chat_requests = []
        self.stream_calls = 0

    async def chat_stream(self, request, on_chunk):
        self.stream_calls += 1
        if self.stream_error is not None and not self.fail_after_deltas:
            raise self.stream_error
        for delta in self.deltas:
            await on_chunk(delta)
        if self.stream_error is not None:
            raise self.stream_error
        return len(self.deltas)

    async def chat(self, request):
        self.chat_requests.append(request)
        if self.chat_error is not None:
            raise self.chat_error
        return self.text


def _relay(upstream: FakeUpstream, remaining: int = 7) -> StreamRelay:
    return StreamRelay(upstream, lambda user_id: remaining, fallback_chunk_chars=30)


def _request():
    return compose([{"role": "user", "content": "Let's talk about travel"}])


@pytest.mark.asyncio
async def test_relay_emits_start_chunks_done_in_order():
    channel = RecordingChannel()
    await _relay(FakeUpstream(deltas=["Hello", " world"]), remaining=4).run("u1", _request(), channel)

    assert channel.events == [
        {"type": "start"},
        {"type": "chunk", "content": "Hello"},
        {"type": "chunk", "content": " world"},
        {"type": "done", "remaining_chat_coupons": 4},
    ]
    assert channel.close_count == 1


@pytest.mark.asyncio
async def test_relay_falls_back_to_buffered_call_before_first_chunk():
    text = "Great choice! Travel is a wonderful topic. Where did you go last summer?"
    upstream = FakeUpstream(stream_error=UpstreamFatalError(details="empty_stream"), text=text)
    channel = RecordingChannel()

    await _relay(upstream).run("u1", _request(), channel)

    assert channel.types[0] == "start"
    assert channel.types[-1] == "done"
    assert channel.types.count("done") == 1
    chunks = [event["content"] for event in channel.events if event["type"] == "chunk"]
    assert "".join(chunks) == text
    assert all(len(chunk) <= 30 for chunk in chunks)
    assert len(upstream.chat_requests) == 1
    assert upstream.chat_requests[0].options.max_output_tokens == 350
    assert channel.close_count == 1


@pytest.mark.asyncio
async def test_relay_reports_error_when_fallback_also_fails():
    upstream = FakeUpstream(
        stream_error=UpstreamFatalError(details="upstream_http_error:503:overloaded"),
        chat_error=UpstreamFatalError(details="upstream_http_error:500:boom"),
    )
    channel = RecordingChannel()

    await _relay(upstream).run("u1", _request(), channel)

    assert channel.types == ["start", "error"]
    assert channel.events[-1]["error"] == OVERLOADED_MESSAGE
    assert "500" in channel.events[-1]["details"]
    assert channel.close_count == 1


@pytest.mark.asyncio
async def test_relay_does_not_fall_back_after_partial_output():
    upstream = FakeUpstream(
        deltas=["Hello"],
        stream_error=UpstreamFatalError(details="connection reset"),
        fail_after_deltas=True,
        text="never used",
    )
    channel = RecordingChannel()

    await _relay(upstream).run("u1", _request(), channel)

    assert channel.types == ["start", "chunk", "error"]
    assert upstream.chat_requests == []
    assert channel.close_count == 1


@pytest.mark.asyncio
async def test_relay_stops_when_client_goes_away():
    upstream = FakeUpstream(deltas=["a", "b", "c"])
    channel = RecordingChannel(fail_after=2)

    await _relay(upstream).run("u1", _request(), channel)

    assert channel.types == ["start", "chunk"]
    assert channel.close_count == 1


@pytest.mark.asyncio
async def test_relay_turns_unexpected_failure_into_error_event():
    def broken_remaining(user_id: str) -> int:
        raise RuntimeError("store unavailable")

    channel = RecordingChannel()
    relay = StreamRelay(FakeUpstream(deltas=["ok"]), broken_remaining)

    await relay.run("u1", _request(), channel)

    assert channel.types == ["start", "chunk", "error"]
    assert channel.close_count == 1


@pytest.mark.asyncio
async def test_relay_falls_back_after_empty_streams_with_real_client():
    text = "Tokyo sounds amazing! What was your favourite thing to eat there?"
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.url.path.endswith(":streamGenerateContent"):
            return httpx.Response(200, content=b"")
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})

    async def no_sleep(seconds: float) -> None:
        return None

    client = UpstreamClient(
        api_key="k",
        model="primary",
        fallback_model="lite",
        base_url="https://gemini.test/v1beta",
        max_attempts=3,
        base_delay=0.8,
        jitter=0.0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=no_sleep,
    )
    channel = RecordingChannel()

    await StreamRelay(client, lambda user_id: 5, fallback_chunk_chars=30).run("u1", _request(), channel)

    stream_calls = [call for call in calls if call.url.path.endswith(":streamGenerateContent")]
    buffered_calls = [call for call in calls if call.url.path.endswith(":generateContent")]
    assert len(stream_calls) == 6
    assert len(buffered_calls) == 1
    assert json.loads(buffered_calls[0].content)["generationConfig"]["maxOutputTokens"] == 350
    chunks = [event["content"] for event in channel.events if event["type"] == "chunk"]
    assert "".join(chunks) == text
    assert channel.types[0] == "start"
    assert channel.types.count("done") == 1
    assert channel.events[-1] == {"type": "done", "remaining_chat_coupons": 5}
    assert channel.close_count == 1


class BlockingUpstream:
    def __init__(self) -> None:
        self.cancelled = asyncio.Event()
        self.started = asyncio.Event()
        self._never = asyncio.Event()

    async def chat_stream(self, request, on_chunk):
        self.started.set()
        try:
            await self._never.wait()
        except asyncio.CancelledError:
            self.cancelled.set()
            raise
        return 0

    async def chat(self, request):
        raise AssertionError("buffered call not expected")


@pytest.mark.asyncio
async def test_relay_is_cancelled_when_response_body_is_dropped():
    upstream = BlockingUpstream()
    channel = SSEChannel()
    relay = StreamRelay(upstream, lambda user_id: 3)
    body = channel.body(lambda ch: relay.run("u1", _request(), ch))

    first = await body.__anext__()
    assert json.loads(first.decode()[len("data: "):]) == {"type": "start"}
    await upstream.started.wait()

    await body.aclose()

    assert upstream.cancelled.is_set()
    assert channel.closed
    assert channel.detached


@pytest.mark.asyncio
async def test_relay_never_starts_when_response_body_is_never_iterated():
    upstream = BlockingUpstream()
    channel = SSEChannel()
    relay = StreamRelay(upstream, lambda user_id: 3)
    body = channel.body(lambda ch: relay.run("u1", _request(), ch))

    await body.aclose()

    assert not upstream.started.is_set()
    assert not channel.closed
