"""
SSE framing: incremental parsing of the provider stream and encoding of the
outward event protocol.
"""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterable, Awaitable, Callable, Iterable

from fastapi.responses import StreamingResponse

from tutorchat.core.errors import ChannelClosedError
from tutorchat.util.logger import get_logger

logger = get_logger("stream")

_FRAME_DELIMITER = "\n\n"
_DATA_PREFIX = "data:"


class ParserState(str, Enum):
    SEARCHING = "searching"
    FRAME_READY = "frame_ready"


class SSEFrameParser:
    """Incremental parser for ``data: <json>`` frames separated by blank lines.

    ``feed`` appends a decoded piece of the body and returns the data payloads
    of every frame completed by it. Only the unconsumed tail is retained, and
    the delimiter search resumes where the previous one stopped.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._scan_from = 0
        self.state = ParserState.SEARCHING

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, text: str) -> list[str]:
        if not text:
            return []
        if self._buffer.endswith("\r") and text.startswith("\n"):
            # a CRLF split across two reads
            self._buffer = self._buffer[:-1]
            self._scan_from = max(0, self._scan_from - 1)
        self._buffer += text.replace("\r\n", "\n")

        payloads: list[str] = []
        while True:
            boundary = self._buffer.find(_FRAME_DELIMITER, self._scan_from)
            if boundary < 0:
                self.state = ParserState.SEARCHING
                # the delimiter may straddle the next read
                self._scan_from = max(0, len(self._buffer) - len(_FRAME_DELIMITER) + 1)
                break
            self.state = ParserState.FRAME_READY
            frame = self._buffer[:boundary]
            self._buffer = self._buffer[boundary + len(_FRAME_DELIMITER):]
            self._scan_from = 0
            payload = _frame_data(frame)
            if payload:
                payloads.append(payload)
        return payloads

    def flush(self) -> list[str]:
        """Return the payload of a trailing frame the provider did not terminate."""
        frame, self._buffer, self._scan_from = self._buffer, "", 0
        self.state = ParserState.SEARCHING
        payload = _frame_data(frame)
        return [payload] if payload else []


def _frame_data(frame: str) -> str | None:
    lines: list[str] = []
    for line in frame.split("\n"):
        stripped = line.strip()
        if not stripped.startswith(_DATA_PREFIX):
            continue
        lines.append(stripped[len(_DATA_PREFIX):].strip())
    data = "\n".join(lines).strip()
    return data or None


def extract_candidate_text(event: Any) -> str:
    """Text of the first candidate in a generateContent-shaped payload."""
    if not isinstance(event, dict):
        return ""
    candidates = event.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return ""
    first = candidates[0]
    if not isinstance(first, dict):
        return ""
    content = first.get("content")
    if not isinstance(content, dict):
        return ""
    parts = content.get("parts")
    if not isinstance(parts, list):
        return ""
    return "".join(part["text"] for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str))


def extract_stream_delta(data_payload: str) -> str:
    try:
        event = json.loads(data_payload)
    except json.JSONDecodeError as exc:
        logger.warning("stream frame is not json error=%s payload=%s", exc, data_payload[:120])
        return ""
    return extract_candidate_text(event)


def encode_event(event: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n".encode("utf-8")


def start_event() -> dict[str, Any]:
    return {"type": "start"}


def chunk_event(content: str) -> dict[str, Any]:
    return {"type": "chunk", "content": content}


def done_event(remaining: int) -> dict[str, Any]:
    return {"type": "done", "remaining_chat_coupons": remaining}


def error_event(message: str, details: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"type": "error", "error": message}
    if details:
        payload["details"] = details
    return payload


def split_fixed(text: str, size: int) -> list[str]:
    """Slice text into ``size``-character pieces, preserving order."""
    step = max(1, int(size))
    return [text[i:i + step] for i in range(0, len(text), step)]


_EOF = object()


class SSEChannel:
    """Outward event channel bound to a StreamingResponse body.

    The queue holds a single encoded event, so the producer waits for the
    transport to take each event before making the next one. When the client
    goes away the body generator is closed; from then on ``send`` raises
    ``ChannelClosedError``.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=1)
        self._closed = False
        self._detached = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def detached(self) -> bool:
        return self._detached

    async def send(self, event: dict[str, Any]) -> None:
        if self._closed or self._detached:
            raise ChannelClosedError()
        await self._queue.put(encode_event(event))
        if self._detached:
            raise ChannelClosedError()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._detached:
            await self._queue.put(_EOF)

    def detach(self) -> None:
        self._detached = True
        # unblock a producer parked on put()
        while not self._queue.empty():
            self._queue.get_nowait()

    async def body(
        self, producer: Callable[["SSEChannel"], Awaitable[None]] | None = None
    ) -> AsyncGenerator[bytes, None]:
        """Yield encoded events until the channel is closed.

        ``producer`` is started on first iteration and cancelled when the body
        is closed, so it never outlives the response that feeds the client.
        """
        task = asyncio.create_task(producer(self)) if producer is not None else None
        finished = False
        try:
            while True:
                item = await self._queue.get()
                if item is _EOF:
                    finished = True
                    break
                yield item
        finally:
            self.detach()
            if task is not None:
                if not finished:
                    task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass


def build_streaming_response(generator: Iterable[bytes] | AsyncIterable[bytes]) -> StreamingResponse:
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
