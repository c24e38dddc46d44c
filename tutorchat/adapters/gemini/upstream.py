"""
Gemini upstream client: buffered and streaming generateContent calls with
retry, exponential backoff and a single lighter-model fallback pass.
"""

from __future__ import annotations

import asyncio
import json
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from tutorchat.adapters.gemini.stream_utils import SSEFrameParser, extract_candidate_text, extract_stream_delta
from tutorchat.config.settings import settings
from tutorchat.core.errors import EmptyStreamError, UpstreamError, UpstreamFatalError, UpstreamHTTPError
from tutorchat.core.models import ProviderRequest
from tutorchat.util.logger import get_logger

logger = get_logger("upstream")

T = TypeVar("T")
ChunkHandler = Callable[[str], Awaitable[None]]

_upstream_async_client: httpx.AsyncClient | None = None
_upstream_client_lock: asyncio.Lock | None = None


def _upstream_http_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=max(10, int(settings.upstream_max_connections)),
        max_keepalive_connections=max(5, int(settings.upstream_max_keepalive_connections)),
    )


def _upstream_http_timeout() -> httpx.Timeout:
    connect = float(settings.upstream_connect_timeout_seconds)
    read = float(settings.upstream_read_timeout_seconds)
    return httpx.Timeout(connect=connect, read=read, write=read, pool=connect)


async def _get_upstream_async_client() -> httpx.AsyncClient:
    global _upstream_async_client, _upstream_client_lock
    if _upstream_async_client is not None:
        return _upstream_async_client
    if _upstream_client_lock is None:
        _upstream_client_lock = asyncio.Lock()
    async with _upstream_client_lock:
        if _upstream_async_client is None:
            _upstream_async_client = httpx.AsyncClient(
                timeout=_upstream_http_timeout(),
                limits=_upstream_http_limits(),
            )
    return _upstream_async_client


async def close_upstream_async_client() -> None:
    global _upstream_async_client
    if _upstream_async_client is not None:
        await _upstream_async_client.aclose()
        _upstream_async_client = None


def _decode_json_or_text(body: bytes) -> dict[str, Any] | str:
    text = body.decode("utf-8", errors="replace")
    if not text:
        return ""
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return text
    return parsed if isinstance(parsed, dict) else text


def _safe_error_detail(payload: dict[str, Any] | str) -> str:
    if isinstance(payload, str):
        return payload[:600]
    error = payload.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"][:600]
    if isinstance(error, str):
        return error[:600]
    return json.dumps(payload, ensure_ascii=False)[:600]


def is_retryable(exc: BaseException) -> bool:
    """Overload, 429, 5xx and empty streams are worth another attempt."""
    if isinstance(exc, EmptyStreamError):
        return True
    if isinstance(exc, UpstreamHTTPError):
        if exc.upstream_status == 429 or 500 <= exc.upstream_status <= 599:
            return True
    if isinstance(exc, UpstreamError):
        return "overloaded" in str(exc).lower()
    return False


@dataclass(slots=True)
class RetryContext:
    """Retry state of one logical call; never shared between calls."""

    active_model: str
    base_delay: float
    attempt: int = 0

    def backoff_seconds(self, jitter: float) -> float:
        return self.base_delay * (2 ** (self.attempt - 1)) + jitter


class UpstreamClient:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        fallback_model: str | None = None,
        base_url: str | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        jitter: float | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.model = (model or settings.gemini_model).strip()
        fallback = settings.gemini_fallback_model if fallback_model is None else fallback_model
        self.fallback_model = fallback.strip()
        self.base_url = (base_url or settings.gemini_base_url).rstrip("/")
        self.max_attempts = max(1, int(max_attempts or settings.upstream_max_attempts))
        self.base_delay = settings.upstream_backoff_base_seconds if base_delay is None else base_delay
        self.jitter = settings.upstream_backoff_jitter_seconds if jitter is None else jitter
        self._http_client = http_client
        self._sleep = sleep

    async def _client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client
        return await _get_upstream_async_client()

    def _url(self, model: str, method: str) -> str:
        return f"{self.base_url}/models/{model}:{method}"

    def _params(self, stream: bool) -> dict[str, str]:
        params = {"key": self.api_key}
        if stream:
            params["alt"] = "sse"
        return params

    async def chat(self, request: ProviderRequest) -> str:
        """Single buffered call; returns the first candidate's text."""
        payload = request.to_payload()

        async def operation(model: str) -> str:
            return await self._generate(model, payload)

        return await self._with_retries(operation, label="chat")

    async def chat_stream(self, request: ProviderRequest, on_chunk: ChunkHandler) -> int:
        """Stream deltas into ``on_chunk``; returns the number of deltas delivered."""
        payload = request.to_payload()
        delivered = 0

        async def deliver(delta: str) -> None:
            nonlocal delivered
            delivered += 1
            await on_chunk(delta)

        async def operation(model: str) -> int:
            return await self._stream_generate(model, payload, deliver)

        return await self._with_retries(operation, label="chat_stream", can_retry=lambda: delivered == 0)

    async def _generate(self, model: str, payload: dict[str, Any]) -> str:
        client = await self._client()
        url = self._url(model, "generateContent")
        logger.debug("generate start model=%s contents=%d", model, len(payload.get("contents", [])))
        try:
            response = await client.post(url, params=self._params(stream=False), json=payload)
        except httpx.HTTPError as exc:
            detail = (str(exc) or "").strip() or exc.__class__.__name__
            raise UpstreamError(f"upstream_unreachable: {detail}", details=detail) from exc
        body = _decode_json_or_text(response.content)
        if response.status_code >= 400:
            raise UpstreamHTTPError(response.status_code, _safe_error_detail(body))
        text = extract_candidate_text(body)
        if not text:
            logger.warning("generate returned no candidate text model=%s", model)
            return settings.empty_response_placeholder
        return text

    async def _stream_generate(self, model: str, payload: dict[str, Any], deliver: ChunkHandler) -> int:
        client = await self._client()
        url = self._url(model, "streamGenerateContent")
        parser = SSEFrameParser()
        count = 0
        started = time.monotonic()
        try:
            async with client.stream("POST", url, params=self._params(stream=True), json=payload) as resp:
                if resp.status_code >= 400:
                    detail = _safe_error_detail(_decode_json_or_text(await resp.aread()))
                    raise UpstreamHTTPError(resp.status_code, detail)
                async for piece in resp.aiter_text():
                    for data in parser.feed(piece):
                        delta = extract_stream_delta(data)
                        if delta:
                            count += 1
                            await deliver(delta)
                for data in parser.flush():
                    delta = extract_stream_delta(data)
                    if delta:
                        count += 1
                        await deliver(delta)
        except httpx.HTTPError as exc:
            detail = (str(exc) or "").strip() or exc.__class__.__name__
            raise UpstreamError(f"upstream_unreachable: {detail}", details=detail) from exc

        elapsed = time.monotonic() - started
        if count == 0:
            logger.warning("stream produced no text model=%s elapsed=%.2fs", model, elapsed)
            raise EmptyStreamError()
        logger.info("stream complete model=%s chunks=%d elapsed=%.2fs", model, count, elapsed)
        return count

    async def _with_retries(
        self,
        operation: Callable[[str], Awaitable[T]],
        *,
        label: str,
        can_retry: Callable[[], bool] = lambda: True,
    ) -> T:
        if not self.api_key:
            raise UpstreamFatalError(details="gemini api key is not configured")
        ctx = RetryContext(active_model=self.model, base_delay=self.base_delay)
        while True:
            ctx.attempt += 1
            try:
                return await operation(ctx.active_model)
            except UpstreamError as exc:
                retryable = is_retryable(exc) and can_retry()
                if retryable and ctx.attempt < self.max_attempts:
                    delay = ctx.backoff_seconds(random.uniform(0, self.jitter))
                    logger.warning(
                        "%s retry %d/%d model=%s after %.2fs error=%s",
                        label,
                        ctx.attempt,
                        self.max_attempts - 1,
                        ctx.active_model,
                        delay,
                        exc,
                    )
                    await self._sleep(delay)
                    continue
                if retryable and self.fallback_model and ctx.active_model != self.fallback_model:
                    logger.warning("%s falling back model=%s -> %s", label, ctx.active_model, self.fallback_model)
                    ctx.active_model = self.fallback_model
                    ctx.attempt = 0
                    continue
                logger.error("%s failed model=%s attempt=%d error=%s", label, ctx.active_model, ctx.attempt, exc)
                raise UpstreamFatalError(details=str(exc)) from exc
