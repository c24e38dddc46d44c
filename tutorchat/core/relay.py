"""
Stream relay: drives the upstream client and re-emits the outward event
protocol ``start, chunk*, (done | error)`` on a channel.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Protocol

from tutorchat.adapters.gemini.stream_utils import chunk_event, done_event, error_event, split_fixed, start_event
from tutorchat.adapters.gemini.upstream import UpstreamClient
from tutorchat.config.settings import settings
from tutorchat.core.composer import fallback_overrides, merge_options
from tutorchat.core.errors import ChannelClosedError, UpstreamError
from tutorchat.core.models import ProviderRequest
from tutorchat.observability.logging import log_event
from tutorchat.util.logger import get_logger

logger = get_logger("relay")

OVERLOADED_MESSAGE = "The AI service is temporarily overloaded. Please try again shortly."


class EventChannel(Protocol):
    async def send(self, event: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


def _details(exc: BaseException) -> str:
    details = getattr(exc, "details", None)
    return str(details or exc or exc.__class__.__name__)


class StreamRelay:
    def __init__(
        self,
        upstream: UpstreamClient,
        remaining: Callable[[str], int],
        *,
        fallback_chunk_chars: int | None = None,
    ) -> None:
        self.upstream = upstream
        self._remaining = remaining
        self.fallback_chunk_chars = int(fallback_chunk_chars or settings.fallback_chunk_chars)

    async def _read_remaining(self, user_id: str) -> int:
        if settings.enable_thread_offload:
            return int(await asyncio.to_thread(self._remaining, user_id))
        return int(self._remaining(user_id))

    def _fallback_request(self, request: ProviderRequest) -> ProviderRequest:
        options = merge_options(request.options, fallback_overrides())
        return request.model_copy(update={"options": options})

    async def run(self, user_id: str, request: ProviderRequest, channel: EventChannel) -> None:
        emitted = 0

        async def on_chunk(delta: str) -> None:
            nonlocal emitted
            await channel.send(chunk_event(delta))
            emitted += 1

        try:
            await channel.send(start_event())
            log_event("relay_start", user_id=user_id, turns=len(request.turns))
            try:
                await self.upstream.chat_stream(request, on_chunk)
            except UpstreamError as exc:
                if emitted:
                    logger.error("stream failed after partial output user_id=%s chunks=%d error=%s", user_id, emitted, exc)
                    log_event("relay_error", user_id=user_id, chunks=emitted, stage="stream", error=_details(exc))
                    await channel.send(error_event(OVERLOADED_MESSAGE, _details(exc)))
                    return
                logger.warning("stream failed before output, using buffered fallback user_id=%s error=%s", user_id, exc)
                try:
                    text = await self.upstream.chat(self._fallback_request(request))
                except UpstreamError as fallback_exc:
                    logger.error("buffered fallback failed user_id=%s error=%s", user_id, fallback_exc)
                    log_event("relay_error", user_id=user_id, chunks=0, stage="fallback", error=_details(fallback_exc))
                    await channel.send(error_event(OVERLOADED_MESSAGE, _details(fallback_exc)))
                    return
                for piece in split_fixed(text, self.fallback_chunk_chars):
                    await on_chunk(piece)
                log_event("relay_fallback", user_id=user_id, chunks=emitted, chars=len(text))

            remaining = await self._read_remaining(user_id)
            await channel.send(done_event(remaining))
            log_event("relay_done", user_id=user_id, chunks=emitted, remaining=remaining)
        except ChannelClosedError:
            logger.info("client went away user_id=%s chunks=%d", user_id, emitted)
            log_event("relay_disconnect", user_id=user_id, chunks=emitted)
        except Exception as exc:
            logger.exception("relay failed user_id=%s chunks=%d", user_id, emitted)
            try:
                await channel.send(error_event("An unexpected error occurred.", _details(exc)))
            except ChannelClosedError:
                pass
        finally:
            await channel.close()
