"""Background task that evicts expired chat-start dedup records."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from tutorchat.config.settings import settings
from tutorchat.util.logger import logger


class IdempotencyPruneTask:
    def __init__(self, *, prune_func: Callable[[int], int], interval_seconds: int | None = None) -> None:
        self._prune_func = prune_func
        self._interval = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run_loop(), name="tutorchat-idempotency-prune")
        logger.info("idempotency prune task started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
        logger.info("idempotency prune task stopped")

    async def prune_once(self) -> int:
        current_ts = int(time.time())
        if settings.enable_thread_offload:
            removed = int(await asyncio.to_thread(self._prune_func, current_ts))
        else:
            removed = int(self._prune_func(current_ts))
        if removed > 0:
            logger.info("idempotency records pruned removed=%s now_ts=%s", removed, current_ts)
        return removed

    async def _run_loop(self) -> None:
        interval = max(5, int(self._interval or settings.idempotency_prune_interval_seconds))
        while True:
            try:
                await self.prune_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - operational guard
                logger.warning("idempotency prune task failed: %s", exc)
            await asyncio.sleep(interval)
