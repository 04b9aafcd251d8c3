from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from .protocols import ProgressSink

logger = logging.getLogger(__name__)


class ProgressReporter:
    """Forwards structured progress events to an optional sink.

    Delivery failures (for example a dropped client connection) are logged and never
    interrupt generation.
    """

    def __init__(self, sink: ProgressSink | None = None) -> None:
        self._sink = sink

    async def emit(self, event: dict[str, Any]) -> None:
        if self._sink is None:
            return
        try:
            outcome = self._sink(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:  # noqa: BLE001
            logger.warning("Progress sink rejected event %s: %s", sorted(event), exc)

    async def status(self, message: str) -> None:
        await self.emit({"status": {"message": message}})

    async def file_plan(self, path: str, purpose: str) -> None:
        await self.emit({"text": {"path": path, "content": purpose}})

    async def chat(self, text: str) -> None:
        await self.emit({"chats": {"path": datetime.now(UTC).isoformat(), "content": text}})

    async def source_url(self, url: str) -> None:
        await self.emit({"sourceUrl": url})


@asynccontextmanager
async def heartbeat(reporter: ProgressReporter, interval_seconds: float) -> AsyncIterator[asyncio.Task[None]]:
    """Emit ``{"keepalive": true}`` every ``interval_seconds`` while the block runs.

    The background task belongs to one session and is cancelled on every exit path.
    """

    async def _beat() -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            await reporter.emit({"keepalive": True})

    task = asyncio.create_task(_beat())
    try:
        yield task
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
