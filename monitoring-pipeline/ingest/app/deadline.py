# ingest/app/deadline.py
"""One store deadline per inbound request.

Routes run their service call through ``bounded``: the call is cancelled when
the deadline passes or the client goes away. Services take a ``Deadline`` and
hand its remaining time to each store call as that call's timeout.
"""

import asyncio
import logging
from typing import Awaitable, Optional, Type, TypeVar

from fastapi import Request

from .errors import PipelineError, RequestCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")

DISCONNECT_POLL_SECONDS = 0.5


class Deadline:
    """Absolute expiry on the running loop's clock; ``seconds=None`` never expires."""

    def __init__(self, seconds: Optional[float] = None):
        self._loop = asyncio.get_running_loop()
        self.expires_at = None if seconds is None else self._loop.time() + seconds

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(self.expires_at - self._loop.time(), 0.0)

    @property
    def expired(self) -> bool:
        return self.remaining() == 0.0


async def _wait_for_disconnect(request: Request):
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def bounded(request: Request, work: Awaitable[T], seconds: float, error: Type[PipelineError]) -> T:
    """Await ``work`` for at most ``seconds``.

    Expiry raises ``error``; a client disconnect raises ``RequestCancelled``.
    Either way the in-flight work is cancelled before this returns. The
    request body must already be read.
    """
    task = asyncio.ensure_future(work)
    watcher = asyncio.ensure_future(_wait_for_disconnect(request))
    try:
        done, _ = await asyncio.wait({task, watcher}, timeout=seconds, return_when=asyncio.FIRST_COMPLETED)
    finally:
        watcher.cancel()
        if not task.done():
            task.cancel()
    if task in done:
        return task.result()

    # collect the cancelled work so its store call is torn down before we answer
    await asyncio.gather(task, return_exceptions=True)
    if watcher in done and watcher.exception() is None:
        logger.warning("client disconnected from %s %s, store call cancelled", request.method, request.url.path)
        raise RequestCancelled(f"client left {request.method} {request.url.path}")
    if watcher in done:
        logger.error("disconnect watch on %s failed: %r", request.url.path, watcher.exception())
    raise error(f"{request.method} {request.url.path} exceeded the {seconds}s store deadline")
