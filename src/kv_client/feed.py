"""
Background feed skeleton shared by watch subscriptions and queue listeners.

A ``Feed`` is a loop of ``step()`` calls that survives transport failure: a
``KvError`` raised by a step is logged, counted, and followed by a fixed
reconnect delay. Two transports are provided:

    PushFeed   one long-lived server-sent-events stream, reopened when it drops
    PollFeed   a request every ``interval_ms``

``FeedHandle`` runs a feed on its own asyncio task and stops it. The stop
signal is checked between network calls and before every delivery, so no
delivery starts once it is set. A delivery already in progress is allowed to
finish; only waits and network calls are cancelled.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from contextlib import aclosing
from typing import Any, AsyncIterator, Awaitable, Callable, Literal, Optional, Set

from loguru import logger

from .errors import KvError
from .metrics import KV_FEED_RECONNECTS_TOTAL

FeedMode = Literal["sse", "polling"]

STREAM_RECONNECT_DELAY_MS = 3000
POLL_RECONNECT_DELAY_MS = 5000
POLL_INTERVAL_MS = 1000


class Feed(ABC):
    """Reconnecting loop with a cooperative stop signal."""

    feed_name = "feed"
    mode: FeedMode = "sse"

    def __init__(self, *, reconnect_delay_ms: int) -> None:
        self.reconnect_delay_ms = reconnect_delay_ms
        self._stop_event = asyncio.Event()
        self._delivering = False

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    @property
    def delivering(self) -> bool:
        return self._delivering

    def stop(self) -> None:
        self._stop_event.set()

    async def run(self) -> None:
        while not self.stopped:
            try:
                delay_ms = await self.step()
            except KvError as e:
                if self.stopped:
                    break
                KV_FEED_RECONNECTS_TOTAL.labels(self.feed_name, self.mode).inc()
                logger.warning(
                    f"{self.feed_name} {self.mode} feed failed ({type(e).__name__}: {e}); "
                    f"retrying in {self.reconnect_delay_ms}ms"
                )
                delay_ms = self.reconnect_delay_ms
            if delay_ms and not self.stopped:
                await self.sleep(delay_ms)

    async def sleep(self, delay_ms: float) -> None:
        """Sleep, returning early if the feed is stopped."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay_ms / 1000.0)
        except asyncio.TimeoutError:
            pass

    async def dispatch(self, deliver: Callable[[], Awaitable[Any]]) -> None:
        """Run one delivery unless stopped; the delivery is shielded from ``FeedHandle.stop``."""
        if self.stopped:
            return
        self._delivering = True
        try:
            await deliver()
        finally:
            self._delivering = False

    @abstractmethod
    async def step(self) -> Optional[float]:
        """One unit of work; returns the delay (ms) before the next step."""


class PushFeed(Feed):
    """Feed over a server-sent-events stream."""

    mode: FeedMode = "sse"

    def __init__(self, *, reconnect_delay_ms: int = STREAM_RECONNECT_DELAY_MS) -> None:
        super().__init__(reconnect_delay_ms=reconnect_delay_ms)

    @abstractmethod
    def open_stream(self) -> AsyncIterator[Any]:
        """Open the stream; each yielded item is passed to ``on_item``."""

    @abstractmethod
    async def on_item(self, item: Any) -> None: ...

    async def step(self) -> Optional[float]:
        async with aclosing(self.open_stream()) as stream:
            async for item in stream:
                if self.stopped:
                    return None
                await self.dispatch(lambda: self.on_item(item))
                if self.stopped:
                    return None
        if self.stopped:
            return None
        logger.debug(f"{self.feed_name} stream closed by server; reopening")
        return self.reconnect_delay_ms


class PollFeed(Feed):
    """Feed over periodic requests."""

    mode: FeedMode = "polling"

    def __init__(
        self,
        *,
        interval_ms: int = POLL_INTERVAL_MS,
        reconnect_delay_ms: int = POLL_RECONNECT_DELAY_MS,
    ) -> None:
        super().__init__(reconnect_delay_ms=reconnect_delay_ms)
        self.interval_ms = interval_ms


class FeedHandle:
    """Owns the task running one feed."""

    def __init__(self, feed: Feed, *, name: str, on_close: Optional[Callable[["FeedHandle"], None]] = None):
        self._feed = feed
        self.name = name
        self._on_close = on_close
        self._task: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._feed.stopped

    @property
    def mode(self) -> FeedMode:
        return self._feed.mode

    def start(self) -> "FeedHandle":
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        return self

    async def _run(self) -> None:
        logger.info(f"{self.name} started ({self._feed.mode})")
        try:
            await self._feed.run()
        except asyncio.CancelledError:
            if not self._feed.stopped:
                raise
        finally:
            logger.info(f"{self.name} stopped")

    def stop(self) -> None:
        """Stop the feed. Idempotent; safe to call from inside a callback."""
        if self._feed.stopped:
            return
        self._feed.stop()
        task = self._task
        if task is not None and not task.done() and not self._feed.delivering:
            if task is not _current_task():
                task.cancel()
        if self._on_close is not None:
            self._on_close(self)

    async def wait(self) -> None:
        """Wait for the background task to finish."""
        task = self._task
        if task is None or task is _current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    async def aclose(self) -> None:
        self.stop()
        await self.wait()

    async def __aenter__(self) -> "FeedHandle":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def __enter__(self) -> "FeedHandle":
        return self

    def __exit__(self, *exc) -> None:
        self.stop()


class HandleRegistry:
    """Live handles owned by one client."""

    def __init__(self) -> None:
        self._handles: Set[FeedHandle] = set()

    def __len__(self) -> int:
        return len(self._handles)

    def add(self, handle: FeedHandle) -> None:
        self._handles.add(handle)

    def discard(self, handle: FeedHandle) -> None:
        self._handles.discard(handle)

    async def close_all(self) -> None:
        handles = list(self._handles)
        for h in handles:
            h.stop()
        await asyncio.gather(*(h.wait() for h in handles), return_exceptions=True)
        self._handles.clear()
        if handles:
            logger.debug(f"Stopped {len(handles)} feed handle(s)")


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
