"""
Watch engine: change notifications for keys or key prefixes.

Each subscription runs one feed (SSE stream or polling) and pushes every
received batch through an optional bounded ``WatchBuffer`` before handing it
to the user callback. Transport failures are retried forever; only
``WatchHandle.stop()`` ends a subscription.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Literal, Optional, Sequence

from loguru import logger

from .errors import ValidationError
from .feed import (
    POLL_INTERVAL_MS,
    POLL_RECONNECT_DELAY_MS,
    STREAM_RECONNECT_DELAY_MS,
    FeedHandle,
    FeedMode,
    PollFeed,
    PushFeed,
)
from .keys import Key, encode_key, validate_key
from .metrics import KV_WATCH_DROPPED_TOTAL
from .models import Entry
from .utils import call_maybe_async

OverflowStrategy = Literal["drop-oldest", "drop-newest"]
WatchCallback = Callable[[List[Entry]], Any]

DEFAULT_WATCH_LIMIT = 100


class WatchBuffer:
    """
    Bounded, key-coalescing buffer between the transport and the callback.

    A change to a key already in the buffer replaces its entry in place (last
    write wins, position kept). A change to a new key when the buffer is full
    either evicts the oldest buffered key ("drop-oldest") or is discarded
    ("drop-newest").
    """

    def __init__(self, max_size: int, strategy: OverflowStrategy = "drop-oldest"):
        if isinstance(max_size, bool) or not isinstance(max_size, int) or max_size <= 0:
            raise ValidationError(f"buffer_size must be a positive int, got {max_size!r}")
        if strategy not in ("drop-oldest", "drop-newest"):
            raise ValidationError(f"Unknown overflow strategy: {strategy!r}")
        self.max_size = max_size
        self.strategy: OverflowStrategy = strategy
        # dicts keep insertion order, and re-assigning a key keeps its slot
        self._entries: Dict[bytes, Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, entries: Iterable[Entry]) -> int:
        """Buffer ``entries``; returns how many changes were dropped."""
        dropped = 0
        for entry in entries:
            ek = encode_key(entry.key)
            if ek not in self._entries and len(self._entries) >= self.max_size:
                dropped += 1
                if self.strategy == "drop-newest":
                    continue
                oldest = next(iter(self._entries))
                del self._entries[oldest]
            self._entries[ek] = entry
        if dropped:
            KV_WATCH_DROPPED_TOTAL.labels(self.strategy).inc(dropped)
            logger.debug(f"Watch buffer full ({self.max_size}); dropped {dropped} ({self.strategy})")
        return dropped

    def flush(self) -> List[Entry]:
        """Return buffered entries in first-buffered order and clear."""
        out = list(self._entries.values())
        self._entries.clear()
        return out


class _WatchSink:
    """Buffer + callback; shared by both transports."""

    def __init__(self, callback: WatchCallback, buffer: Optional[WatchBuffer]):
        self.callback = callback
        self.buffer = buffer

    async def deliver(self, entries: List[Entry]) -> None:
        if self.buffer is not None:
            self.buffer.add(entries)
            batch = self.buffer.flush()
        else:
            batch = list(entries)
        if not batch:
            return
        try:
            await call_maybe_async(self.callback, batch)
        except Exception:
            logger.exception("Watch callback raised; subscription continues")


class StreamWatch(PushFeed):
    feed_name = "watch"

    def __init__(
        self,
        gateway,
        targets: Sequence[Key],
        sink: _WatchSink,
        *,
        exact: bool,
        emit_initial: bool,
        limit: Optional[int],
        reconnect_delay_ms: int = STREAM_RECONNECT_DELAY_MS,
    ):
        super().__init__(reconnect_delay_ms=reconnect_delay_ms)
        self._gateway = gateway
        self._targets = list(targets)
        self._sink = sink
        self._exact = exact
        self._emit_initial = emit_initial
        self._limit = limit

    def open_stream(self) -> AsyncIterator[List[Entry]]:
        return self._gateway.watch_stream(
            self._targets, exact=self._exact, emit_initial=self._emit_initial, limit=self._limit
        )

    async def on_item(self, item: List[Entry]) -> None:
        await self._sink.deliver(item)


class PollWatch(PollFeed):
    """
    Polls for changes since the last cursor.

    The first poll has no cursor and returns the current state of the
    targets; it is delivered only when ``emit_initial`` is set. A failed poll
    keeps the previous cursor.
    """

    feed_name = "watch"

    def __init__(
        self,
        gateway,
        targets: Sequence[Key],
        sink: _WatchSink,
        *,
        exact: bool,
        emit_initial: bool,
        limit: Optional[int],
        interval_ms: int = POLL_INTERVAL_MS,
        reconnect_delay_ms: int = POLL_RECONNECT_DELAY_MS,
    ):
        super().__init__(interval_ms=interval_ms, reconnect_delay_ms=reconnect_delay_ms)
        self._gateway = gateway
        self._targets = list(targets)
        self._sink = sink
        self._exact = exact
        self._limit = limit
        self._skip_next = not emit_initial
        self.cursor: Optional[str] = None

    async def step(self) -> Optional[float]:
        entries, cursor = await self._gateway.watch_poll(
            self._targets, exact=self._exact, cursor=self.cursor, limit=self._limit
        )
        if self.stopped:
            return None
        self.cursor = cursor
        skip, self._skip_next = self._skip_next, False
        if entries and not skip:
            await self.dispatch(lambda: self._sink.deliver(entries))
        return self.interval_ms


class WatchHandle(FeedHandle):
    """Handle to a running watch subscription."""

    def __init__(self, feed, *, buffer: Optional[WatchBuffer] = None, **kwargs):
        super().__init__(feed, **kwargs)
        self.buffer = buffer


def normalize_targets(keys: Any) -> List[Key]:
    """Accept a single key or a list of keys; reject an empty target list."""
    if isinstance(keys, (str, bytes)):
        raise ValidationError("watch keys must be a key or a list of keys")
    items = list(keys)
    if not items:
        raise ValidationError("watch requires at least one key")
    if all(_is_part(p) for p in items):
        return [validate_key(items)]
    return [validate_key(k) for k in items]


def _is_part(p: Any) -> bool:
    return isinstance(p, (str, bytes, bytearray, memoryview, int, float, bool))


def start_watch(
    gateway,
    keys: Any,
    callback: WatchCallback,
    *,
    exact: bool = False,
    emit_initial: bool = True,
    mode: FeedMode = "sse",
    poll_interval: int = POLL_INTERVAL_MS,
    buffer_size: Optional[int] = None,
    overflow_strategy: OverflowStrategy = "drop-oldest",
    limit: Optional[int] = DEFAULT_WATCH_LIMIT,
    stream_reconnect_delay: int = STREAM_RECONNECT_DELAY_MS,
    poll_reconnect_delay: int = POLL_RECONNECT_DELAY_MS,
    on_close: Optional[Callable[[FeedHandle], None]] = None,
) -> WatchHandle:
    """Validate options, build the feed for ``mode`` and start it."""
    if not callable(callback):
        raise ValidationError("watch callback must be callable")
    targets = normalize_targets(keys)
    buffer = WatchBuffer(buffer_size, overflow_strategy) if buffer_size is not None else None
    if buffer is None and overflow_strategy not in ("drop-oldest", "drop-newest"):
        raise ValidationError(f"Unknown overflow strategy: {overflow_strategy!r}")
    sink = _WatchSink(callback, buffer)
    common: Dict[str, Any] = dict(exact=exact, emit_initial=emit_initial, limit=limit)

    if mode == "polling":
        feed = PollWatch(
            gateway,
            targets,
            sink,
            interval_ms=poll_interval,
            reconnect_delay_ms=poll_reconnect_delay,
            **common,
        )
    elif mode == "sse":
        feed = StreamWatch(
            gateway, targets, sink, reconnect_delay_ms=stream_reconnect_delay, **common
        )
    else:
        raise ValidationError(f"Unknown watch mode: {mode!r}")

    name = f"watch[{'exact' if exact else 'prefix'}:{len(targets)}]"
    return WatchHandle(feed, buffer=buffer, name=name, on_close=on_close).start()
