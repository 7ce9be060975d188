from __future__ import annotations

from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, TypedDict

import httpx
from loguru import logger

from .atomic import AtomicOperation
from .encoding import CommitVersionstamp, ServerNow
from .errors import KvStateError, ValidationError
from .feed import FeedHandle, FeedMode, HandleRegistry
from .gateway import Consistency, KvGateway
from .keys import KeyPart
from .models import (
    CommitResult,
    DeleteResult,
    Entry,
    Metrics,
    PaginateResult,
    QueueStats,
    TransactionOutcome,
)
from .queue import DeadLetterQueue, ListenHandle, QueueHandler, start_listener
from .transaction import TransactionFn, run_transaction
from .utils import Duration, parse_duration_ms
from .watch import DEFAULT_WATCH_LIMIT, OverflowStrategy, WatchCallback, WatchHandle, start_watch

KeyLike = Sequence[KeyPart]


class KvConfig(TypedDict, total=False):
    base_url: str
    timeout: float  # seconds
    headers: Dict[str, str]
    api_key: str
    stream_reconnect_delay: int  # ms
    poll_reconnect_delay: int  # ms
    poll_interval: int  # ms


DEFAULTS: KvConfig = {
    "timeout": 30.0,
    "stream_reconnect_delay": 3000,
    "poll_reconnect_delay": 5000,
    "poll_interval": 1000,
}


class Kv:
    """
    Async client for the KeyVal store.

    Usage:
        async with Kv({"base_url": "http://localhost:8000/api/keyval"}) as kv:
            await kv.set(["users", 1], {"name": "Ada"})
            entry = await kv.get(["users", 1])
    """

    def __init__(self, cfg: KvConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.cfg: KvConfig = {**DEFAULTS, **(cfg or {})}
        if not self.cfg.get("base_url"):
            raise ValueError("base_url required")
        headers = dict(self.cfg.get("headers") or {})
        if self.cfg.get("api_key"):
            headers["Authorization"] = f"Bearer {self.cfg['api_key']}"
        self.gateway = KvGateway(
            self.cfg["base_url"],
            timeout=float(self.cfg["timeout"]),
            headers=headers,
            transport=transport,
        )
        self.handles = HandleRegistry()
        self.dlq = DeadLetterQueue(self.gateway)
        self._closed = False

    @classmethod
    def from_settings(cls, settings=None, **kwargs) -> "Kv":
        """Build a client from ``KvSettings`` (environment / .env by default)."""
        if settings is None:
            from .settings import get_settings

            settings = get_settings()
        return cls(settings.to_config(), **kwargs)

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        """Stop every watch and listener, then close the HTTP client."""
        if self._closed:
            return
        self._closed = True
        await self.handles.close_all()
        await self.gateway.aclose()
        logger.debug("KeyVal client closed")

    aclose = close

    async def __aenter__(self) -> "Kv":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ---------- keys ----------

    async def get(self, key: KeyLike, *, consistency: Optional[Consistency] = None) -> Entry:
        return await self.gateway.get(key, consistency=consistency)

    async def get_many(
        self, keys: Iterable[KeyLike], *, consistency: Optional[Consistency] = None
    ) -> List[Entry]:
        return await self.gateway.get_many(keys, consistency=consistency)

    async def set(self, key: KeyLike, value: Any, expires_in: Optional[Duration] = None) -> CommitResult:
        ttl = _duration(expires_in, "expires_in") if expires_in is not None else None
        return await self.gateway.set(key, value, expires_in=ttl)

    async def delete(
        self, key: KeyLike, *, exact: bool = False, where: Optional[Dict[str, Any]] = None
    ) -> DeleteResult:
        return await self.gateway.delete(key, exact=exact, where=where)

    async def delete_many(
        self,
        keys: Iterable[KeyLike],
        *,
        exact: bool = False,
        where: Optional[Dict[str, Any]] = None,
    ) -> DeleteResult:
        return await self.gateway.delete_many(keys, exact=exact, where=where)

    async def list(
        self,
        prefix: KeyLike = (),
        *,
        start: Optional[KeyLike] = None,
        end: Optional[KeyLike] = None,
        limit: int = 100,
        reverse: bool = False,
        where: Optional[Dict[str, Any]] = None,
        consistency: Optional[Consistency] = None,
    ) -> AsyncIterator[Entry]:
        """Iterate entries under ``prefix`` in key order (``reverse`` for descending).

        ``consistency="eventual"`` lets the server answer from a replica.
        """
        entries = await self.gateway.list(
            prefix,
            start=start,
            end=end,
            limit=limit,
            reverse=reverse,
            where=where,
            consistency=consistency,
        )
        for entry in entries:
            yield entry

    async def count(self, prefix: KeyLike = ()) -> int:
        return await self.gateway.count(prefix)

    async def paginate(
        self,
        prefix: KeyLike = (),
        *,
        cursor: Optional[str] = None,
        limit: int = 100,
        reverse: bool = False,
    ) -> PaginateResult:
        return await self.gateway.paginate(prefix, cursor=cursor, limit=limit, reverse=reverse)

    def now(self) -> ServerNow:
        """Placeholder for the server's current time, for ``where`` filters."""
        return ServerNow()

    def commit_versionstamp(self) -> CommitVersionstamp:
        """Key part that the next commit replaces with its own versionstamp.

        Only valid inside mutation keys, e.g.
        ``kv.atomic().set(["posts_by_time", kv.commit_versionstamp()], post_id)``.
        """
        return CommitVersionstamp()

    # ---------- atomic / transactions ----------

    def atomic(self) -> AtomicOperation:
        return AtomicOperation(self.gateway)

    async def transaction(
        self, fn: TransactionFn, *, max_retries: int = 0, retry_delay: Duration = 10
    ) -> TransactionOutcome:
        return await run_transaction(
            self.gateway, fn, max_retries=max_retries, retry_delay=retry_delay
        )

    # ---------- watch ----------

    def watch(
        self,
        keys: Any,
        callback: WatchCallback,
        *,
        exact: bool = False,
        emit_initial: bool = True,
        mode: FeedMode = "sse",
        poll_interval: Optional[Duration] = None,
        buffer_size: Optional[int] = None,
        overflow_strategy: OverflowStrategy = "drop-oldest",
        limit: Optional[int] = DEFAULT_WATCH_LIMIT,
    ) -> WatchHandle:
        """Subscribe to changes of ``keys`` (exact keys or prefixes); delivery runs in the background."""
        self._ensure_open()
        handle = start_watch(
            self.gateway,
            keys,
            callback,
            exact=exact,
            emit_initial=emit_initial,
            mode=mode,
            poll_interval=self._poll_interval(poll_interval),
            buffer_size=buffer_size,
            overflow_strategy=overflow_strategy,
            limit=limit,
            stream_reconnect_delay=int(self.cfg["stream_reconnect_delay"]),
            poll_reconnect_delay=int(self.cfg["poll_reconnect_delay"]),
            on_close=self._forget,
        )
        self.handles.add(handle)
        return handle

    # ---------- queue ----------

    async def enqueue(
        self,
        value: Any,
        *,
        delay: Optional[Duration] = None,
        backoff_schedule: Optional[Sequence[Duration]] = None,
        keys_if_undelivered: Optional[Sequence[KeyLike]] = None,
    ) -> str:
        return await self.gateway.enqueue(
            value,
            delay=_duration(delay, "delay") if delay is not None else None,
            backoff_schedule=(
                [_duration(d, "backoff_schedule") for d in backoff_schedule]
                if backoff_schedule is not None
                else None
            ),
            keys_if_undelivered=keys_if_undelivered,
        )

    def listen_queue(
        self,
        handler: QueueHandler,
        *,
        auto_ack: bool = True,
        mode: FeedMode = "sse",
        poll_interval: Optional[Duration] = None,
    ) -> ListenHandle:
        """Consume queue messages in the background until the handle is stopped."""
        self._ensure_open()
        handle = start_listener(
            self.gateway,
            handler,
            auto_ack=auto_ack,
            mode=mode,
            poll_interval=self._poll_interval(poll_interval),
            stream_reconnect_delay=int(self.cfg["stream_reconnect_delay"]),
            poll_reconnect_delay=int(self.cfg["poll_reconnect_delay"]),
            on_close=self._forget,
        )
        self.handles.add(handle)
        return handle

    async def ack_message(self, message_id: str) -> None:
        await self.gateway.ack(message_id)

    async def nack_message(self, message_id: str) -> None:
        await self.gateway.nack(message_id)

    async def queue_stats(self) -> QueueStats:
        return await self.gateway.queue_stats()

    # ---------- server metrics ----------

    async def metrics(self) -> Metrics:
        return await self.gateway.metrics()

    async def metrics_prometheus(self) -> str:
        return await self.gateway.metrics_prometheus()

    # ---------- internals ----------

    def _forget(self, handle: FeedHandle) -> None:
        self.handles.discard(handle)

    def _poll_interval(self, value: Optional[Duration]) -> int:
        if value is None:
            return int(self.cfg["poll_interval"])
        return _duration(value, "poll_interval")

    def _ensure_open(self) -> None:
        if self._closed:
            raise KvStateError("client is closed")


def _duration(value: Duration, name: str) -> int:
    try:
        return parse_duration_ms(value)
    except ValueError as e:
        raise ValidationError(f"{name}: {e}") from e
