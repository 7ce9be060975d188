"""
Queue consumer and dead-letter-queue access.

Delivery is at-least-once: a message is acked only after its handler
returned. A handler exception nacks it, and so does nothing at all if the
process dies or the connection drops before the ack. Either way the server
redelivers it following the enqueue-time backoff schedule, then moves it to
the DLQ.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Callable, List, Optional

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
from .metrics import KV_QUEUE_MESSAGES_TOTAL
from .models import DlqMessage, QueueMessage
from .utils import call_maybe_async

QueueHandler = Callable[[Any], Any]


class MessageProcessor:
    """Runs the handler for one message and acknowledges the outcome."""

    def __init__(self, gateway, handler: QueueHandler, *, auto_ack: bool = True):
        self._gateway = gateway
        self.handler = handler
        self.auto_ack = auto_ack

    async def process(self, msg: QueueMessage) -> None:
        if not self.auto_ack:
            KV_QUEUE_MESSAGES_TOTAL.labels("manual").inc()
            try:
                await call_maybe_async(self.handler, msg)
            except Exception:
                logger.exception(f"Queue handler raised for message {msg.id} (manual ack)")
            return

        try:
            await call_maybe_async(self.handler, msg.value)
        except Exception:
            logger.exception(
                f"Queue handler raised for message {msg.id} (attempt {msg.attempts}); nacking"
            )
            await self._gateway.nack(msg.id)
            KV_QUEUE_MESSAGES_TOTAL.labels("nacked").inc()
            return
        await self._gateway.ack(msg.id)
        KV_QUEUE_MESSAGES_TOTAL.labels("acked").inc()


class StreamListener(PushFeed):
    feed_name = "queue"

    def __init__(
        self,
        gateway,
        processor: MessageProcessor,
        *,
        reconnect_delay_ms: int = STREAM_RECONNECT_DELAY_MS,
    ):
        super().__init__(reconnect_delay_ms=reconnect_delay_ms)
        self._gateway = gateway
        self._processor = processor

    def open_stream(self) -> AsyncIterator[QueueMessage]:
        return self._gateway.queue_listen()

    async def on_item(self, item: QueueMessage) -> None:
        await self._processor.process(item)


class PollListener(PollFeed):
    """Polls again immediately after a message, or after ``interval_ms`` when idle."""

    feed_name = "queue"

    def __init__(
        self,
        gateway,
        processor: MessageProcessor,
        *,
        interval_ms: int = POLL_INTERVAL_MS,
        reconnect_delay_ms: int = POLL_RECONNECT_DELAY_MS,
    ):
        super().__init__(interval_ms=interval_ms, reconnect_delay_ms=reconnect_delay_ms)
        self._gateway = gateway
        self._processor = processor

    async def step(self) -> Optional[float]:
        msg = await self._gateway.queue_poll()
        if msg is None:
            return self.interval_ms
        await self.dispatch(lambda: self._processor.process(msg))
        return None


class ListenHandle(FeedHandle):
    """Handle to a running queue listener."""

    def __init__(self, feed, *, auto_ack: bool = True, **kwargs):
        super().__init__(feed, **kwargs)
        self.auto_ack = auto_ack


def start_listener(
    gateway,
    handler: QueueHandler,
    *,
    auto_ack: bool = True,
    mode: FeedMode = "sse",
    poll_interval: int = POLL_INTERVAL_MS,
    stream_reconnect_delay: int = STREAM_RECONNECT_DELAY_MS,
    poll_reconnect_delay: int = POLL_RECONNECT_DELAY_MS,
    on_close: Optional[Callable[[FeedHandle], None]] = None,
) -> ListenHandle:
    if not callable(handler):
        raise ValidationError("queue handler must be callable")
    processor = MessageProcessor(gateway, handler, auto_ack=auto_ack)
    if mode == "polling":
        feed = PollListener(
            gateway, processor, interval_ms=poll_interval, reconnect_delay_ms=poll_reconnect_delay
        )
    elif mode == "sse":
        feed = StreamListener(gateway, processor, reconnect_delay_ms=stream_reconnect_delay)
    else:
        raise ValidationError(f"Unknown listen mode: {mode!r}")
    return ListenHandle(
        feed, auto_ack=auto_ack, name="queue-listener", on_close=on_close
    ).start()


class DeadLetterQueue:
    """Messages that exhausted their delivery attempts."""

    def __init__(self, gateway):
        self._gateway = gateway

    async def list(self, limit: int = 100, offset: int = 0) -> List[DlqMessage]:
        if limit <= 0 or offset < 0:
            raise ValidationError("limit must be > 0 and offset >= 0")
        return await self._gateway.dlq_list(limit=limit, offset=offset)

    async def get(self, message_id: str) -> Optional[DlqMessage]:
        return await self._gateway.dlq_get(message_id)

    async def requeue(self, message_id: str) -> str:
        """Move a message back to the queue; returns the new message id."""
        new_id = await self._gateway.dlq_requeue(message_id)
        logger.info(f"Requeued DLQ message {message_id} as {new_id}")
        return new_id

    async def delete(self, message_id: str) -> None:
        await self._gateway.dlq_delete(message_id)

    async def purge(self) -> int:
        deleted = await self._gateway.dlq_purge()
        logger.info(f"Purged {deleted} DLQ message(s)")
        return deleted
