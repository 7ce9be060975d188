"""
Fixtures for engine unit tests: in-memory stand-ins for KvGateway.
"""

import asyncio
from types import SimpleNamespace

import pytest

from kv_client.encoding import BigInt
from kv_client.errors import TransportError
from kv_client.keys import encode_key
from kv_client.models import CommitError, CommitResult, Entry, QueueMessage


class FakeStore:
    """Versioned dict implementing the commit semantics of the remote store."""

    def __init__(self):
        self.data = {}
        self.version = 0
        self.get_calls = 0
        self.get_many_calls = 0
        self.commits = []

    def _next_vs(self) -> str:
        self.version += 1
        return f"{self.version:020d}"

    def put(self, key, value) -> str:
        vs = self._next_vs()
        self.data[encode_key(key)] = Entry(key=key, value=value, versionstamp=vs)
        return vs

    def read(self, key) -> Entry:
        return self.data.get(encode_key(key)) or Entry(key=key, value=None, versionstamp=None)

    async def get(self, key):
        self.get_calls += 1
        return self.read(key)

    async def get_many(self, keys):
        self.get_many_calls += 1
        return [self.read(k) for k in keys]

    async def commit(self, checks, mutations):
        self.commits.append((list(checks), list(mutations)))
        for c in checks:
            if self.read(c.key).versionstamp != c.versionstamp:
                return CommitError()
        vs = self._next_vs()
        for m in mutations:
            ek = encode_key(m.key)
            current = self.data.get(ek)
            if m.type == "delete":
                self.data.pop(ek, None)
                continue
            value = m.value
            if m.type in ("sum", "max", "min"):
                n = value.value if isinstance(value, BigInt) else value
                old = current.value if current else None
                if old is None:
                    value = n
                elif m.type == "sum":
                    value = old + n
                elif m.type == "max":
                    value = max(old, n)
                else:
                    value = min(old, n)
            elif m.type in ("append", "prepend"):
                old = list(current.value) if current else []
                value = old + value if m.type == "append" else value + old
            self.data[ek] = Entry(key=m.key, value=value, versionstamp=vs)
        return CommitResult(versionstamp=vs)


class ScriptedFeedGateway:
    """
    Gateway whose watch/queue transports replay a script.

    Stream scripts are lists of "connections"; each connection is a list of
    items to yield, where an Exception instance is raised instead. After the
    script runs out, streams block until cancelled.
    """

    def __init__(self, streams=None, polls=None, messages=None):
        self.streams = list(streams or [])
        self.polls = list(polls or [])
        self.messages = list(messages or [])
        self.stream_opens = 0
        self.poll_calls = []
        self.acked = []
        self.nacked = []
        self.ack_error = None
        self.idle = asyncio.Event()

    async def _replay(self):
        self.stream_opens += 1
        if not self.streams:
            self.idle.set()
            await asyncio.Event().wait()
        for item in self.streams.pop(0):
            if isinstance(item, Exception):
                raise item
            yield item

    def watch_stream(self, targets, *, exact, emit_initial=True, limit=None):
        return self._replay()

    def queue_listen(self):
        return self._replay()

    async def watch_poll(self, targets, *, exact, cursor=None, limit=None):
        self.poll_calls.append(cursor)
        if not self.polls:
            self.idle.set()
            return [], cursor
        item = self.polls.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def queue_poll(self):
        self.poll_calls.append(None)
        if not self.messages:
            self.idle.set()
            return None
        item = self.messages.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def ack(self, message_id):
        if self.ack_error is not None:
            err, self.ack_error = self.ack_error, None
            raise err
        self.acked.append(message_id)

    async def nack(self, message_id):
        self.nacked.append(message_id)


@pytest.fixture()
def store():
    """Empty in-memory store."""
    return FakeStore()


@pytest.fixture()
def feed_gateway_factory():
    """Build a ScriptedFeedGateway from stream / poll / message scripts."""
    return ScriptedFeedGateway


@pytest.fixture()
def transport_failure():
    return TransportError("connection reset")


@pytest.fixture()
def message():
    """Factory for queue messages."""

    def _make(id="m1", value=None, attempts=1):
        return QueueMessage(id=id, value=value if value is not None else {"n": 1}, attempts=attempts)

    return _make


@pytest.fixture()
def recorder():
    """Collects callback invocations; ``wait_for(n)`` blocks until n calls arrived."""
    calls = []
    cond = asyncio.Condition()

    async def record(arg):
        async with cond:
            calls.append(arg)
            cond.notify_all()

    async def wait_for(n, timeout=2.0):
        async def _wait():
            async with cond:
                await cond.wait_for(lambda: len(calls) >= n)

        await asyncio.wait_for(_wait(), timeout)

    return SimpleNamespace(calls=calls, record=record, wait_for=wait_for)
