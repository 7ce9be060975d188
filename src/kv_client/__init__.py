"""
KeyVal Client Library

Async Python client for the KeyVal store: keys and values, atomic commits,
optimistic transactions, change watches and a durable message queue.

Usage:
    from kv_client import Kv

    async with Kv({"base_url": "http://localhost:8000/api/keyval"}) as kv:
        await kv.set(["users", 1], {"name": "Ada"})

        async def transfer(tx):
            a = await tx.get(["balance", "a"])
            tx.set(["balance", "a"], a.value - 10)

        result = await kv.transaction(transfer, max_retries=3)

        handle = kv.watch([["users"]], print)
        handle.stop()
"""

from .atomic import AtomicOperation
from .client import DEFAULTS, Kv, KvConfig
from .encoding import BigInt, CommitVersionstamp, ServerNow
from .errors import (
    InvalidKeyError,
    KvError,
    KvStateError,
    ProtocolError,
    RequestError,
    TransportError,
    ValidationError,
)
from .keys import Key, KeyPart, compare_keys, decode_key, encode_key, key_covers
from .models import (
    Check,
    CommitError,
    CommitResult,
    DeleteResult,
    DlqMessage,
    Entry,
    Metrics,
    Mutation,
    PaginateResult,
    QueueMessage,
    QueueStats,
    TransactionError,
    TransactionResult,
)
from .queue import ListenHandle
from .settings import KvSettings, get_settings
from .transaction import Transaction
from .watch import WatchBuffer, WatchHandle

__version__ = "1.0.0"
__all__ = [
    "Kv",
    "KvConfig",
    "DEFAULTS",
    "KvSettings",
    "get_settings",
    "AtomicOperation",
    "Transaction",
    "WatchBuffer",
    "WatchHandle",
    "ListenHandle",
    "BigInt",
    "ServerNow",
    "CommitVersionstamp",
    "Key",
    "KeyPart",
    "encode_key",
    "decode_key",
    "compare_keys",
    "key_covers",
    "Entry",
    "Check",
    "Mutation",
    "CommitResult",
    "CommitError",
    "TransactionResult",
    "TransactionError",
    "QueueMessage",
    "DlqMessage",
    "QueueStats",
    "DeleteResult",
    "PaginateResult",
    "Metrics",
    "KvError",
    "TransportError",
    "ProtocolError",
    "RequestError",
    "ValidationError",
    "InvalidKeyError",
    "KvStateError",
]
